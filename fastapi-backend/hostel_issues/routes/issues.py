"""Issue reporting and caretaker board routes."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, StrictBool, StrictInt

from ..consolidation import Created, Report
from ..dependencies import Services, get_services, require_role
from ..document_store import Document
from ..models import ROLE_CARETAKER, ROLE_STUDENT


router = APIRouter(prefix="/api/v1/issues", tags=["Issues"])


class ReporterOut(BaseModel):
    room: str
    userId: str


class IssueOut(BaseModel):
    id: str
    block: str
    floor: int
    category: str
    description: str
    isUrgent: bool = False
    status: str
    consolidationKey: str
    createdAt: Optional[str] = None
    reporters: List[ReporterOut] = []


class ReportCreate(BaseModel):
    floor: StrictInt
    category: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    is_urgent: StrictBool = False


class ReportOutcome(BaseModel):
    outcome: str
    issue_id: str
    reporter_count: int
    message: str


class StatusUpdateSchema(BaseModel):
    status: str


_MESSAGES = {
    "created": "New issue created successfully! The caretaker has been notified.",
    "consolidated": "Successfully tagged existing issue. Your report is linked to {count} total rooms.",
    "already_reported": "This exact issue has already been reported and tagged by your room. Thank you!",
}


@router.post("/report", response_model=ReportOutcome)
async def report_issue(
    body: ReportCreate,
    response: Response,
    profile: Document = Depends(require_role(ROLE_STUDENT)),
    services: Services = Depends(get_services),
):
    """Report an issue from the caller's verified block and room.

    Reports matching an open issue for the same block, floor and category are
    merged into it instead of opening a duplicate.
    """
    if not profile.get("block") or not profile.get("roomNumber"):
        raise HTTPException(
            status_code=409,
            detail="Missing block or room number in profile. Please contact the administrator.",
        )

    report = Report(
        block=profile.get("block"),
        floor=body.floor,
        category=body.category,
        description=body.description,
        is_urgent=body.is_urgent,
        reporter_room=profile.get("roomNumber"),
        reporter_user_id=profile.id,
    )
    outcome = await services.consolidation.submit_report(report)
    if isinstance(outcome, Created):
        response.status_code = status.HTTP_201_CREATED

    return ReportOutcome(
        outcome=outcome.outcome,
        issue_id=outcome.issue_id,
        reporter_count=outcome.reporter_count,
        message=_MESSAGES[outcome.outcome].format(count=outcome.reporter_count),
    )


@router.get("", response_model=List[IssueOut])
async def list_active_issues(
    block: Optional[str] = Query(None, description="Only issues in this block"),
    urgent: bool = Query(False, description="Only urgent issues"),
    _: Document = Depends(require_role(ROLE_CARETAKER)),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    issues = await services.board.list_active_issues(block=block, urgent_only=urgent)
    return [services.board.to_public(doc) for doc in issues]


@router.patch("/{issue_id}/status")
async def update_issue_status(
    issue_id: str,
    body: StatusUpdateSchema,
    _: Document = Depends(require_role(ROLE_CARETAKER)),
    services: Services = Depends(get_services),
):
    await services.board.set_status(issue_id, body.status)
    return {"id": issue_id, "status": body.status}
