"""Profile and user-verification routes."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import Services, get_current_profile, get_services, require_role
from ..document_store import Document
from ..errors import NotFound
from ..models import ROLE_CARETAKER, ROLE_PENDING, ROLE_SUBMITTED


router = APIRouter(prefix="/api/v1", tags=["Profiles"])


class ProfilePublic(BaseModel):
    userId: str
    email: Optional[str] = None
    role: str
    status: Optional[str] = None
    block: Optional[str] = None
    roomNumber: Optional[str] = None
    tempBlock: Optional[str] = None
    tempRoom: Optional[str] = None
    createdAt: Optional[str] = None
    verifiedAt: Optional[str] = None


class RoomDetailsRequest(BaseModel):
    block: str = Field(..., min_length=1)
    room_number: str = Field(..., min_length=1)


@router.get("/profile/me", response_model=ProfilePublic)
async def get_my_profile(profile: Document = Depends(get_current_profile)):
    return profile.data


@router.post("/profile/room-details", response_model=ProfilePublic)
async def submit_room_details(
    body: RoomDetailsRequest,
    profile: Document = Depends(require_role(ROLE_PENDING, ROLE_SUBMITTED)),
    services: Services = Depends(get_services),
):
    await services.profiles.submit_room_details(profile.id, body.block, body.room_number)
    updated = await services.profiles.get_profile(profile.id)
    return updated.data


@router.get("/users/pending", response_model=List[ProfilePublic])
async def list_pending_users(
    _: Document = Depends(require_role(ROLE_CARETAKER)),
    services: Services = Depends(get_services),
):
    return [doc.data for doc in await services.profiles.list_pending_profiles()]


@router.post("/users/{user_id}/approve", response_model=ProfilePublic)
async def approve_user(
    user_id: str,
    _: Document = Depends(require_role(ROLE_CARETAKER)),
    services: Services = Depends(get_services),
):
    profile = await services.profiles.get_profile(user_id)
    if profile is None:
        raise NotFound(f"No profile for user {user_id}")
    await services.profiles.approve_user(profile.data)
    updated = await services.profiles.get_profile(user_id)
    return updated.data
