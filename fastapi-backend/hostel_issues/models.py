from typing import Any, Dict, Optional
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, Column


# Issue lifecycle values as stored in issue documents.
STATUS_NEW = "New"
STATUS_IN_PROGRESS = "In Progress"
STATUS_RESOLVED = "Resolved"
ISSUE_STATUSES = (STATUS_NEW, STATUS_IN_PROGRESS, STATUS_RESOLVED)
OPEN_STATUSES = (STATUS_NEW, STATUS_IN_PROGRESS)

# Profile roles. 'submitted' marks a pending user who has declared a room.
ROLE_PENDING = "pending"
ROLE_SUBMITTED = "submitted"
ROLE_STUDENT = "student"
ROLE_CARETAKER = "caretaker"
PROFILE_ROLES = (ROLE_PENDING, ROLE_SUBMITTED, ROLE_STUDENT, ROLE_CARETAKER)

# Verification progress stamped alongside the role on profile documents.
VERIFICATION_SUBMITTED = "submitted"
VERIFICATION_VERIFIED = "verified"


class StoredDocument(SQLModel, table=True):
    """One document of the SQL-backed document store.

    `version` starts at 1 and is bumped on every write; conditional updates on
    it are what make store transactions optimistic.
    """

    __tablename__ = "documents"
    collection: str = Field(primary_key=True)
    doc_id: str = Field(primary_key=True)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    version: int = Field(default=1)
    created_at: Optional[datetime] = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    updated_at: Optional[datetime] = None
