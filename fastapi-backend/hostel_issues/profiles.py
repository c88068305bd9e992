"""
User profiles and room verification.

A user who signs in for the first time gets a `pending` profile. They declare
the block and room they live in (`tempBlock`/`tempRoom`), which moves them to
`submitted`; the caretaker then approves the declaration, which copies it to
the permanent `block`/`roomNumber` fields and grants the `student` role.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from .config import TrackerConfig
from .document_store import Document, DocumentStore, Subscription, Transaction, where
from .errors import NotFound, ValidationError
from .models import (
    PROFILE_ROLES,
    ROLE_PENDING,
    ROLE_STUDENT,
    ROLE_SUBMITTED,
    VERIFICATION_SUBMITTED,
    VERIFICATION_VERIFIED,
)

logger = logging.getLogger(__name__)


def _awaiting_verification(docs: List[Document]) -> List[Document]:
    # Profiles that have not yet declared a room are not actionable.
    submitted = [d for d in docs if d.get("tempBlock") and d.get("tempRoom")]
    return sorted(submitted, key=lambda d: d.get("createdAt") or "")


class ProfileService:
    def __init__(self, store: DocumentStore, config: TrackerConfig):
        self.store = store
        self.config = config

    @property
    def collection(self) -> str:
        return self.config.profiles_collection

    async def get_profile(self, user_id: str) -> Optional[Document]:
        return await self.store.get_by_id(self.collection, user_id)

    async def ensure_profile(self, user_id: str, email: Optional[str]) -> Document:
        """Return the user's profile, creating a pending one on first sign-in."""
        if not user_id:
            raise ValidationError("user_id is required")

        async def _get_or_create(tx: Transaction) -> bool:
            if await tx.get(self.collection, user_id) is not None:
                return False
            tx.set(
                self.collection,
                user_id,
                {
                    "userId": user_id,
                    "role": ROLE_PENDING,
                    "email": email or "N/A",
                    "createdAt": self.store.server_timestamp(),
                },
            )
            return True

        # A profile written between the read and the commit (a concurrent
        # sign-in, or assign_role) aborts the create and the retry keeps it.
        if await self.store.run_transaction(_get_or_create):
            logger.info(f"Created pending profile for user {user_id}")
        return await self.get_profile(user_id)

    async def submit_room_details(self, user_id: str, temp_block: str, temp_room: str) -> None:
        room = (temp_room or "").strip().upper()
        if not room:
            raise ValidationError("Please enter a valid room number.")
        if temp_block not in self.config.blocks:
            raise ValidationError(f"Unknown block: {temp_block}")
        await self.store.update_document(
            self.collection,
            user_id,
            {
                "tempBlock": temp_block,
                "tempRoom": room,
                "role": ROLE_SUBMITTED,
                "status": VERIFICATION_SUBMITTED,
            },
        )
        logger.info(f"User {user_id} submitted room details {temp_block}-{room}")

    def _pending_filters(self) -> list:
        return [where("role", "in", (ROLE_PENDING, ROLE_SUBMITTED))]

    async def list_pending_profiles(self) -> List[Document]:
        docs = await self.store.query(self.collection, self._pending_filters())
        return _awaiting_verification(docs)

    async def subscribe_pending_profiles(self, callback: Callable[[List[Document]], Any]) -> Subscription:
        return await self.store.subscribe(
            self.collection,
            self._pending_filters(),
            lambda docs: callback(_awaiting_verification(docs)),
        )

    async def approve_user(self, profile: Optional[Dict[str, Any]]) -> None:
        """Turn a submitted room declaration into a verified student profile."""
        user_id = (profile or {}).get("userId")
        if not isinstance(user_id, str) or not user_id.strip():
            # A blank id would otherwise address no document at all.
            raise NotFound("Profile or its user id is missing")
        if not profile.get("tempBlock") or not profile.get("tempRoom"):
            raise ValidationError(f"User {user_id} has not submitted block and room details")

        await self.store.update_document(
            self.collection,
            user_id,
            {
                "role": ROLE_STUDENT,
                "status": VERIFICATION_VERIFIED,
                "block": profile["tempBlock"],
                "roomNumber": profile["tempRoom"],
                "verifiedAt": self.store.server_timestamp(),
                "tempBlock": None,
                "tempRoom": None,
            },
        )
        logger.info(f"Verified user {user_id} as {profile['tempBlock']}-{profile['tempRoom']}")

    async def assign_role(self, user_id: str, role: str) -> None:
        if role not in PROFILE_ROLES:
            raise ValidationError(f"Unknown role: {role}")
        await self.store.update_document(self.collection, user_id, {"role": role})
        logger.info(f"User {user_id} role set to {role}")
