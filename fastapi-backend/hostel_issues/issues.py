"""Caretaker-side issue operations: status changes and the active-issue board."""

import logging
from typing import Any, Callable, Dict, List, Optional

from .config import TrackerConfig
from .document_store import Document, DocumentStore, Subscription, where
from .errors import ValidationError
from .models import ISSUE_STATUSES

logger = logging.getLogger(__name__)


def sort_active_issues(issues: List[Document]) -> List[Document]:
    """Urgent issues first, then oldest first."""
    return sorted(issues, key=lambda d: (not d.get("isUrgent", False), d.get("createdAt") or ""))


class IssueBoard:
    def __init__(self, store: DocumentStore, config: TrackerConfig):
        self.store = store
        self.config = config

    async def set_status(self, issue_id: str, new_status: str) -> None:
        """Overwrite the issue status.

        Any of the known statuses may be written from any other one, including
        moving a resolved issue back to New. Raises NotFound for a missing
        issue and StoreUnavailable on transport errors.
        """
        if new_status not in ISSUE_STATUSES:
            raise ValidationError(f"Invalid status. Allowed: {', '.join(ISSUE_STATUSES)}")
        await self.store.update_document(self.config.issues_collection, issue_id, {"status": new_status})
        logger.info(f"Issue {issue_id} status set to {new_status}")

    def _filters(self, block: Optional[str], urgent_only: bool) -> list:
        filters = [where("status", "in", self.config.open_statuses)]
        if block:
            filters.append(where("block", "==", block))
        if urgent_only:
            filters.append(where("isUrgent", "==", True))
        return filters

    async def list_active_issues(self, block: Optional[str] = None, urgent_only: bool = False) -> List[Document]:
        docs = await self.store.query(self.config.issues_collection, self._filters(block, urgent_only))
        return sort_active_issues(docs)

    async def subscribe_active_issues(
        self,
        callback: Callable[[List[Document]], Any],
        block: Optional[str] = None,
        urgent_only: bool = False,
    ) -> Subscription:
        def _sorted(docs: List[Document]):
            return callback(sort_active_issues(docs))

        return await self.store.subscribe(self.config.issues_collection, self._filters(block, urgent_only), _sorted)

    @staticmethod
    def to_public(doc: Document) -> Dict[str, Any]:
        data = doc.to_dict()
        data.setdefault("reporters", [])
        return data
