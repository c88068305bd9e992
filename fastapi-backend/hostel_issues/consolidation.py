"""
Issue consolidation.

Several rooms on a floor usually notice the same broken lift or dead WiFi at
once. Instead of one ticket per room, reports sharing a block, floor and
category are merged into the single open issue for that consolidation key,
and the reporting room is tagged onto it.

The decision runs in two phases:

1. an advisory query for an open issue with the key, which is cheap but may be
   stale by the time we act on it;
2. a store transaction that re-reads the candidate by id and decides between
   "already reported", "tag the existing issue" and "create a new issue".

The transaction also reads and maintains one index document per key (in the
open-keys collection) pointing at the issue last created for that key. Two
submitters that both find no candidate therefore both touch the same index
document; the store lets only one of them commit, and the retry of the other
finds the winner's issue through the index and tags it instead.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .config import TrackerConfig
from .document_store import Document, DocumentStore, Transaction, where
from .errors import StoreUnavailable, SubmissionFailed, TransactionAborted, ValidationError
from .metrics import ISSUE_REPORTS
from .models import STATUS_NEW

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s")


def consolidation_key(block: str, floor: int, category: str) -> str:
    """Deterministic match key, e.g. ("A", 2, "WiFi/Network") -> "A_2_WIFI/NETWORK"."""
    return f"{block}_{floor}_{_WHITESPACE.sub('_', category).upper()}"


@dataclass(frozen=True)
class Report:
    block: str
    floor: int
    category: str
    description: str
    reporter_room: str
    reporter_user_id: str
    is_urgent: bool = False


@dataclass(frozen=True)
class Created:
    issue_id: str
    reporter_count: int = 1
    outcome = "created"


@dataclass(frozen=True)
class Consolidated:
    issue_id: str
    reporter_count: int
    outcome = "consolidated"


@dataclass(frozen=True)
class AlreadyReported:
    issue_id: str
    reporter_count: int
    outcome = "already_reported"


ConsolidationOutcome = Union[Created, Consolidated, AlreadyReported]


class ConsolidationService:
    def __init__(self, store: DocumentStore, config: TrackerConfig):
        self.store = store
        self.config = config

    def validate(self, report: Report) -> None:
        missing = [
            name
            for name in ("block", "floor", "category", "description", "reporter_room", "reporter_user_id")
            if _is_blank(getattr(report, name))
        ]
        if missing:
            raise ValidationError(f"Missing required report fields: {', '.join(missing)}")
        if report.block not in self.config.blocks:
            raise ValidationError(f"Unknown block: {report.block}")
        # bool is an int subclass and True == 1, but would key as "True"
        if isinstance(report.floor, bool) or report.floor not in self.config.floors:
            raise ValidationError(f"Unknown floor: {report.floor}")
        if report.category not in self.config.categories:
            raise ValidationError(f"Unknown category: {report.category}")

    async def submit_report(self, report: Report) -> ConsolidationOutcome:
        self.validate(report)
        key = consolidation_key(report.block, report.floor, report.category)

        try:
            candidate_id = await self._advisory_lookup(key)
            outcome = await self.store.run_transaction(
                lambda tx: self._decide(tx, key, candidate_id, report)
            )
        except (TransactionAborted, StoreUnavailable) as exc:
            ISSUE_REPORTS.labels(outcome="failed").inc()
            logger.error(f"Report for {key} from room {report.reporter_room} failed: {exc}")
            raise SubmissionFailed(f"Failed to submit issue: {exc}", cause=exc) from exc

        ISSUE_REPORTS.labels(outcome=outcome.outcome).inc()
        logger.info(
            f"Report for {key} from room {report.reporter_room}: {outcome.outcome} "
            f"(issue={outcome.issue_id}, reporters={outcome.reporter_count})"
        )
        return outcome

    async def _advisory_lookup(self, key: str) -> Optional[str]:
        matches = await self.store.query(
            self.config.issues_collection,
            [
                where("consolidationKey", "==", key),
                where("status", "in", self.config.open_statuses),
            ],
        )
        return matches[0].id if matches else None

    async def _read_open_issue(self, tx: Transaction, issue_id: Optional[str], key: str) -> Optional[Document]:
        if not issue_id:
            return None
        issue = await tx.get(self.config.issues_collection, issue_id)
        # The advisory result may be stale: the issue can be gone or resolved by now.
        if issue is None or issue.get("status") not in self.config.open_statuses:
            return None
        if issue.get("consolidationKey") != key:
            return None
        return issue

    async def _decide(
        self,
        tx: Transaction,
        key: str,
        candidate_id: Optional[str],
        report: Report,
    ) -> ConsolidationOutcome:
        issue = await self._read_open_issue(tx, candidate_id, key)
        index = await tx.get(self.config.open_keys_collection, key)
        if issue is None and index is not None and index.get("issueId") != candidate_id:
            issue = await self._read_open_issue(tx, index.get("issueId"), key)

        reporter = {"room": report.reporter_room, "userId": report.reporter_user_id}

        if issue is not None:
            reporters = list(issue.get("reporters") or [])
            if any(r.get("room") == report.reporter_room for r in reporters):
                return AlreadyReported(issue.id, len(reporters))
            reporters.append(reporter)
            tx.update(self.config.issues_collection, issue.id, {"reporters": reporters})
            return Consolidated(issue.id, len(reporters))

        issue_id = tx.create(self.config.issues_collection, self._new_issue(key, report, reporter))
        tx.set(self.config.open_keys_collection, key, {"consolidationKey": key, "issueId": issue_id})
        return Created(issue_id)

    def _new_issue(self, key: str, report: Report, reporter: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "block": report.block,
            "floor": report.floor,
            "category": report.category,
            "description": report.description,
            "isUrgent": bool(report.is_urgent),
            "status": STATUS_NEW,
            "consolidationKey": key,
            "createdAt": self.store.server_timestamp(),
            "reporters": [reporter],
        }


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


__all__ = [
    "AlreadyReported",
    "Consolidated",
    "ConsolidationOutcome",
    "ConsolidationService",
    "Created",
    "Report",
    "consolidation_key",
]
