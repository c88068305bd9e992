import asyncio
from datetime import datetime

import pytest

from hostel_issues.consolidation import (
    AlreadyReported,
    Consolidated,
    ConsolidationService,
    Created,
    Report,
    consolidation_key,
)
from hostel_issues.document_store import WriteConflict
from hostel_issues.errors import StoreUnavailable, SubmissionFailed, TransactionAborted, ValidationError
from hostel_issues.issues import IssueBoard
from hostel_issues.memory_store import MemoryDocumentStore


def open_issues(store, config, key):
    return [
        issue
        for issue in store.dump(config.issues_collection)
        if issue["consolidationKey"] == key and issue["status"] != "Resolved"
    ]


def test_consolidation_key_is_stable():
    assert consolidation_key("A", 2, "WiFi/Network") == "A_2_WIFI/NETWORK"
    assert consolidation_key("B", 1, "Water Filter") == "B_1_WATER_FILTER"
    assert consolidation_key("D", 4, "Washroom Repair") == consolidation_key("D", 4, "Washroom Repair")


@pytest.mark.asyncio
async def test_first_report_creates_then_second_room_consolidates(store, config, make_report):
    service = ConsolidationService(store, config)

    first = await service.submit_report(make_report(room="201", user_id="u1"))
    assert isinstance(first, Created)

    second = await service.submit_report(make_report(room="305", user_id="u2"))
    assert second == Consolidated(first.issue_id, 2)

    issue = await store.get_by_id(config.issues_collection, first.issue_id)
    assert issue.get("reporters") == [
        {"room": "201", "userId": "u1"},
        {"room": "305", "userId": "u2"},
    ]
    assert issue.get("status") == "New"
    assert issue.get("consolidationKey") == "A_2_WIFI/NETWORK"
    assert datetime.fromisoformat(issue.get("createdAt")).tzinfo is not None


@pytest.mark.asyncio
async def test_same_room_reporting_twice_is_already_reported(store, config, make_report):
    service = ConsolidationService(store, config)

    first = await service.submit_report(make_report(room="201", user_id="u1"))
    again = await service.submit_report(make_report(room="201", user_id="u1-roommate"))

    assert isinstance(first, Created)
    assert again == AlreadyReported(first.issue_id, 1)
    issue = await store.get_by_id(config.issues_collection, first.issue_id)
    assert len(issue.get("reporters")) == 1


@pytest.mark.asyncio
async def test_later_reports_do_not_touch_description_or_urgency(store, config, make_report):
    service = ConsolidationService(store, config)

    created = await service.submit_report(make_report(room="201", description="Router is down", is_urgent=True))
    await service.submit_report(make_report(room="305", description="Slow internet", is_urgent=False))

    issue = await store.get_by_id(config.issues_collection, created.issue_id)
    assert issue.get("description") == "Router is down"
    assert issue.get("isUrgent") is True


@pytest.mark.asyncio
async def test_different_keys_never_merge(store, config, make_report):
    service = ConsolidationService(store, config)

    a = await service.submit_report(make_report(room="201"))
    b = await service.submit_report(make_report(room="201", floor=3))
    c = await service.submit_report(make_report(room="201", category="Lift Issue"))

    assert all(isinstance(o, Created) for o in (a, b, c))
    assert len({a.issue_id, b.issue_id, c.issue_id}) == 3


@pytest.mark.asyncio
async def test_resolved_issue_does_not_block_new_issue(store, config, make_report):
    service = ConsolidationService(store, config)

    old = await service.submit_report(make_report(room="201"))
    await store.update_document(config.issues_collection, old.issue_id, {"status": "Resolved"})

    fresh = await service.submit_report(make_report(room="305"))

    assert isinstance(fresh, Created)
    assert fresh.issue_id != old.issue_id
    resolved = await store.get_by_id(config.issues_collection, old.issue_id)
    assert resolved.get("status") == "Resolved"
    assert len(resolved.get("reporters")) == 1


@pytest.mark.asyncio
async def test_in_progress_issue_still_collects_reports(store, config, make_report):
    service = ConsolidationService(store, config)

    created = await service.submit_report(make_report(room="201"))
    await store.update_document(config.issues_collection, created.issue_id, {"status": "In Progress"})

    outcome = await service.submit_report(make_report(room="305"))
    assert outcome == Consolidated(created.issue_id, 2)


@pytest.mark.asyncio
async def test_stale_advisory_candidate_is_rechecked(store, config, make_report, monkeypatch):
    service = ConsolidationService(store, config)
    old = await service.submit_report(make_report(room="201"))
    await store.update_document(config.issues_collection, old.issue_id, {"status": "Resolved"})

    # Pretend the advisory query ran before the issue was resolved.
    async def stale_lookup(key):
        return old.issue_id

    monkeypatch.setattr(service, "_advisory_lookup", stale_lookup)
    outcome = await service.submit_report(make_report(room="305"))

    assert isinstance(outcome, Created)
    assert outcome.issue_id != old.issue_id


@pytest.mark.asyncio
async def test_vanished_candidate_falls_through_to_creation(store, config, make_report, monkeypatch):
    service = ConsolidationService(store, config)

    async def ghost_lookup(key):
        return "deleted-issue-id"

    monkeypatch.setattr(service, "_advisory_lookup", ghost_lookup)
    outcome = await service.submit_report(make_report(room="201"))
    assert isinstance(outcome, Created)


@pytest.mark.asyncio
async def test_concurrent_reports_merge_into_one_issue(any_store, config, make_report):
    service = ConsolidationService(any_store, config)

    outcomes = await asyncio.gather(
        service.submit_report(make_report(room="201", user_id="u1")),
        service.submit_report(make_report(room="305", user_id="u2")),
    )

    assert sorted(type(o).__name__ for o in outcomes) == ["Consolidated", "Created"]
    assert outcomes[0].issue_id == outcomes[1].issue_id

    issues = await any_store.query(config.issues_collection)
    assert len(issues) == 1
    assert {r["room"] for r in issues[0].get("reporters")} == {"201", "305"}


@pytest.mark.asyncio
async def test_concurrent_duplicate_room_is_recorded_once(store, config, make_report):
    service = ConsolidationService(store, config)

    outcomes = await asyncio.gather(
        service.submit_report(make_report(room="201", user_id="u1")),
        service.submit_report(make_report(room="201", user_id="u1")),
    )

    assert sorted(type(o).__name__ for o in outcomes) == ["AlreadyReported", "Created"]
    issues = store.dump(config.issues_collection)
    assert len(issues) == 1
    assert issues[0]["reporters"] == [{"room": "201", "userId": "u1"}]


@pytest.mark.asyncio
async def test_many_concurrent_rooms_keep_the_invariants(config, make_report):
    store = MemoryDocumentStore(max_attempts=12)
    service = ConsolidationService(store, config)
    rooms = [f"2{n:02d}" for n in range(1, 9)]

    await asyncio.gather(*(service.submit_report(make_report(room=room, user_id=f"u{room}")) for room in rooms))
    # A second wave re-reports every room and must change nothing.
    repeats = await asyncio.gather(*(service.submit_report(make_report(room=room)) for room in rooms))

    key = consolidation_key("A", 2, "WiFi/Network")
    issues = open_issues(store, config, key)
    assert len(issues) == 1
    reporter_rooms = [r["room"] for r in issues[0]["reporters"]]
    assert sorted(reporter_rooms) == sorted(rooms)
    assert len(reporter_rooms) == len(set(reporter_rooms))
    assert all(isinstance(o, AlreadyReported) for o in repeats)


@pytest.mark.asyncio
async def test_concurrent_reports_after_resolution_create_one_new_issue(store, config, make_report):
    service = ConsolidationService(store, config)
    old = await service.submit_report(make_report(room="101"))
    await store.update_document(config.issues_collection, old.issue_id, {"status": "Resolved"})

    outcomes = await asyncio.gather(
        service.submit_report(make_report(room="201")),
        service.submit_report(make_report(room="305")),
    )

    key = consolidation_key("A", 2, "WiFi/Network")
    issues = open_issues(store, config, key)
    assert len(issues) == 1
    assert issues[0]["id"] != old.issue_id
    assert {o.issue_id for o in outcomes} == {issues[0]["id"]}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"block": ""},
        {"floor": None},
        {"category": "  "},
        {"description": ""},
        {"reporter_room": ""},
        {"reporter_user_id": None},
        {"block": "Z"},
        {"floor": 9},
        {"floor": True},
        {"category": "Broken Window"},
    ],
)
async def test_invalid_reports_are_rejected_before_the_store(store, config, make_report, overrides):
    store.available = False  # any store access would raise StoreUnavailable instead
    service = ConsolidationService(store, config)

    with pytest.raises(ValidationError):
        await service.submit_report(make_report(**overrides))


@pytest.mark.asyncio
async def test_unreachable_store_surfaces_submission_failed(store, config, make_report):
    store.available = False
    service = ConsolidationService(store, config)

    with pytest.raises(SubmissionFailed) as excinfo:
        await service.submit_report(make_report())
    assert isinstance(excinfo.value.cause, StoreUnavailable)


class AlwaysConflictingStore(MemoryDocumentStore):
    async def _commit(self, tx, now):
        raise WriteConflict("simulated contention")


@pytest.mark.asyncio
async def test_exhausted_retries_surface_submission_failed(config, make_report):
    store = AlwaysConflictingStore(max_attempts=3)
    service = ConsolidationService(store, config)

    with pytest.raises(SubmissionFailed) as excinfo:
        await service.submit_report(make_report())

    assert isinstance(excinfo.value.cause, TransactionAborted)
    assert excinfo.value.cause.attempts == 3
    assert store.dump(config.issues_collection) == []
    assert store.dump(config.open_keys_collection) == []


def test_report_defaults_to_not_urgent():
    report = Report(block="A", floor=1, category="Cleaning", description="d", reporter_room="101", reporter_user_id="u")
    assert report.is_urgent is False


@pytest.mark.asyncio
async def test_submitted_issues_list_urgent_first_then_oldest(any_store, config, make_report):
    service = ConsolidationService(any_store, config)
    board = IssueBoard(any_store, config)

    first = await service.submit_report(make_report(room="101", floor=1))
    second = await service.submit_report(make_report(room="301", floor=3))
    urgent = await service.submit_report(make_report(room="401", floor=4, is_urgent=True))

    issues = await board.list_active_issues()
    assert [doc.id for doc in issues] == [urgent.issue_id, first.issue_id, second.issue_id]
    stamps = [datetime.fromisoformat(doc.get("createdAt")) for doc in issues]
    assert stamps[1] <= stamps[2]


@pytest.mark.asyncio
async def test_slow_listener_does_not_hold_up_a_report(store, config, make_report):
    release = asyncio.Event()
    seen = []

    async def slow(docs):
        seen.append(len(docs))
        if docs:
            await release.wait()

    await IssueBoard(store, config).subscribe_active_issues(slow)
    service = ConsolidationService(store, config)

    outcome = await asyncio.wait_for(service.submit_report(make_report()), timeout=1)
    assert isinstance(outcome, Created)

    release.set()
    await store.flush_listeners()
    assert seen == [0, 1]


@pytest.mark.asyncio
async def test_interrupted_listener_does_not_fail_a_committed_report(store, config, make_report):
    def interrupted(docs):
        if docs:
            raise asyncio.CancelledError()

    await store.subscribe(config.issues_collection, [], interrupted)
    service = ConsolidationService(store, config)

    outcome = await service.submit_report(make_report())
    await store.flush_listeners()

    assert isinstance(outcome, Created)
    assert len(store.dump(config.issues_collection)) == 1


@pytest.mark.asyncio
async def test_boolean_floor_does_not_open_a_second_issue(store, config, make_report):
    service = ConsolidationService(store, config)
    await service.submit_report(make_report(floor=1))

    with pytest.raises(ValidationError):
        await service.submit_report(make_report(room="305", floor=True))
    assert [i["consolidationKey"] for i in store.dump(config.issues_collection)] == ["A_1_WIFI/NETWORK"]
