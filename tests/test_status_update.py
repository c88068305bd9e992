import pytest

from hostel_issues.errors import NotFound, StoreUnavailable, ValidationError
from hostel_issues.issues import IssueBoard


async def seed_issue(store, config, issue_id, **fields):
    data = {
        "block": "A",
        "floor": 1,
        "category": "Cleaning",
        "description": "Corridor not swept",
        "isUrgent": False,
        "status": "New",
        "consolidationKey": "A_1_CLEANING",
        "createdAt": "2024-03-01T09:00:00+00:00",
        "reporters": [{"room": "101", "userId": "u1"}],
    }
    data.update(fields)
    await store.set_document(config.issues_collection, issue_id, data)


@pytest.mark.asyncio
async def test_status_moves_forward(store, config):
    board = IssueBoard(store, config)
    await seed_issue(store, config, "i1")

    await board.set_status("i1", "In Progress")
    assert (await store.get_by_id(config.issues_collection, "i1")).get("status") == "In Progress"

    await board.set_status("i1", "Resolved")
    assert (await store.get_by_id(config.issues_collection, "i1")).get("status") == "Resolved"


@pytest.mark.asyncio
async def test_status_change_only_touches_status(store, config):
    board = IssueBoard(store, config)
    await seed_issue(store, config, "i1")
    before = await store.get_by_id(config.issues_collection, "i1")

    await board.set_status("i1", "In Progress")

    after = await store.get_by_id(config.issues_collection, "i1")
    assert {k: v for k, v in after.data.items() if k != "status"} == {
        k: v for k, v in before.data.items() if k != "status"
    }


@pytest.mark.asyncio
async def test_resolved_issue_can_be_reopened(store, config):
    board = IssueBoard(store, config)
    await seed_issue(store, config, "i1", status="Resolved")

    await board.set_status("i1", "New")
    assert (await store.get_by_id(config.issues_collection, "i1")).get("status") == "New"


@pytest.mark.asyncio
async def test_unknown_status_is_rejected(store, config):
    board = IssueBoard(store, config)
    await seed_issue(store, config, "i1")

    with pytest.raises(ValidationError):
        await board.set_status("i1", "Closed")
    assert (await store.get_by_id(config.issues_collection, "i1")).get("status") == "New"


@pytest.mark.asyncio
async def test_missing_issue_raises_not_found(store, config):
    board = IssueBoard(store, config)
    with pytest.raises(NotFound):
        await board.set_status("missing", "Resolved")


@pytest.mark.asyncio
async def test_transport_failure_raises_store_unavailable(store, config):
    board = IssueBoard(store, config)
    await seed_issue(store, config, "i1")
    store.available = False

    with pytest.raises(StoreUnavailable):
        await board.set_status("i1", "Resolved")


@pytest.mark.asyncio
async def test_active_issues_sorted_urgent_then_oldest(any_store, config):
    board = IssueBoard(any_store, config)
    await seed_issue(any_store, config, "old", createdAt="2024-03-01T08:00:00+00:00")
    await seed_issue(any_store, config, "new", createdAt="2024-03-02T08:00:00+00:00")
    await seed_issue(any_store, config, "urgent-late", isUrgent=True, createdAt="2024-03-03T08:00:00+00:00")
    await seed_issue(any_store, config, "urgent-early", isUrgent=True, createdAt="2024-03-01T07:00:00+00:00")
    await seed_issue(any_store, config, "done", status="Resolved", isUrgent=True)
    await seed_issue(any_store, config, "working", status="In Progress", createdAt="2024-03-01T09:00:00+00:00")

    ids = [doc.id for doc in await board.list_active_issues()]
    assert ids == ["urgent-early", "urgent-late", "old", "working", "new"]


@pytest.mark.asyncio
async def test_active_issues_filtered_by_block_and_urgency(any_store, config):
    board = IssueBoard(any_store, config)
    await seed_issue(any_store, config, "a-calm")
    await seed_issue(any_store, config, "a-urgent", isUrgent=True)
    await seed_issue(any_store, config, "b-urgent", block="B", isUrgent=True)

    assert {d.id for d in await board.list_active_issues(block="A")} == {"a-calm", "a-urgent"}
    assert {d.id for d in await board.list_active_issues(urgent_only=True)} == {"a-urgent", "b-urgent"}
    assert [d.id for d in await board.list_active_issues(block="B", urgent_only=True)] == ["b-urgent"]


@pytest.mark.asyncio
async def test_board_subscription_pushes_sorted_snapshots(store, config):
    board = IssueBoard(store, config)
    snapshots = []
    await seed_issue(store, config, "calm", createdAt="2024-03-01T08:00:00+00:00")

    subscription = await board.subscribe_active_issues(lambda docs: snapshots.append([d.id for d in docs]))
    await seed_issue(store, config, "urgent", isUrgent=True, createdAt="2024-03-05T08:00:00+00:00")
    await store.flush_listeners()
    await board.set_status("calm", "Resolved")
    await store.flush_listeners()
    subscription.cancel()

    assert snapshots == [["calm"], ["urgent", "calm"], ["urgent"]]
