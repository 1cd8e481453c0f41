import aiosqlite
import pytest

from relay_portal.models import DEFAULT_BALANCE, DEFAULT_DAILY_LIMIT
from relay_portal.persistence import Persistence


async def _store(tmp_path):
    p = Persistence(str(tmp_path / "portal.db"))
    await p.init_db()
    return p


def _account(account_id, **extra):
    return {"id": account_id, "last_count_reset": "2026-01-01", **extra}


@pytest.mark.asyncio
async def test_account_crud(tmp_path):
    p = await _store(tmp_path)
    acc = await p.insert_account(_account("alice"))
    assert acc["role"] == "user"
    assert acc["is_suspended"] is False
    assert acc["daily_limit"] == DEFAULT_DAILY_LIMIT
    assert acc["balance"] == DEFAULT_BALANCE
    assert acc["endpoints"] == []
    assert acc["selected_endpoint_id"] is None
    assert acc["version"] == 1

    updated = await p.update_account("alice", {"is_suspended": True, "daily_limit": 5, "id": "ignored"})
    assert updated["is_suspended"] is True
    assert updated["daily_limit"] == 5
    assert updated["version"] == 2

    assert await p.update_account("ghost", {"balance": 1}) is None
    assert await p.delete_account("alice") is True
    assert await p.get_account("alice") is None
    assert await p.delete_account("alice") is False


@pytest.mark.asyncio
async def test_duplicate_account_id_is_rejected(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice"))
    with pytest.raises(aiosqlite.IntegrityError):
        await p.insert_account(_account("alice"))


@pytest.mark.asyncio
async def test_list_accounts_orders_by_role_then_id(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("zed", role="admin"))
    await p.insert_account(_account("bob"))
    await p.insert_account(_account("amy"))
    await p.add_endpoint("bob", {"id": "e1", "name": "chat", "url": "https://hooks.example.com/1"})

    accounts = await p.list_accounts()
    assert [a["id"] for a in accounts] == ["amy", "bob", "zed"]
    assert accounts[1]["endpoints"] == [{"id": "e1", "name": "chat", "url": "https://hooks.example.com/1"}]
    assert accounts[0]["endpoints"] == []


@pytest.mark.asyncio
async def test_endpoint_selection_follows_insertion_order(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice"))
    await p.add_endpoint("alice", {"id": "e1", "name": "first", "url": "https://a.example.com"})
    await p.add_endpoint("alice", {"id": "e2", "name": "second", "url": "https://b.example.com"})
    await p.add_endpoint("alice", {"id": "e3", "name": "third", "url": "https://c.example.com"})
    assert (await p.get_account("alice"))["selected_endpoint_id"] == "e1"

    # Removing a non-selected endpoint keeps the selection
    assert await p.remove_endpoint("alice", "e2") is True
    assert (await p.get_account("alice"))["selected_endpoint_id"] == "e1"

    assert await p.remove_endpoint("alice", "e1") is True
    assert (await p.get_account("alice"))["selected_endpoint_id"] == "e3"

    assert await p.remove_endpoint("alice", "e3") is True
    acc = await p.get_account("alice")
    assert acc["selected_endpoint_id"] is None
    assert acc["endpoints"] == []
    assert await p.remove_endpoint("alice", "e3") is False


@pytest.mark.asyncio
async def test_remove_endpoint_requires_ownership(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice"))
    await p.insert_account(_account("bob"))
    await p.add_endpoint("alice", {"id": "e1", "name": "mine", "url": "https://a.example.com"})
    assert await p.remove_endpoint("bob", "e1") is False
    assert len(await p.list_endpoints("alice")) == 1


@pytest.mark.asyncio
async def test_daily_reset_and_increment(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice", message_count=7))

    assert await p.reset_daily_count("alice", "2026-01-02") is True
    acc = await p.get_account("alice")
    assert acc["message_count"] == 0
    assert acc["last_count_reset"] == "2026-01-02"
    assert await p.reset_daily_count("alice", "2026-01-02") is False

    assert await p.increment_message_count("alice") is True
    assert (await p.get_account("alice"))["message_count"] == 1
    assert await p.increment_message_count("ghost") is False


@pytest.mark.asyncio
async def test_spend_for_limit_is_guarded_by_balance(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice"))

    assert await p.spend_for_limit("alice", 20, 50) is True
    acc = await p.get_account("alice")
    assert acc["balance"] == 80
    assert acc["daily_limit"] == 70

    assert await p.spend_for_limit("alice", 100, 300) is False
    acc = await p.get_account("alice")
    assert acc["balance"] == 80
    assert acc["daily_limit"] == 70


@pytest.mark.asyncio
async def test_adjust_balance_floors_at_zero(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice"))
    assert await p.adjust_balance("alice", 25) is True
    assert (await p.get_account("alice"))["balance"] == 125
    assert await p.adjust_balance("alice", -500) is True
    assert (await p.get_account("alice"))["balance"] == 0


@pytest.mark.asyncio
async def test_activity_terminal_states_are_final(tmp_path):
    p = await _store(tmp_path)
    await p.insert_activity(
        {
            "id": "a1",
            "account_id": "alice",
            "summary": 'Sending: "hi..."',
            "status": "sending",
            "created_at": "2026-01-01T10:00:00Z",
        }
    )
    await p.insert_activity(
        {
            "id": "a2",
            "account_id": "alice",
            "summary": 'Sending: "later..."',
            "status": "sending",
            "created_at": "2026-01-01T11:00:00Z",
        }
    )
    assert await p.finish_activity("a1", "success") is True
    assert await p.finish_activity("a1", "error", "late failure") is False
    entry = await p.get_activity("a1")
    assert entry["status"] == "success"
    assert entry["error"] is None

    assert [e["id"] for e in await p.list_activity("alice")] == ["a2", "a1"]


@pytest.mark.asyncio
async def test_resolve_request_only_once(tmp_path):
    p = await _store(tmp_path)
    await p.insert_request(
        {"id": "r1", "author_id": "alice", "message": "more quota", "created_at": "2026-01-01T10:00:00Z"}
    )
    note = {"id": "n1", "message": "approved", "target_id": "alice", "created_at": "2026-01-01T11:00:00Z"}
    assert await p.resolve_request("r1", "approved", "2026-01-01T11:00:00Z", note) is True

    again = {"id": "n2", "message": "denied", "target_id": "alice", "created_at": "2026-01-01T12:00:00Z"}
    assert await p.resolve_request("r1", "denied", "2026-01-01T12:00:00Z", again) is False

    request = await p.get_request("r1")
    assert request["status"] == "approved"
    assert request["resolved_at"] == "2026-01-01T11:00:00Z"
    assert [n["id"] for n in await p.list_notifications()] == ["n1"]


@pytest.mark.asyncio
async def test_notification_read_state_is_per_viewer(tmp_path):
    p = await _store(tmp_path)
    await p.insert_notification({"id": "n1", "message": "hello all", "created_at": "2026-01-01T10:00:00Z"})
    await p.insert_notification(
        {"id": "n2", "message": "hello bob", "target_id": "bob", "created_at": "2026-01-01T11:00:00Z"}
    )

    alice_view = await p.list_notifications("alice")
    assert [n["id"] for n in alice_view] == ["n1"]
    assert alice_view[0]["is_read"] is False

    assert await p.mark_notifications_read("alice") == 1
    assert await p.count_unread("alice") == 0

    bob_view = await p.list_notifications("bob")
    assert [n["id"] for n in bob_view] == ["n2", "n1"]
    assert all(n["is_read"] is False for n in bob_view)
    assert await p.count_unread("bob") == 2

    assert await p.mark_notifications_read("bob") == 2
    assert await p.mark_notifications_read("bob") == 0
    assert all(n["is_read"] for n in await p.list_notifications("bob"))


@pytest.mark.asyncio
async def test_delete_account_cascades(tmp_path):
    p = await _store(tmp_path)
    await p.insert_account(_account("alice"))
    await p.insert_account(_account("bob"))
    await p.add_endpoint("alice", {"id": "e1", "name": "chat", "url": "https://a.example.com"})
    await p.insert_activity(
        {"id": "a1", "account_id": "alice", "summary": "s", "status": "success", "created_at": "2026-01-01T10:00:00Z"}
    )
    await p.insert_request({"id": "r1", "author_id": "alice", "message": "m", "created_at": "2026-01-01T10:00:00Z"})
    await p.insert_request({"id": "r2", "author_id": "bob", "message": "m", "created_at": "2026-01-01T10:00:00Z"})
    await p.insert_notification({"id": "n1", "message": "all", "created_at": "2026-01-01T10:00:00Z"})
    await p.insert_notification(
        {"id": "n2", "message": "you", "target_id": "alice", "created_at": "2026-01-01T11:00:00Z"}
    )
    await p.mark_notifications_read("alice")

    assert await p.delete_account("alice") is True

    assert await p.list_endpoints("alice") == []
    assert await p.list_activity("alice") == []
    assert [r["id"] for r in await p.list_requests()] == ["r2"]
    assert [n["id"] for n in await p.list_notifications()] == ["n1"]
    # A re-created account with the same id starts with a clean read state
    assert await p.count_unread("alice") == 1
