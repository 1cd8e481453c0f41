import pytest

from relay_portal.errors import NotFoundError, PermissionDenied, ValidationError
from relay_portal.persistence import Persistence
from relay_portal.workflow import RequestWorkflow, resolution_message


async def _workflow(tmp_path):
    p = Persistence(str(tmp_path / "workflow.db"))
    await p.init_db()
    admin = await p.insert_account({"id": "root", "role": "admin", "last_count_reset": "2026-01-01"})
    alice = await p.insert_account({"id": "alice", "last_count_reset": "2026-01-01"})
    bob = await p.insert_account({"id": "bob", "last_count_reset": "2026-01-01"})
    return p, RequestWorkflow(p), admin, alice, bob


@pytest.mark.asyncio
async def test_request_lifecycle_notifies_author(tmp_path):
    p, wf, admin, alice, _ = await _workflow(tmp_path)
    request = await wf.create_request(alice, "  Please raise my limit  ")
    assert request["status"] == "pending"
    assert request["message"] == "Please raise my limit"
    assert request["resolved_at"] is None

    result = await wf.resolve_request(admin, request["id"], "approved")
    assert result["request"]["status"] == "approved"
    assert result["request"]["resolved_at"] is not None
    note = result["notification"]
    assert note["target_id"] == "alice"
    assert note["message"] == 'Your request "Please raise my limit" has been approved.'

    inbox = await wf.list_notifications(alice)
    assert [n["id"] for n in inbox] == [note["id"]]

    with pytest.raises(ValidationError):
        await wf.resolve_request(admin, request["id"], "denied")
    assert len(await p.list_notifications()) == 1


@pytest.mark.asyncio
async def test_resolve_validation(tmp_path):
    _, wf, admin, alice, _ = await _workflow(tmp_path)
    request = await wf.create_request(alice, "hi")
    with pytest.raises(PermissionDenied):
        await wf.resolve_request(alice, request["id"], "approved")
    with pytest.raises(ValidationError):
        await wf.resolve_request(admin, request["id"], "pending")
    with pytest.raises(NotFoundError):
        await wf.resolve_request(admin, "missing", "denied")


@pytest.mark.asyncio
async def test_empty_request_is_rejected(tmp_path):
    _, wf, _, alice, _ = await _workflow(tmp_path)
    with pytest.raises(ValidationError):
        await wf.create_request(alice, "   ")


@pytest.mark.asyncio
async def test_request_visibility(tmp_path):
    _, wf, admin, alice, bob = await _workflow(tmp_path)
    await wf.create_request(alice, "from alice")
    await wf.create_request(bob, "from bob")
    assert {r["author_id"] for r in await wf.list_requests(admin)} == {"alice", "bob"}
    assert [r["message"] for r in await wf.list_requests(alice)] == ["from alice"]


@pytest.mark.asyncio
async def test_notifications_broadcast_and_targeted(tmp_path):
    _, wf, admin, alice, bob = await _workflow(tmp_path)
    broadcast = await wf.send_notification(admin, "maintenance tonight")
    targeted = await wf.send_notification(admin, "welcome", "bob")
    assert broadcast["target_id"] is None
    assert targeted["target_id"] == "bob"

    assert [n["id"] for n in await wf.list_notifications(alice)] == [broadcast["id"]]
    assert {n["id"] for n in await wf.list_notifications(bob)} == {broadcast["id"], targeted["id"]}

    with pytest.raises(PermissionDenied):
        await wf.send_notification(alice, "hey")
    with pytest.raises(ValidationError):
        await wf.send_notification(admin, "")
    with pytest.raises(NotFoundError):
        await wf.send_notification(admin, "hello", "ghost")


@pytest.mark.asyncio
async def test_marking_read_does_not_affect_other_viewers(tmp_path):
    _, wf, admin, alice, bob = await _workflow(tmp_path)
    await wf.send_notification(admin, "maintenance tonight")
    assert await wf.mark_read(alice) == 1
    assert await wf.unread_count(alice) == 0
    assert await wf.unread_count(bob) == 1


def test_resolution_message_truncates_long_requests():
    text = "a" * 60
    assert resolution_message(text, "denied") == f'Your request "{"a" * 50}" has been denied.'
