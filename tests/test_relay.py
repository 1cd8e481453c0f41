import asyncio

import aiohttp
import pytest
from aioresponses import aioresponses

from relay_portal.errors import DeliveryError, ValidationError
from relay_portal.persistence import Persistence
from relay_portal.relay import (
    RelayDispatcher,
    _extract_error_detail,
    summarise_message,
    validate_endpoint_url,
)

HOOK = "https://hooks.example.com/services/T000/B000"


async def _dispatcher(tmp_path, **kwargs):
    p = Persistence(str(tmp_path / "relay.db"))
    await p.init_db()
    return p, RelayDispatcher(p, **kwargs)


@pytest.mark.asyncio
async def test_successful_relay_logs_success(tmp_path):
    p, relay = await _dispatcher(tmp_path)
    with aioresponses() as m:
        m.post(HOOK, status=200, payload={"ok": True})
        entry = await relay.relay("alice", HOOK, "hello there")
        calls = next(iter(m.requests.values()))
    assert len(calls) == 1
    assert calls[0].kwargs["json"] == {"text": "hello there"}

    assert entry["status"] == "success"
    assert entry["error"] is None
    assert entry["summary"] == 'Sending: "hello there..."'
    stored = await p.list_activity("alice")
    assert len(stored) == 1
    assert stored[0]["id"] == entry["id"]
    assert stored[0]["status"] == "success"


@pytest.mark.asyncio
async def test_error_body_detail_is_captured(tmp_path):
    p, relay = await _dispatcher(tmp_path)
    with aioresponses() as m:
        m.post(HOOK, status=400, payload={"error": {"message": "invalid_token"}})
        entry = await relay.relay("alice", HOOK, "hello")
    assert entry["status"] == "error"
    assert entry["error"] == "Request failed with status 400: invalid_token"
    stored = await p.get_activity(entry["id"])
    assert stored["status"] == "error"
    assert stored["error"] == entry["error"]


@pytest.mark.asyncio
async def test_plain_text_error_body(tmp_path):
    _, relay = await _dispatcher(tmp_path)
    with aioresponses() as m:
        m.post(HOOK, status=500, body="upstream exploded")
        entry = await relay.relay("alice", HOOK, "hello")
    assert entry["error"] == "Request failed with status 500: upstream exploded"


@pytest.mark.asyncio
async def test_network_failure_is_logged_not_raised(tmp_path):
    p, relay = await _dispatcher(tmp_path)
    with aioresponses() as m:
        m.post(HOOK, exception=aiohttp.ClientConnectionError("connection refused"))
        entry = await relay.relay("alice", HOOK, "hello")
    assert entry["status"] == "error"
    assert entry["error"].startswith("Request failed")
    assert (await p.list_activity("alice"))[0]["status"] == "error"


@pytest.mark.asyncio
async def test_timeout_is_reported(tmp_path):
    _, relay = await _dispatcher(tmp_path, timeout=2)
    with aioresponses() as m:
        m.post(HOOK, exception=asyncio.TimeoutError())
        with pytest.raises(DeliveryError) as excinfo:
            await relay.deliver(HOOK, "hello")
    assert excinfo.value.detail == "Request timed out after 2s"


@pytest.mark.asyncio
async def test_no_retry_after_failure(tmp_path):
    _, relay = await _dispatcher(tmp_path)
    with aioresponses() as m:
        m.post(HOOK, status=503)
        m.post(HOOK, status=200)
        entry = await relay.relay("alice", HOOK, "hello")
        calls = next(iter(m.requests.values()))
    assert entry["status"] == "error"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalid_url_creates_no_entry(tmp_path):
    p, relay = await _dispatcher(tmp_path)
    with pytest.raises(ValidationError):
        await relay.relay("alice", "ftp://files.example.com", "hello")
    assert await p.list_activity("alice") == []


def test_validate_endpoint_url():
    assert validate_endpoint_url("  https://example.com/hook ") == "https://example.com/hook"
    assert validate_endpoint_url("http://localhost:9000") == "http://localhost:9000"
    for bad in (None, "", "example.com", "ws://example.com"):
        with pytest.raises(ValidationError):
            validate_endpoint_url(bad)


def test_summary_truncates_to_fifty_characters():
    text = "x" * 80
    assert summarise_message(text) == f'Sending: "{"x" * 50}..."'


def test_extract_error_detail_variants():
    assert _extract_error_detail(404, "") == "Request failed with status 404"
    assert _extract_error_detail(400, '{"error": "bad"}') == "Request failed with status 400: bad"
    assert _extract_error_detail(422, '{"detail": "x"}') == 'Request failed with status 422: {"detail": "x"}'
    assert _extract_error_detail(500, "oops") == "Request failed with status 500: oops"
