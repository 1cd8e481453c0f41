from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from relay_portal.persistence import Persistence
from relay_portal.quota import REASON_LIMIT_REACHED, REASON_SUSPENDED, QuotaEngine

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


async def _engine(tmp_path, **account):
    p = Persistence(str(tmp_path / "quota.db"))
    await p.init_db()
    record = {"id": "u1", "last_count_reset": "2026-03-02", **account}
    await p.insert_account(record)
    return p, QuotaEngine(p), await p.get_account(record["id"])


@pytest.mark.asyncio
async def test_allows_under_limit(tmp_path):
    _, engine, acc = await _engine(tmp_path, message_count=19)
    decision = await engine.check(acc, NOW)
    assert decision.allowed is True
    assert decision.reason is None


@pytest.mark.asyncio
async def test_denies_at_limit_unless_bypassing(tmp_path):
    _, engine, acc = await _engine(tmp_path, message_count=20)
    decision = await engine.check(acc, NOW)
    assert decision.allowed is False
    assert decision.reason == REASON_LIMIT_REACHED

    bypass = await engine.check(acc, NOW, bypass_limit=True)
    assert bypass.allowed is True


@pytest.mark.asyncio
async def test_suspension_wins_over_everything(tmp_path):
    _, engine, acc = await _engine(tmp_path, is_suspended=True, balance=10_000, daily_limit=1000)
    for bypass in (False, True):
        decision = await engine.check(acc, NOW, bypass_limit=bypass)
        assert decision.allowed is False
        assert decision.reason == REASON_SUSPENDED


@pytest.mark.asyncio
async def test_stale_day_is_reset_even_when_denied(tmp_path):
    p, engine, acc = await _engine(tmp_path, message_count=20, last_count_reset="2026-03-01", is_suspended=True)
    decision = await engine.check(acc, NOW)
    assert decision.allowed is False
    assert decision.reason == REASON_SUSPENDED
    assert decision.account["message_count"] == 0
    assert decision.account["last_count_reset"] == "2026-03-02"

    stored = await p.get_account("u1")
    assert stored["message_count"] == 0
    assert stored["last_count_reset"] == "2026-03-02"
    assert stored["version"] == decision.account["version"]


@pytest.mark.asyncio
async def test_stale_day_reset_unblocks_limit(tmp_path):
    _, engine, acc = await _engine(tmp_path, message_count=20, last_count_reset="2026-02-27")
    decision = await engine.check(acc, NOW)
    assert decision.allowed is True
    assert decision.account["message_count"] == 0


@pytest.mark.asyncio
async def test_admin_is_always_allowed_and_untouched(tmp_path):
    p, engine, acc = await _engine(
        tmp_path, role="admin", message_count=5, daily_limit=1, last_count_reset="2020-01-01", is_suspended=True
    )
    decision = await engine.check(acc, NOW)
    assert decision.allowed is True
    assert await engine.record_send(decision.account) is False

    stored = await p.get_account("u1")
    assert stored["last_count_reset"] == "2020-01-01"
    assert stored["message_count"] == 5
    assert stored["version"] == 1


@pytest.mark.asyncio
async def test_record_send_counts_only_non_bypassing(tmp_path):
    p, engine, acc = await _engine(tmp_path, message_count=3)
    assert await engine.record_send(acc) is True
    assert (await p.get_account("u1"))["message_count"] == 4
    assert await engine.record_send(acc, bypass_limit=True) is False
    assert (await p.get_account("u1"))["message_count"] == 4


def test_today_uses_configured_timezone(tmp_path):
    try:
        ZoneInfo("Asia/Tokyo")
    except ZoneInfoNotFoundError:
        pytest.skip("tz database not available")
    late_evening_utc = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)
    p = Persistence(str(tmp_path / "tz.db"))
    assert QuotaEngine(p).today(late_evening_utc) == date(2026, 3, 1)
    assert QuotaEngine(p, timezone="Asia/Tokyo").today(late_evening_utc) == date(2026, 3, 2)
