"""Daily quota engine backed by the persisted account counters."""

from __future__ import annotations

from datetime import date, datetime, timezone as dt_timezone
from typing import Any, Dict, NamedTuple, Optional
from zoneinfo import ZoneInfo

from .persistence import Persistence

REASON_SUSPENDED = "suspended"
REASON_LIMIT_REACHED = "limit reached"


class QuotaDecision(NamedTuple):
    """Outcome of :meth:`QuotaEngine.check`; ``account`` reflects any reset."""

    allowed: bool
    reason: Optional[str]
    account: Dict[str, Any]


class QuotaEngine:
    """Calendar-day message quota built on top of :class:`Persistence`.

    "Today" is computed in the configured timezone so that every caller of
    the same process agrees on the day boundary.
    """

    def __init__(self, persistence: Persistence, timezone: str = "UTC"):
        """Store the persistence helper used to read and write counters."""
        self.persistence = persistence
        self.timezone = dt_timezone.utc if timezone.upper() == "UTC" else ZoneInfo(timezone)

    def today(self, now: Optional[datetime] = None) -> date:
        """Return the calendar date of ``now`` (defaults to the current time)."""
        if now is None:
            return datetime.now(self.timezone).date()
        return now.astimezone(self.timezone).date()

    async def apply_daily_reset(self, account: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Zero the counter of a non-admin account whose last reset is not today.

        The reset is persisted immediately and the returned copy reflects it.
        """
        if account.get("role") == "admin":
            return account
        today = self.today(now).isoformat()
        if account.get("last_count_reset") == today:
            return account
        await self.persistence.reset_daily_count(account["id"], today)
        refreshed = dict(account)
        refreshed["message_count"] = 0
        refreshed["last_count_reset"] = today
        refreshed["version"] = int(account.get("version", 1)) + 1
        return refreshed

    async def check(
        self,
        account: Dict[str, Any],
        now: Optional[datetime] = None,
        *,
        bypass_limit: bool = False,
    ) -> QuotaDecision:
        """Decide whether ``account`` may send right now.

        Admins are always allowed and never mutated. For everybody else the
        daily reset happens first (even if the send is then refused),
        suspension always refuses, and the limit check is skipped only for
        limit-bypassing sends.
        """
        if account.get("role") == "admin":
            return QuotaDecision(True, None, account)
        account = await self.apply_daily_reset(account, now)
        if account.get("is_suspended"):
            return QuotaDecision(False, REASON_SUSPENDED, account)
        if not bypass_limit and int(account["message_count"]) >= int(account["daily_limit"]):
            return QuotaDecision(False, REASON_LIMIT_REACHED, account)
        return QuotaDecision(True, None, account)

    async def record_send(self, account: Dict[str, Any], *, bypass_limit: bool = False) -> bool:
        """Count one delivered message; returns whether the counter moved."""
        if bypass_limit or account.get("role") == "admin":
            return False
        return await self.persistence.increment_message_count(account["id"])
