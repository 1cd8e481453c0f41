"""One-shot webhook delivery with an append-only activity log."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp

from .errors import DeliveryError, ValidationError
from .logger import get_logger
from .persistence import Persistence

DEFAULT_RELAY_TIMEOUT = 10.0
SUMMARY_PREVIEW_LENGTH = 50


def validate_endpoint_url(url: Optional[str]) -> str:
    """Return ``url`` stripped, or raise if it is not an http(s) URL."""
    candidate = (url or "").strip()
    if not candidate.startswith(("http://", "https://")):
        raise ValidationError("Invalid webhook URL. Must start with http:// or https://")
    return candidate


def summarise_message(text: str) -> str:
    """Return the truncated preview stored in the activity log."""
    return f'Sending: "{text[:SUMMARY_PREVIEW_LENGTH]}..."'


def _extract_error_detail(status: int, body: str) -> str:
    """Build a readable failure message from an error response body."""
    detail = f"Request failed with status {status}"
    if not body:
        return detail
    try:
        data = json.loads(body)
    except ValueError:
        return f"{detail}: {body}"
    if isinstance(data, dict) and data.get("error") is not None:
        error = data["error"]
        if isinstance(error, dict) and error.get("message") is not None:
            error = error["message"]
        data = error
    if isinstance(data, str):
        return f"{detail}: {data}"
    return f"{detail}: {json.dumps(data)}"


class RelayDispatcher:
    """Deliver a text message to a webhook exactly once.

    Each call to :meth:`relay` writes an activity entry in ``sending`` state
    before the network call is issued and moves it to ``success`` or
    ``error`` once the call resolves. There are no retries.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        timeout: float = DEFAULT_RELAY_TIMEOUT,
        logger=None,
    ):
        self.persistence = persistence
        self.timeout = float(timeout)
        self.logger = logger or get_logger("RelayDispatcher")

    @staticmethod
    def _utc_now_iso() -> str:
        """Return the current UTC timestamp as ISO-8601 string."""
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    async def deliver(self, url: str, text: str) -> None:
        """POST ``{"text": text}`` to ``url``; raise :class:`DeliveryError` on failure."""
        url = validate_endpoint_url(url)
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.post(url, json={"text": text}) as response:
                    if 200 <= response.status < 300:
                        return
                    try:
                        body = await response.text()
                    except (aiohttp.ClientError, UnicodeDecodeError):
                        body = ""
                    raise DeliveryError(_extract_error_detail(response.status, body.strip()))
        except asyncio.TimeoutError:
            raise DeliveryError(f"Request timed out after {self.timeout:g}s") from None
        except aiohttp.ClientError as exc:
            raise DeliveryError(f"Request failed: {exc}") from exc

    async def relay(self, account_id: str, url: str, text: str) -> Dict[str, Any]:
        """Deliver ``text`` on behalf of ``account_id`` and return the final log entry."""
        url = validate_endpoint_url(url)
        entry: Dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "account_id": account_id,
            "summary": summarise_message(text),
            "status": "sending",
            "error": None,
            "created_at": self._utc_now_iso(),
        }
        await self.persistence.insert_activity(entry)
        try:
            await self.deliver(url, text)
        except DeliveryError as exc:
            self.logger.warning("Relay for account %s failed: %s", account_id, exc.detail)
            await self.persistence.finish_activity(entry["id"], "error", exc.detail)
            entry.update(status="error", error=exc.detail)
            return entry
        await self.persistence.finish_activity(entry["id"], "success")
        entry["status"] = "success"
        return entry
