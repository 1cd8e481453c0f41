"""Request and notification mailboxes between users and administrators."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, PermissionDenied, ValidationError
from .logger import get_logger
from .persistence import Persistence

RESOLUTION_STATUSES = ("approved", "denied")
PREVIEW_LENGTH = 50


def _require_admin(actor: Dict[str, Any], action: str) -> None:
    if actor.get("role") != "admin":
        raise PermissionDenied(f"Only administrators can {action}")


def resolution_message(request_text: str, status: str) -> str:
    """Text of the notification sent to the author of a resolved request."""
    return f'Your request "{request_text[:PREVIEW_LENGTH]}" has been {status}.'


class RequestWorkflow:
    """User requests (pending -> approved/denied) and admin notifications.

    Accounts are referenced by id only; callers pass the resolved actor
    account so role checks happen here.
    """

    def __init__(self, persistence: Persistence, logger=None):
        self.persistence = persistence
        self.logger = logger or get_logger("RequestWorkflow")

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    # Requests -------------------------------------------------------------------
    async def create_request(self, author: Dict[str, Any], message: str) -> Dict[str, Any]:
        """Store a new pending request.

        Suspended accounts may still submit requests; only sends are gated
        on suspension.
        """
        text = (message or "").strip()
        if not text:
            raise ValidationError("Request message cannot be empty")
        request = {
            "id": uuid.uuid4().hex,
            "author_id": author["id"],
            "message": text,
            "status": "pending",
            "created_at": self._utc_now_iso(),
            "resolved_at": None,
        }
        await self.persistence.insert_request(request)
        self.logger.info("Request %s submitted by %s", request["id"], author["id"])
        return request

    async def resolve_request(self, admin: Dict[str, Any], request_id: str, status: str) -> Dict[str, Any]:
        """Approve or deny a pending request and notify its author.

        Returns ``{"request": ..., "notification": ...}``.
        """
        _require_admin(admin, "resolve requests")
        if status not in RESOLUTION_STATUSES:
            raise ValidationError("status must be 'approved' or 'denied'")
        request = await self.persistence.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request '{request_id}' not found")
        if request["status"] != "pending":
            raise ValidationError(f"Request '{request_id}' is already {request['status']}")
        now = self._utc_now_iso()
        notification = {
            "id": uuid.uuid4().hex,
            "message": resolution_message(request["message"], status),
            "target_id": request["author_id"],
            "created_at": now,
            "is_read": False,
        }
        if not await self.persistence.resolve_request(request_id, status, now, notification):
            raise ValidationError(f"Request '{request_id}' was resolved concurrently")
        request.update(status=status, resolved_at=now)
        self.logger.info("Request %s %s by %s", request_id, status, admin["id"])
        return {"request": request, "notification": notification}

    async def list_requests(self, viewer: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Admins see every request, users only their own."""
        if viewer.get("role") == "admin":
            return await self.persistence.list_requests()
        return await self.persistence.list_requests(author_id=viewer["id"])

    # Notifications --------------------------------------------------------------
    async def send_notification(
        self,
        admin: Dict[str, Any],
        message: str,
        target_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a notification for ``target_id`` or, when omitted, for everyone."""
        _require_admin(admin, "send notifications")
        text = (message or "").strip()
        if not text:
            raise ValidationError("Notification message cannot be empty")
        target = (target_id or "").strip() or None
        if target is not None and await self.persistence.get_account(target) is None:
            raise NotFoundError(f"Account '{target}' not found")
        notification = {
            "id": uuid.uuid4().hex,
            "message": text,
            "target_id": target,
            "created_at": self._utc_now_iso(),
            "is_read": False,
        }
        await self.persistence.insert_notification(notification)
        self.logger.info("Notification %s sent to %s", notification["id"], target or "everyone")
        return notification

    async def list_notifications(self, viewer: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.persistence.list_notifications(viewer["id"])

    async def mark_read(self, viewer: Dict[str, Any]) -> int:
        """Mark every notification visible to ``viewer`` as read, for that viewer only."""
        return await self.persistence.mark_notifications_read(viewer["id"])

    async def unread_count(self, viewer: Dict[str, Any]) -> int:
        return await self.persistence.count_unread(viewer["id"])
