"""Core orchestration logic for the relay portal."""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiosqlite
from pydantic import ValidationError as ModelValidationError

from .errors import (
    InvalidCredential,
    LimitReached,
    NotFoundError,
    PermissionDenied,
    PortalError,
    StorageError,
    SuspendedAccount,
    ValidationError,
)
from .ledger import CreditLedger, role_change_overrides
from .logger import get_logger
from .models import AccountUpdate, PurchaseOption, snakify_keys
from .persistence import ACCOUNT_UPDATE_COLUMNS, Persistence
from .prometheus import PortalMetrics
from .quota import REASON_SUSPENDED, QuotaEngine
from .relay import DEFAULT_RELAY_TIMEOUT, RelayDispatcher, validate_endpoint_url
from .workflow import RequestWorkflow

FLAG_MESSAGE = "\U0001F1FA\U0001F1F8"
DEFAULT_SYNC_INTERVAL = 5.0

# Fields an account may change on itself without administrator rights.
SELF_SERVICE_FIELDS = frozenset({"selected_endpoint_id"})


class RelayPortal:
    """Coordinate accounts, quotas, credits, relays and the mailbox workflow."""

    def __init__(
        self,
        *,
        db_path: str = "/data/relay_portal.db",
        logger=None,
        metrics: PortalMetrics | None = None,
        timezone: str = "UTC",
        relay_timeout: float = DEFAULT_RELAY_TIMEOUT,
        purchase_options: Optional[Iterable[PurchaseOption]] = None,
        seed_admins: Iterable[str] = (),
        seed_users: Iterable[str] = (),
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path)
        self.metrics = metrics or PortalMetrics()
        self.quota = QuotaEngine(self.persistence, timezone=timezone)
        self.ledger = CreditLedger(self.persistence, purchase_options)
        self.relay = RelayDispatcher(self.persistence, timeout=relay_timeout)
        self.workflow = RequestWorkflow(self.persistence)
        self._seed_roles: Dict[str, str] = {uid: "user" for uid in seed_users if uid}
        self._seed_roles.update({uid: "admin" for uid in seed_admins if uid})
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self.sync_interval = float(sync_interval)

    async def init(self) -> None:
        """Initialise persistence."""
        await self.persistence.init_db()
        await self._refresh_accounts_gauge()

    async def start(self) -> None:
        self.logger.debug("Starting RelayPortal...")
        await self.init()

    async def stop(self) -> None:
        self._account_locks.clear()

    # --------------------------------------------------------------------- utils
    @asynccontextmanager
    async def _storage(self, operation: str) -> AsyncIterator[None]:
        """Translate persistence failures into :class:`StorageError`."""
        try:
            yield
        except aiosqlite.Error as exc:
            self.logger.exception("Storage failure during %s", operation)
            raise StorageError(f"Failed to {operation}") from exc

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = self._account_locks[account_id] = asyncio.Lock()
        return lock

    async def _require_account(self, account_id: Optional[str]) -> Dict[str, Any]:
        if not account_id:
            raise ValidationError("Account id is required")
        async with self._storage("load account"):
            account = await self.persistence.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account '{account_id}' not found")
        return account

    async def _require_admin(self, account_id: Optional[str]) -> Dict[str, Any]:
        account = await self._require_account(account_id)
        if account.get("role") != "admin":
            raise PermissionDenied("Administrator privileges required")
        return account

    async def _refresh_accounts_gauge(self) -> None:
        """Refresh the metric describing registered accounts."""
        try:
            accounts = await self.persistence.list_accounts()
        except aiosqlite.Error:
            self.logger.exception("Failed to refresh accounts gauge")
            return
        self.metrics.set_accounts(len(accounts))

    # ------------------------------------------------------------------ accounts
    async def list_accounts(self) -> List[Dict[str, Any]]:
        async with self._storage("list accounts"):
            return await self.persistence.list_accounts()

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Return the authoritative account record or ``None`` if it vanished."""
        async with self._storage("load account"):
            return await self.persistence.get_account(account_id)

    async def create_account(self, account_id: Optional[str], role: str = "user") -> Dict[str, Any]:
        """Create an account with the standard defaults.

        A duplicate id surfaces as :class:`StorageError`, like any other
        failed insert.
        """
        account_id = (account_id or "").strip()
        if not account_id:
            raise ValidationError("User ID is required")
        record: Dict[str, Any] = {
            "id": account_id,
            "role": "user",
            "is_suspended": False,
            "message_count": 0,
            "last_count_reset": self.quota.today().isoformat(),
        }
        record.update(role_change_overrides("user", role))
        record["role"] = role
        async with self._storage("create user"):
            account = await self.persistence.insert_account(record)
        self.logger.info("Account %s created (role=%s)", account_id, role)
        await self._refresh_accounts_gauge()
        return account

    async def update_account(
        self,
        account_id: str,
        fields: Dict[str, Any],
        *,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply an administrative partial update.

        A role change overwrites balance and daily limit with the values for
        the new role, regardless of what else the update carries.

        When ``actor_id`` is given it must name an administrator, except for
        an account changing its own selected endpoint.
        """
        updates = {k: v for k, v in snakify_keys(fields).items() if k in ACCOUNT_UPDATE_COLUMNS}
        if not updates:
            raise ValidationError("No update fields provided")
        try:
            updates = AccountUpdate.model_validate(updates).model_dump(mode="json", exclude_unset=True)
        except ModelValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise ValidationError(f"Invalid account update: {problems}") from exc
        current = await self._require_account(account_id)
        if actor_id is not None:
            actor = current if actor_id == account_id else await self._require_account(actor_id)
            if actor["role"] != "admin":
                if actor_id != account_id or not set(updates) <= SELF_SERVICE_FIELDS:
                    raise PermissionDenied("Administrator privileges required")
            elif actor_id == account_id:
                if updates.get("is_suspended") or updates.get("role", current["role"]) != current["role"]:
                    raise PermissionDenied("Administrators cannot suspend or demote themselves")
        selected = updates.get("selected_endpoint_id")
        if selected is not None and selected not in {ep["id"] for ep in current["endpoints"]}:
            raise ValidationError(f"Endpoint '{selected}' is not owned by '{account_id}'")
        updates.update(role_change_overrides(current["role"], updates.get("role")))
        async with self._storage("update user"):
            account = await self.persistence.update_account(account_id, updates)
        if account is None:
            raise NotFoundError(f"Account '{account_id}' not found")
        self.logger.info("Account %s updated: %s", account_id, sorted(updates))
        return account

    async def delete_account(self, account_id: str) -> None:
        """Delete an account together with its activity, requests and targeted notifications."""
        async with self._storage("delete user"):
            removed = await self.persistence.delete_account(account_id)
        if not removed:
            raise NotFoundError(f"Account '{account_id}' not found")
        self._account_locks.pop(account_id, None)
        self.logger.info("Account %s deleted", account_id)
        await self._refresh_accounts_gauge()

    async def authenticate(self, account_id: Optional[str]) -> Dict[str, Any]:
        """Resolve a login identifier, applying the daily reset.

        Unknown ids fail unless they are configured seed identities, in which
        case the account is created on first login.
        """
        account_id = (account_id or "").strip()
        if not account_id:
            raise InvalidCredential()
        account = await self.get_account(account_id)
        if account is None:
            role = self._seed_roles.get(account_id)
            if role is None:
                raise InvalidCredential()
            account = await self.create_account(account_id, role=role)
        async with self._storage("reset daily counter"):
            return await self.quota.apply_daily_reset(account)

    # ----------------------------------------------------------------- endpoints
    async def list_endpoints(self, account_id: str) -> List[Dict[str, Any]]:
        account = await self._require_account(account_id)
        return account["endpoints"]

    async def add_endpoint(self, account_id: str, name: Optional[str], url: Optional[str]) -> Dict[str, Any]:
        """Register a webhook for an account; the first one becomes selected."""
        await self._require_account(account_id)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Endpoint name cannot be empty")
        endpoint = {"id": uuid.uuid4().hex, "name": name, "url": validate_endpoint_url(url)}
        async with self._storage("add endpoint"):
            await self.persistence.add_endpoint(account_id, endpoint)
        return await self._require_account(account_id)

    async def remove_endpoint(self, account_id: str, endpoint_id: str) -> Dict[str, Any]:
        await self._require_account(account_id)
        async with self._storage("remove endpoint"):
            removed = await self.persistence.remove_endpoint(account_id, endpoint_id)
        if not removed:
            raise NotFoundError(f"Endpoint '{endpoint_id}' not found")
        return await self._require_account(account_id)

    async def select_endpoint(self, account_id: str, endpoint_id: str) -> Dict[str, Any]:
        return await self.update_account(account_id, {"selected_endpoint_id": endpoint_id})

    # -------------------------------------------------------------------- relays
    async def send_message(
        self,
        account_id: str,
        text: Optional[str],
        *,
        endpoint_id: Optional[str] = None,
        bypass_limit: bool = False,
    ) -> Dict[str, Any]:
        """Relay ``text`` through one of the account's endpoints.

        Quota denials raise :class:`SuspendedAccount` or :class:`LimitReached`.
        Delivery failures do not raise: the returned activity entry carries
        ``status == "error"`` and the captured detail.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message cannot be empty")
        async with self._lock_for(account_id):
            account = await self._require_account(account_id)
            target_id = endpoint_id or account.get("selected_endpoint_id")
            endpoint = next((ep for ep in account["endpoints"] if ep["id"] == target_id), None)
            if endpoint is None:
                raise ValidationError("No webhook endpoint selected")
            async with self._storage("check quota"):
                decision = await self.quota.check(account, bypass_limit=bypass_limit)
            if not decision.allowed:
                self.metrics.inc_denied(account_id, decision.reason or "")
                self.logger.info("Send refused for %s: %s", account_id, decision.reason)
                if decision.reason == REASON_SUSPENDED:
                    raise SuspendedAccount(account_id)
                raise LimitReached(account_id, int(decision.account["daily_limit"]))
            async with self._storage("relay message"):
                entry = await self.relay.relay(account_id, endpoint["url"], text)
                if entry["status"] == "success":
                    await self.quota.record_send(decision.account, bypass_limit=bypass_limit)
            if entry["status"] == "success":
                self.metrics.inc_sent(account_id)
            else:
                self.metrics.inc_error(account_id)
            return entry

    async def send_flag(self, account_id: str, *, endpoint_id: Optional[str] = None) -> Dict[str, Any]:
        """Send the ceremonial flag message, which never counts against the quota."""
        return await self.send_message(account_id, FLAG_MESSAGE, endpoint_id=endpoint_id, bypass_limit=True)

    async def list_activity(self, account_id: str, *, viewer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return an account's activity newest first.

        When another admin is the viewer, admin logs stay private.
        """
        account = await self._require_account(account_id)
        if viewer_id is not None and viewer_id != account_id:
            await self._require_admin(viewer_id)
            if account.get("role") == "admin":
                raise PermissionDenied("Logs for admin accounts are private and cannot be viewed.")
        async with self._storage("list activity"):
            return await self.persistence.list_activity(account_id)

    # ------------------------------------------------------------------- credits
    async def purchase(self, account_id: str, option_name: str) -> Dict[str, Any]:
        """Buy one of the configured quota options."""
        option = self.ledger.option(option_name)
        async with self._lock_for(account_id):
            account = await self._require_account(account_id)
            async with self._storage("purchase quota"):
                await self.ledger.purchase(account, option.cost, option.limit)
        self.metrics.inc_purchase(account_id)
        self.logger.info("Account %s bought %s (+%d for %d)", account_id, option.name, option.limit, option.cost)
        return await self._require_account(account_id)

    async def adjust_balance(self, admin_id: str, account_id: str, amount: int, operation: str) -> Dict[str, Any]:
        await self._require_admin(admin_id)
        account = await self._require_account(account_id)
        async with self._storage("adjust balance"):
            await self.ledger.adjust_balance(account, amount, operation)
        self.logger.info("Balance of %s adjusted by %s: %s %d", account_id, admin_id, operation, amount)
        return await self._require_account(account_id)

    # ------------------------------------------------------------------ workflow
    async def create_request(self, author_id: str, message: Optional[str]) -> Dict[str, Any]:
        author = await self._require_account(author_id)
        async with self._storage("create request"):
            return await self.workflow.create_request(author, message or "")

    async def resolve_request(self, admin_id: str, request_id: str, status: str) -> Dict[str, Any]:
        admin = await self._require_account(admin_id)
        async with self._storage("resolve request"):
            return await self.workflow.resolve_request(admin, request_id, status)

    async def list_requests(self, account_id: str) -> List[Dict[str, Any]]:
        viewer = await self._require_account(account_id)
        async with self._storage("list requests"):
            return await self.workflow.list_requests(viewer)

    async def send_notification(
        self, admin_id: str, message: Optional[str], target_id: Optional[str] = None
    ) -> Dict[str, Any]:
        admin = await self._require_account(admin_id)
        async with self._storage("send notification"):
            return await self.workflow.send_notification(admin, message or "", target_id)

    async def list_notifications(self, account_id: str) -> List[Dict[str, Any]]:
        viewer = await self._require_account(account_id)
        async with self._storage("list notifications"):
            return await self.workflow.list_notifications(viewer)

    async def mark_notifications_read(self, account_id: str) -> int:
        viewer = await self._require_account(account_id)
        async with self._storage("mark notifications read"):
            return await self.workflow.mark_read(viewer)

    async def unread_count(self, account_id: str) -> int:
        viewer = await self._require_account(account_id)
        async with self._storage("count notifications"):
            return await self.workflow.unread_count(viewer)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands.

        Failures are reported as ``{"ok": False, "error": ..., "code": ...}``
        instead of being raised.
        """
        payload = snakify_keys(payload or {})
        try:
            return await self._dispatch_command(cmd, payload)
        except PortalError as exc:
            return {"ok": False, "error": exc.message, "code": exc.code}

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "listAccounts":
            return {"ok": True, "accounts": await self.list_accounts()}
        if cmd == "addAccount":
            return {"ok": True, "account": await self.create_account(payload.get("id"))}
        if cmd == "updateAccount":
            fields = {k: v for k, v in payload.items() if k != "id"}
            return {"ok": True, "account": await self.update_account(payload.get("id"), fields)}
        if cmd == "deleteAccount":
            await self.delete_account(payload.get("id"))
            return {"ok": True}
        if cmd == "login":
            return {"ok": True, "account": await self.authenticate(payload.get("id"))}
        if cmd == "addEndpoint":
            account = await self.add_endpoint(payload.get("account_id"), payload.get("name"), payload.get("url"))
            return {"ok": True, "account": account}
        if cmd == "removeEndpoint":
            account = await self.remove_endpoint(payload.get("account_id"), payload.get("endpoint_id"))
            return {"ok": True, "account": account}
        if cmd == "sendMessage":
            entry = await self.send_message(
                payload.get("account_id"),
                payload.get("text"),
                endpoint_id=payload.get("endpoint_id"),
                bypass_limit=bool(payload.get("bypass_limit", False)),
            )
            return {"ok": entry["status"] == "success", "entry": entry, "error": entry.get("error")}
        if cmd == "purchase":
            return {"ok": True, "account": await self.purchase(payload.get("account_id"), payload.get("option"))}
        if cmd == "createRequest":
            return {"ok": True, "request": await self.create_request(payload.get("author_id"), payload.get("message"))}
        if cmd == "resolveRequest":
            result = await self.resolve_request(payload.get("admin_id"), payload.get("request_id"), payload.get("status"))
            return {"ok": True, **result}
        if cmd == "sendNotification":
            notification = await self.send_notification(
                payload.get("admin_id"), payload.get("message"), payload.get("target_id")
            )
            return {"ok": True, "notification": notification}
        if cmd == "markNotificationsRead":
            return {"ok": True, "marked": await self.mark_notifications_read(payload.get("account_id"))}
        return {"ok": False, "error": "unknown command"}
