"""Session binding and reconciliation against the account store."""

from __future__ import annotations

import asyncio
import inspect
import math
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .core import RelayPortal
from .errors import InvalidCredential, PortalError
from .local_state import LocalStateStore
from .logger import get_logger
from .models import Account, snakify_keys


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class SessionController:
    """Keep one session's view of its own account in step with the store.

    The session is bound to an account *id*; ``account`` is only a working
    copy that :meth:`reconcile` refreshes. When the account disappears the
    session is forced back to ``anonymous``.
    """

    def __init__(
        self,
        portal: RelayPortal,
        *,
        local_state: Optional[LocalStateStore] = None,
        sync_interval: Optional[float] = None,
        on_change: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_logout: Optional[Callable[[str], Any]] = None,
        logger=None,
    ):
        self.portal = portal
        self.local_state = local_state
        self.sync_interval = float(portal.sync_interval if sync_interval is None else sync_interval)
        self.on_change = on_change
        self.on_logout = on_logout
        self.logger = logger or get_logger("SessionController")

        self.state = SessionState.ANONYMOUS
        self.account_id: Optional[str] = None
        self.account: Optional[Dict[str, Any]] = None
        self.directory: List[Account] = local_state.load_accounts() if local_state else []
        self._pending_patch: Optional[str] = None

        self._stop = asyncio.Event()
        self._task_sync: Optional[asyncio.Task] = None

    @property
    def authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    async def _notify(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------ lifecycle
    async def login(self, account_id: str) -> Dict[str, Any]:
        """Authenticate by account id; unknown ids leave the session anonymous."""
        self.state = SessionState.AUTHENTICATING
        try:
            account = await self.portal.authenticate(account_id)
        except PortalError:
            self.state = SessionState.ANONYMOUS
            raise
        self.account_id = account["id"]
        self.account = account
        self.state = SessionState.AUTHENTICATED
        self.logger.info("Session authenticated as %s", self.account_id)
        await self._snapshot()
        return account

    async def logout(self, reason: str = "logout") -> None:
        """Return to ``anonymous`` and drop every piece of unsaved state."""
        previous = self.account_id
        self.state = SessionState.ANONYMOUS
        self.account_id = None
        self.account = None
        self._pending_patch = None
        if previous is not None:
            self.logger.info("Session for %s ended (%s)", previous, reason)
            await self._notify(self.on_logout, reason)

    async def reconcile(self) -> bool:
        """Pull the authoritative account once; return whether the view changed."""
        if not self.authenticated or self.account_id is None:
            return False
        latest = await self.portal.get_account(self.account_id)
        if latest is None:
            await self.logout("account deleted")
            return True
        if latest == self.account:
            return False
        self.account = latest
        await self._notify(self.on_change, latest)
        await self._snapshot()
        return True

    async def _snapshot(self) -> None:
        """Write the directory and this viewer's mailboxes to local state."""
        if self.account_id is None:
            return
        accounts = await self.portal.list_accounts()
        self.directory = [Account.model_validate(acc) for acc in accounts]
        if self.local_state is None:
            return
        notifications = await self.portal.list_notifications(self.account_id)
        requests = await self.portal.list_requests(self.account_id)
        self.local_state.save_accounts(self.directory)
        self.local_state.save_notifications(notifications)
        self.local_state.save_requests(requests)

    # ------------------------------------------------------------- self-service
    async def update_self(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``patch`` tentatively, then commit or roll back to the store.

        The working copy is patched immediately. On confirmation the store's
        record replaces it; on failure the tentative patch is discarded, the
        authoritative record is pulled again and the error is re-raised.
        """
        if not self.authenticated or self.account is None:
            raise InvalidCredential("Not logged in")
        tag = uuid.uuid4().hex
        self._pending_patch = tag
        self.account = {**self.account, **snakify_keys(patch)}
        try:
            confirmed = await self.portal.update_account(self.account_id, patch, actor_id=self.account_id)
        except PortalError:
            if self._pending_patch == tag:
                self._pending_patch = None
            await self.reconcile()
            raise
        if self._pending_patch == tag:
            self._pending_patch = None
            self.account = confirmed
        return confirmed

    async def send_message(self, text: str, *, bypass_limit: bool = False) -> Dict[str, Any]:
        self._require_login()
        try:
            return await self.portal.send_message(self.account_id, text, bypass_limit=bypass_limit)
        finally:
            await self.reconcile()

    async def purchase(self, option_name: str) -> Dict[str, Any]:
        self._require_login()
        try:
            return await self.portal.purchase(self.account_id, option_name)
        finally:
            await self.reconcile()

    def _require_login(self) -> None:
        if not self.authenticated:
            raise InvalidCredential("Not logged in")

    # ------------------------------------------------------------ background sync
    async def start(self) -> None:
        """Start the periodic reconciliation loop."""
        self._stop.clear()
        self._task_sync = asyncio.create_task(self._sync_loop(), name="session-sync-loop")

    async def stop(self) -> None:
        self._stop.set()
        if self._task_sync is not None:
            await asyncio.gather(self._task_sync, return_exceptions=True)
            self._task_sync = None

    async def _sync_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.reconcile()
            except PortalError as exc:
                self.logger.warning("Session reconciliation failed: %s", exc)
            except Exception as exc:
                self.logger.exception("Unhandled error in session sync loop: %s", exc)
            await self._wait(self.sync_interval)

    async def _wait(self, timeout: float) -> None:
        if math.isinf(timeout):
            await self._stop.wait()
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._stop.wait()
        except asyncio.TimeoutError:
            return
