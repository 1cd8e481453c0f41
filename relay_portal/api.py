"""
FastAPI application factory and HTTP schemas for the relay portal.

The module exposes a `create_app` function that builds the REST API used by
the client application and defines the pydantic payloads that document each
route. Every JSON body crossing the boundary uses camelCase keys. When an API
token is configured it must be carried in the ``X-API-Token`` header.
"""

from typing import AsyncContextManager, Callable, List, Literal, Optional
from pathlib import Path

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import Field

from .config_loader import DEFAULT_STATIC_DIR
from .core import RelayPortal
from .errors import PortalError
from .logger import get_logger
from .models import (
    Account,
    AccountUpdate,
    ActivityEntry,
    Endpoint,
    Notification,
    PortalModel,
    UserRequest,
)

app = FastAPI(title="Relay Portal")
service: RelayPortal | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None
logger = get_logger("RelayPortalAPI")

FALLBACK_SHELL = "<!doctype html><html><head><title>Relay Portal</title></head><body><div id=\"root\"></div></body></html>"


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CreateAccountPayload(PortalModel):
    id: Optional[str] = None


class LoginPayload(PortalModel):
    id: Optional[str] = None


class EndpointPayload(PortalModel):
    name: str
    url: str


class SendPayload(PortalModel):
    text: str
    endpoint_id: Optional[str] = None
    bypass_limit: bool = False


class PurchasePayload(PortalModel):
    option: str


class BalancePayload(PortalModel):
    """Administrative balance adjustment."""
    admin_id: str
    amount: int = Field(gt=0)
    operation: Literal["add", "subtract"]


class CreateRequestPayload(PortalModel):
    author_id: str
    message: str


class ResolveRequestPayload(PortalModel):
    admin_id: str
    status: Literal["approved", "denied"]


class NotificationPayload(PortalModel):
    admin_id: str
    message: str
    target_id: Optional[str] = None


class MarkReadPayload(PortalModel):
    account_id: str


class ResolutionResponse(PortalModel):
    request: UserRequest
    notification: Notification


class NotificationsResponse(PortalModel):
    notifications: List[Notification]
    unread_count: int


class MarkReadResponse(PortalModel):
    marked: int


class StatusResponse(PortalModel):
    ok: bool
    error: Optional[str] = None


def _portal() -> RelayPortal:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: RelayPortal,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    static_dir: str | None = DEFAULT_STATIC_DIR,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`relay_portal.core.RelayPortal` that implements
        the business logic for each route.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    static_dir:
        Directory whose ``index.html`` is served for every unmatched GET.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    # Use custom lifespan if provided, otherwise use the global app
    if lifespan is not None:
        api = FastAPI(title="Relay Portal", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    api.state.static_dir = static_dir
    app.state.api_token = api_token

    # The global app is reused across calls; its routes are registered once.
    if getattr(api.state, "routes_registered", False):
        return api
    api.state.routes_registered = True

    @api.exception_handler(PortalError)
    async def portal_error_handler(_request: Request, exc: PortalError):
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    users = APIRouter(prefix="/api/users", tags=["users"], dependencies=[auth_dependency])
    mailbox = APIRouter(prefix="/api", tags=["mailbox"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_check():
        """Return a simple health status payload."""
        return StatusResponse(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the portal."""
        portal = _portal()
        return Response(content=portal.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # Accounts -----------------------------------------------------------------
    @users.get("", response_model=List[Account])
    async def list_users():
        """List accounts ordered by role descending, then id."""
        return await _portal().list_accounts()

    @users.post("", response_model=Account, status_code=status.HTTP_201_CREATED)
    async def create_user(payload: CreateAccountPayload):
        """Create an account with the default quota and balance."""
        return await _portal().create_account(payload.id)

    @users.put("/{account_id}", response_model=Account)
    async def update_user(
        account_id: str,
        payload: AccountUpdate,
        actor_id: Optional[str] = Query(None, alias="actorId"),
    ):
        """Apply a partial update; a role change resets balance and limit."""
        fields = payload.model_dump(mode="json", exclude_unset=True)
        return await _portal().update_account(account_id, fields, actor_id=actor_id)

    @users.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(account_id: str):
        """Delete an account and everything that references it."""
        await _portal().delete_account(account_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @api.post("/api/session/login", response_model=Account, dependencies=[auth_dependency])
    async def login(payload: LoginPayload):
        return await _portal().authenticate(payload.id)

    # Endpoints ----------------------------------------------------------------
    @users.get("/{account_id}/endpoints", response_model=List[Endpoint])
    async def list_endpoints(account_id: str):
        return await _portal().list_endpoints(account_id)

    @users.post("/{account_id}/endpoints", response_model=Account, status_code=status.HTTP_201_CREATED)
    async def add_endpoint(account_id: str, payload: EndpointPayload):
        return await _portal().add_endpoint(account_id, payload.name, payload.url)

    @users.delete("/{account_id}/endpoints/{endpoint_id}", response_model=Account)
    async def remove_endpoint(account_id: str, endpoint_id: str):
        return await _portal().remove_endpoint(account_id, endpoint_id)

    @users.put("/{account_id}/endpoints/{endpoint_id}/select", response_model=Account)
    async def select_endpoint(account_id: str, endpoint_id: str):
        return await _portal().select_endpoint(account_id, endpoint_id)

    # Relays and credits -------------------------------------------------------
    @users.post("/{account_id}/send", response_model=ActivityEntry)
    async def send_message(account_id: str, payload: SendPayload):
        """Relay a message; delivery failures come back as an ``error`` entry."""
        return await _portal().send_message(
            account_id,
            payload.text,
            endpoint_id=payload.endpoint_id,
            bypass_limit=payload.bypass_limit,
        )

    @users.post("/{account_id}/flag", response_model=ActivityEntry)
    async def send_flag(account_id: str):
        return await _portal().send_flag(account_id)

    @users.get("/{account_id}/activity", response_model=List[ActivityEntry])
    async def list_activity(account_id: str, viewer_id: Optional[str] = Query(None, alias="viewerId")):
        return await _portal().list_activity(account_id, viewer_id=viewer_id)

    @users.post("/{account_id}/purchase", response_model=Account)
    async def purchase(account_id: str, payload: PurchasePayload):
        return await _portal().purchase(account_id, payload.option)

    @users.post("/{account_id}/balance", response_model=Account)
    async def adjust_balance(account_id: str, payload: BalancePayload):
        return await _portal().adjust_balance(payload.admin_id, account_id, payload.amount, payload.operation)

    # Requests and notifications -----------------------------------------------
    @mailbox.get("/requests", response_model=List[UserRequest])
    async def list_requests(account_id: str = Query(alias="accountId")):
        return await _portal().list_requests(account_id)

    @mailbox.post("/requests", response_model=UserRequest, status_code=status.HTTP_201_CREATED)
    async def create_request(payload: CreateRequestPayload):
        return await _portal().create_request(payload.author_id, payload.message)

    @mailbox.post("/requests/{request_id}/resolve", response_model=ResolutionResponse)
    async def resolve_request(request_id: str, payload: ResolveRequestPayload):
        return await _portal().resolve_request(payload.admin_id, request_id, payload.status)

    @mailbox.get("/notifications", response_model=NotificationsResponse)
    async def list_notifications(account_id: str = Query(alias="accountId")):
        portal = _portal()
        notifications = await portal.list_notifications(account_id)
        unread = sum(1 for item in notifications if not item["is_read"])
        return {"notifications": notifications, "unread_count": unread}

    @mailbox.post("/notifications", response_model=Notification, status_code=status.HTTP_201_CREATED)
    async def send_notification(payload: NotificationPayload):
        return await _portal().send_notification(payload.admin_id, payload.message, payload.target_id)

    @mailbox.post("/notifications/read", response_model=MarkReadResponse)
    async def mark_notifications_read(payload: MarkReadPayload):
        return {"marked": await _portal().mark_notifications_read(payload.account_id)}

    api.include_router(users)
    api.include_router(mailbox)

    @api.get("/{full_path:path}", include_in_schema=False)
    async def client_shell(full_path: str):
        """Serve the client application shell for every other GET."""
        shell_dir = getattr(api.state, "static_dir", None)
        index = Path(shell_dir) / "index.html" if shell_dir else None
        if index is not None and index.is_file():
            return FileResponse(index)
        return HTMLResponse(FALLBACK_SHELL)

    return api
