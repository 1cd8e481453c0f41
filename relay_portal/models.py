"""Pydantic models for the relay portal.

The storage layer speaks snake_case dictionaries; everything that crosses
the HTTP boundary or the local snapshot files uses camelCase keys. The
models carry a camelCase alias generator so ``model_dump(by_alias=True)``
produces the wire format while ``model_validate`` accepts either casing.

Models:
    - Endpoint: named relay target owned by an account
    - Account: identity, role, quota counters, balance and endpoints
    - ActivityEntry: one relay attempt
    - UserRequest: user-authored request with tri-state resolution
    - Notification: admin-authored, optionally targeted message
"""

from __future__ import annotations

import re
from datetime import date
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_DAILY_LIMIT = 20
DEFAULT_BALANCE = 100
ADMIN_BALANCE = 999_999_999
ADMIN_DAILY_LIMIT = 999_999

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class LogStatus(str, Enum):
    """Lifecycle of an activity entry: ``sending`` then one terminal state."""

    SENDING = "sending"
    SUCCESS = "success"
    ERROR = "error"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


def to_snake(key: str) -> str:
    """Convert a camelCase key to snake_case (``isSuspended`` -> ``is_suspended``)."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def camelize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Rename the top-level keys of ``data`` to camelCase; values are untouched."""
    return {to_camel(key): value for key, value in data.items()}


def snakify_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Rename the top-level keys of ``data`` to snake_case; values are untouched."""
    return {to_snake(key): value for key, value in data.items()}


class PortalModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


class Endpoint(PortalModel):
    """A named outbound webhook destination."""

    id: str
    name: str
    url: str


class Account(PortalModel):
    """Registered identity with quota, balance and owned endpoints.

    ``balance`` and ``daily_limit`` are ignored for admin accounts; the
    sentinel values only exist so that the directory renders them.
    """

    id: Annotated[str, Field(min_length=1)]
    role: Role = Role.USER
    is_suspended: bool = False
    daily_limit: Annotated[int, Field(ge=0)] = DEFAULT_DAILY_LIMIT
    message_count: Annotated[int, Field(ge=0)] = 0
    last_count_reset: date
    balance: Annotated[int, Field(ge=0)] = DEFAULT_BALANCE
    endpoints: List[Endpoint] = Field(default_factory=list)
    selected_endpoint_id: Optional[str] = None
    version: int = 1
    created_at: Optional[str] = None


class AccountUpdate(PortalModel):
    """Partial account update accepted by ``PUT /api/users/{id}``."""

    role: Optional[Role] = None
    is_suspended: Optional[bool] = None
    daily_limit: Optional[Annotated[int, Field(ge=0)]] = None
    message_count: Optional[Annotated[int, Field(ge=0)]] = None
    last_count_reset: Optional[date] = None
    balance: Optional[Annotated[int, Field(ge=0)]] = None
    selected_endpoint_id: Optional[str] = None


class ActivityEntry(PortalModel):
    id: str
    account_id: str
    summary: str
    status: LogStatus
    created_at: str
    error: Optional[str] = None


class UserRequest(PortalModel):
    id: str
    author_id: str
    message: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: str
    resolved_at: Optional[str] = None


class Notification(PortalModel):
    """Notification as seen by one viewer; ``is_read`` is per viewer."""

    id: str
    message: str
    target_id: Optional[str] = None
    created_at: str
    is_read: bool = False


class PurchaseOption(PortalModel):
    """Fixed (cost, granted limit) pair that can be bought with credits."""

    name: str
    cost: Annotated[int, Field(gt=0)]
    limit: Annotated[int, Field(gt=0)]
