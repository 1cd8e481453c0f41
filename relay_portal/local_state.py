"""Client-side snapshot of the account directory and mailboxes.

Each collection lives in its own JSON file with camelCase keys and is
reloaded as-is at startup. A missing, unreadable or invalid file falls back
to the built-in default data set instead of failing.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Type, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as ModelValidationError

from .logger import get_logger
from .models import ADMIN_BALANCE, ADMIN_DAILY_LIMIT, Account, Notification, UserRequest

logger = get_logger("LocalState")

ACCOUNTS_FILE = "accounts.json"
NOTIFICATIONS_FILE = "notifications.json"
REQUESTS_FILE = "requests.json"

ModelT = TypeVar("ModelT", bound=BaseModel)


def default_accounts() -> List[Account]:
    """Built-in directory used when no usable snapshot exists."""
    return [
        Account(
            id="admin",
            role="admin",
            daily_limit=ADMIN_DAILY_LIMIT,
            balance=ADMIN_BALANCE,
            last_count_reset=datetime.now(timezone.utc).date(),
        )
    ]


class LocalStateStore:
    """Read and write the three snapshot files under ``directory``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _load(self, filename: str, model: Type[ModelT], fallback: List[ModelT]) -> List[ModelT]:
        path = self.directory / filename
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return fallback
        except OSError as exc:
            logger.warning("Cannot read %s, using defaults: %s", path, exc)
            return fallback
        try:
            return TypeAdapter(List[model]).validate_python(json.loads(raw))
        except (ValueError, ModelValidationError) as exc:
            logger.warning("Corrupted snapshot %s, using defaults: %s", path, exc)
            return fallback

    def _save(self, filename: str, model: Type[ModelT], items: Iterable[Any]) -> None:
        records: List[Dict[str, Any]] = []
        for item in items:
            instance = item if isinstance(item, model) else model.model_validate(item)
            records.append(instance.model_dump(mode="json", by_alias=True))
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / filename
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(records, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    def load_accounts(self) -> List[Account]:
        return self._load(ACCOUNTS_FILE, Account, default_accounts())

    def load_notifications(self) -> List[Notification]:
        return self._load(NOTIFICATIONS_FILE, Notification, [])

    def load_requests(self) -> List[UserRequest]:
        return self._load(REQUESTS_FILE, UserRequest, [])

    def save_accounts(self, accounts: Iterable[Any]) -> None:
        self._save(ACCOUNTS_FILE, Account, accounts)

    def save_notifications(self, notifications: Iterable[Any]) -> None:
        self._save(NOTIFICATIONS_FILE, Notification, notifications)

    def save_requests(self, requests: Iterable[Any]) -> None:
        self._save(REQUESTS_FILE, UserRequest, requests)
