"""Configuration loader for the relay portal."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError

from .ledger import DEFAULT_PURCHASE_OPTIONS
from .logger import get_logger
from .models import PurchaseOption

logger = get_logger("ConfigLoader")

DEFAULT_STATIC_DIR = str(Path(__file__).parent / "static")


def _split_ids(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_purchase_options(parser: configparser.ConfigParser) -> List[PurchaseOption]:
    """Parse the ``[purchases]`` section.

    Expected format in config.ini:
    ```ini
    [purchases]
    option.basic.cost = 20
    option.basic.limit = 50
    option.bulk.cost = 100
    option.bulk.limit = 300
    ```

    Returns the default table when the section is absent.
    """
    if not parser.has_section("purchases"):
        return list(DEFAULT_PURCHASE_OPTIONS)

    options: Dict[str, Dict[str, Any]] = {}
    for key, value in parser.items("purchases"):
        parts = key.split(".", 2)
        if len(parts) != 3 or parts[0] != "option":
            logger.warning(f"Ignoring invalid key in [purchases] section: {key}")
            continue
        _, name, field = parts
        if field not in ("cost", "limit"):
            logger.warning(f"Unknown purchase field: {field} (in {key})")
            continue
        try:
            options.setdefault(name, {"name": name})[field] = int(value)
        except ValueError:
            raise ValueError(f"option.{name}.{field} must be an integer, got {value!r}") from None

    result: List[PurchaseOption] = []
    for name, data in options.items():
        try:
            result.append(PurchaseOption.model_validate(data))
        except ModelValidationError as exc:
            raise ValueError(f"Invalid purchase option '{name}': {exc}") from None
    logger.info(f"Parsed {len(result)} purchase options from config")
    return result


def load_settings(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with RLP_):
      RLP_CONFIG - Path to config.ini file (default: config.ini)
      RLP_LOG_LEVEL - Logging level (default: INFO)
      RLP_DB_PATH - Database path (default: /data/relay_portal.db)
      RLP_HOST - Server host (default: 0.0.0.0)
      RLP_PORT - Server port (default: 8000)
      RLP_API_TOKEN - API authentication token
      RLP_STATIC_DIR - Directory holding the client application shell
      RLP_TIMEZONE - Timezone used for the daily quota reset (default: UTC)
      RLP_RELAY_TIMEOUT - Seconds before a webhook call is abandoned (default: 10)
      RLP_SYNC_INTERVAL - Session reconciliation interval in seconds (default: 5)
      RLP_SEED_ADMINS - Comma separated ids created as admins on first login (default: admin)
      RLP_SEED_USERS - Comma separated ids created as users on first login

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token, static_dir
      [quota] timezone
      [relay] timeout_seconds
      [session] sync_interval_seconds
      [accounts] seed_admins, seed_users
      [logging] level
      [purchases] option.<name>.cost, option.<name>.limit
    """
    path = Path(config_path or os.getenv("RLP_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("RLP_DB_PATH", "/data/relay_portal.db")),
        "http_host": get("server", "host", os.getenv("RLP_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("RLP_PORT"), default=8000),
        "api_token": get("server", "api_token", os.getenv("RLP_API_TOKEN")),
        "static_dir": get("server", "static_dir", os.getenv("RLP_STATIC_DIR", DEFAULT_STATIC_DIR)),
        "timezone": get("quota", "timezone", os.getenv("RLP_TIMEZONE", "UTC")),
        "relay_timeout": get_float("relay", "timeout_seconds", os.getenv("RLP_RELAY_TIMEOUT"), default=10.0),
        "sync_interval": get_float("session", "sync_interval_seconds", os.getenv("RLP_SYNC_INTERVAL"), default=5.0),
        "seed_admins": _split_ids(get("accounts", "seed_admins", os.getenv("RLP_SEED_ADMINS", "admin"))),
        "seed_users": _split_ids(get("accounts", "seed_users", os.getenv("RLP_SEED_USERS"))),
        "log_level": (get("logging", "level", os.getenv("RLP_LOG_LEVEL", "INFO")) or "INFO").upper(),
        "purchase_options": parse_purchase_options(parser),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings
