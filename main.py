import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from relay_portal.api import create_app
from relay_portal.config_loader import load_settings
from relay_portal.core import DEFAULT_SYNC_INTERVAL, RelayPortal

# Configure logging level from environment
log_level = os.getenv("RLP_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_portal(settings: dict[str, object]) -> RelayPortal:
    return RelayPortal(
        db_path=str(settings["db_path"]),
        timezone=str(settings.get("timezone") or "UTC"),
        relay_timeout=float(settings.get("relay_timeout") or 10.0),
        purchase_options=settings.get("purchase_options"),
        seed_admins=settings.get("seed_admins") or (),
        seed_users=settings.get("seed_users") or (),
        sync_interval=float(settings.get("sync_interval") or DEFAULT_SYNC_INTERVAL),
    )


if __name__ == "__main__":
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, str(settings["log_level"]), logging.INFO))
    # Create the portal but don't start it yet - let uvicorn handle the event loop
    portal = build_portal(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await portal.start()
        yield
        await portal.stop()

    app = create_app(
        portal,
        api_token=settings.get("api_token"),
        lifespan=lifespan,
        static_dir=settings.get("static_dir"),
    )

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
