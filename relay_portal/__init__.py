"""Multi-tenant webhook relay portal with daily quotas and virtual credits.

This package provides:

- Per-account daily message quotas with automatic calendar-day reset
- A virtual-currency ledger that can be spent to raise the daily quota
- One-shot relay of text messages to chat-service webhook endpoints
- A request/notification mailbox between users and administrators
- Session reconciliation against the authoritative account store
- FastAPI REST API and SQLite persistence

Example:
    Basic usage with the FastAPI application::

        from relay_portal.core import RelayPortal
        from relay_portal.api import create_app

        portal = RelayPortal(db_path="/data/relay_portal.db")
        app = create_app(portal, api_token="secret")
"""
