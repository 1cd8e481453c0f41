"""SQLite backed persistence used by the relay portal."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import DEFAULT_BALANCE, DEFAULT_DAILY_LIMIT

# Columns an administrative update may touch; anything else is ignored.
ACCOUNT_UPDATE_COLUMNS = (
    "role",
    "is_suspended",
    "daily_limit",
    "message_count",
    "last_count_reset",
    "balance",
    "selected_endpoint_id",
)


class Persistence:
    """Repository for accounts, endpoints, activity, requests and notifications.

    Each method opens its own connection, so the store can be shared by the
    HTTP layer, the portal core and any number of sessions.
    """

    def __init__(self, db_path: str = "/data/relay_portal.db"):
        """Persist data to the given database path."""
        self.db_path = db_path

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    role TEXT NOT NULL DEFAULT 'user',
                    is_suspended INTEGER NOT NULL DEFAULT 0,
                    daily_limit INTEGER NOT NULL DEFAULT {DEFAULT_DAILY_LIMIT},
                    message_count INTEGER NOT NULL DEFAULT 0,
                    last_count_reset TEXT NOT NULL,
                    balance INTEGER NOT NULL DEFAULT {DEFAULT_BALANCE},
                    selected_endpoint_id TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS endpoints (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS activity_log (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS requests (
                    id TEXT PRIMARY KEY,
                    author_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                    id TEXT PRIMARY KEY,
                    message TEXT NOT NULL,
                    target_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS notification_reads (
                    notification_id TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    read_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (notification_id, account_id)
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_endpoints_account ON endpoints(account_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_activity_account ON activity_log(account_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_requests_author ON requests(author_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_notifications_target ON notifications(target_id)")
            await db.commit()

    @staticmethod
    def _rows_to_dicts(rows: Sequence[Tuple[Any, ...]], description: Sequence[Tuple[Any, ...]]) -> List[Dict[str, Any]]:
        cols = [c[0] for c in description]
        return [dict(zip(cols, row)) for row in rows]

    @staticmethod
    def _decode_account(data: Dict[str, Any]) -> Dict[str, Any]:
        data["is_suspended"] = bool(data["is_suspended"])
        data.setdefault("endpoints", [])
        return data

    # Accounts -----------------------------------------------------------------
    async def insert_account(self, acc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a new account; raises ``aiosqlite.IntegrityError`` on duplicate id."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO accounts
                (id, role, is_suspended, daily_limit, message_count, last_count_reset, balance)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    acc["id"],
                    acc.get("role", "user"),
                    1 if acc.get("is_suspended") else 0,
                    int(acc.get("daily_limit", DEFAULT_DAILY_LIMIT)),
                    int(acc.get("message_count", 0)),
                    acc["last_count_reset"],
                    int(acc.get("balance", DEFAULT_BALANCE)),
                ),
            )
            await db.commit()
        return await self.get_account(acc["id"])

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single account with its endpoints, or ``None``."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM accounts WHERE id=?", (account_id,)) as cur:
                rows = await cur.fetchall()
                accounts = self._rows_to_dicts(rows, cur.description)
            if not accounts:
                return None
            account = self._decode_account(accounts[0])
            account["endpoints"] = await self._fetch_endpoints(db, account_id)
        return account

    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Return all accounts ordered by role descending, then id ascending."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM accounts ORDER BY role DESC, id ASC") as cur:
                rows = await cur.fetchall()
                accounts = self._rows_to_dicts(rows, cur.description)
            async with db.execute(
                "SELECT id, account_id, name, url FROM endpoints ORDER BY rowid ASC"
            ) as cur:
                endpoint_rows = self._rows_to_dicts(await cur.fetchall(), cur.description)
        by_account: Dict[str, List[Dict[str, Any]]] = {}
        for ep in endpoint_rows:
            owner = ep.pop("account_id")
            by_account.setdefault(owner, []).append(ep)
        result = [self._decode_account(acc) for acc in accounts]
        for acc in result:
            acc["endpoints"] = by_account.get(acc["id"], [])
        return result

    async def update_account(self, account_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a partial update and bump the version; ``None`` if the id is unknown."""
        updates = {k: v for k, v in fields.items() if k in ACCOUNT_UPDATE_COLUMNS}
        if "is_suspended" in updates:
            updates["is_suspended"] = 1 if updates["is_suspended"] else 0
        if not updates:
            return await self.get_account(account_id)
        set_clause = ", ".join(f"{col}=?" for col in updates)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"UPDATE accounts SET {set_clause}, version=version+1 WHERE id=?",
                (*updates.values(), account_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None
        return await self.get_account(account_id)

    async def delete_account(self, account_id: str) -> bool:
        """Remove an account and every record that references it."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM accounts WHERE id=?", (account_id,))
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await db.execute("DELETE FROM endpoints WHERE account_id=?", (account_id,))
            await db.execute("DELETE FROM activity_log WHERE account_id=?", (account_id,))
            await db.execute("DELETE FROM requests WHERE author_id=?", (account_id,))
            await db.execute(
                """
                DELETE FROM notification_reads
                WHERE account_id=?
                   OR notification_id IN (SELECT id FROM notifications WHERE target_id=?)
                """,
                (account_id, account_id),
            )
            await db.execute("DELETE FROM notifications WHERE target_id=?", (account_id,))
            await db.commit()
        return True

    async def reset_daily_count(self, account_id: str, today: str) -> bool:
        """Zero the counter if the last reset is not ``today``; return whether it changed."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE accounts
                SET message_count=0, last_count_reset=?, version=version+1
                WHERE id=? AND last_count_reset != ?
                """,
                (today, account_id, today),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def increment_message_count(self, account_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE accounts SET message_count=message_count+1, version=version+1 WHERE id=?",
                (account_id,),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def spend_for_limit(self, account_id: str, cost: int, granted_limit: int) -> bool:
        """Debit ``cost`` and raise the daily limit in one statement.

        Returns ``False`` without touching the row when the balance is short.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE accounts
                SET balance=balance-?, daily_limit=daily_limit+?, version=version+1
                WHERE id=? AND balance >= ?
                """,
                (cost, granted_limit, account_id, cost),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def adjust_balance(self, account_id: str, delta: int) -> bool:
        """Add ``delta`` (possibly negative) to the balance, flooring at zero."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE accounts SET balance=MAX(0, balance+?), version=version+1 WHERE id=?",
                (delta, account_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # Endpoints ----------------------------------------------------------------
    @classmethod
    async def _fetch_endpoints(cls, db: aiosqlite.Connection, account_id: str) -> List[Dict[str, Any]]:
        async with db.execute(
            "SELECT id, name, url FROM endpoints WHERE account_id=? ORDER BY rowid ASC",
            (account_id,),
        ) as cur:
            return cls._rows_to_dicts(await cur.fetchall(), cur.description)

    async def list_endpoints(self, account_id: str) -> List[Dict[str, Any]]:
        """Return the endpoints owned by an account in insertion order."""
        async with aiosqlite.connect(self.db_path) as db:
            return await self._fetch_endpoints(db, account_id)

    async def add_endpoint(self, account_id: str, endpoint: Dict[str, Any]) -> None:
        """Store an endpoint and select it when the account has no selection."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO endpoints (id, account_id, name, url) VALUES (?, ?, ?, ?)",
                (endpoint["id"], account_id, endpoint["name"], endpoint["url"]),
            )
            await db.execute(
                """
                UPDATE accounts
                SET selected_endpoint_id=COALESCE(selected_endpoint_id, ?), version=version+1
                WHERE id=?
                """,
                (endpoint["id"], account_id),
            )
            await db.commit()

    async def remove_endpoint(self, account_id: str, endpoint_id: str) -> bool:
        """Delete an owned endpoint, falling back to the first remaining one if it was selected."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM endpoints WHERE id=? AND account_id=?",
                (endpoint_id, account_id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await db.execute(
                """
                UPDATE accounts
                SET selected_endpoint_id=(
                        SELECT id FROM endpoints WHERE account_id=? ORDER BY rowid ASC LIMIT 1
                    ),
                    version=version+1
                WHERE id=? AND selected_endpoint_id=?
                """,
                (account_id, account_id, endpoint_id),
            )
            await db.commit()
        return True

    # Activity log ---------------------------------------------------------------
    async def insert_activity(self, entry: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO activity_log (id, account_id, summary, status, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry["id"],
                    entry["account_id"],
                    entry["summary"],
                    entry["status"],
                    entry.get("error"),
                    entry["created_at"],
                ),
            )
            await db.commit()

    async def finish_activity(self, entry_id: str, status: str, error: Optional[str] = None) -> bool:
        """Move an entry out of ``sending``; terminal entries are never touched again."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE activity_log SET status=?, error=? WHERE id=? AND status='sending'",
                (status, error, entry_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_activity(self, entry_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, account_id, summary, status, error, created_at FROM activity_log WHERE id=?",
                (entry_id,),
            ) as cur:
                rows = self._rows_to_dicts(await cur.fetchall(), cur.description)
        return rows[0] if rows else None

    async def list_activity(self, account_id: str) -> List[Dict[str, Any]]:
        """Return an account's activity newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, account_id, summary, status, error, created_at
                FROM activity_log
                WHERE account_id=?
                ORDER BY created_at DESC, rowid DESC
                """,
                (account_id,),
            ) as cur:
                return self._rows_to_dicts(await cur.fetchall(), cur.description)

    # Requests -------------------------------------------------------------------
    async def insert_request(self, request: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO requests (id, author_id, message, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    request["id"],
                    request["author_id"],
                    request["message"],
                    request.get("status", "pending"),
                    request["created_at"],
                ),
            )
            await db.commit()

    async def get_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM requests WHERE id=?", (request_id,)) as cur:
                rows = self._rows_to_dicts(await cur.fetchall(), cur.description)
        return rows[0] if rows else None

    async def list_requests(self, author_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return requests newest first, optionally restricted to one author."""
        query = "SELECT * FROM requests"
        params: Tuple[Any, ...] = ()
        if author_id is not None:
            query += " WHERE author_id=?"
            params = (author_id,)
        query += " ORDER BY created_at DESC, rowid DESC"
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                return self._rows_to_dicts(await cur.fetchall(), cur.description)

    async def resolve_request(
        self,
        request_id: str,
        status: str,
        resolved_at: str,
        notification: Dict[str, Any],
    ) -> bool:
        """Resolve a pending request and store its notification in one transaction.

        Returns ``False`` (and stores nothing) if the request is not pending.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE requests SET status=?, resolved_at=? WHERE id=? AND status='pending'",
                (status, resolved_at, request_id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await db.execute(
                "INSERT INTO notifications (id, message, target_id, created_at) VALUES (?, ?, ?, ?)",
                (notification["id"], notification["message"], notification.get("target_id"), notification["created_at"]),
            )
            await db.commit()
        return True

    # Notifications --------------------------------------------------------------
    async def insert_notification(self, notification: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO notifications (id, message, target_id, created_at) VALUES (?, ?, ?, ?)",
                (notification["id"], notification["message"], notification.get("target_id"), notification["created_at"]),
            )
            await db.commit()

    async def list_notifications(self, viewer_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return notifications newest first.

        With ``viewer_id`` only broadcasts and notifications targeted at the
        viewer are returned, each with the viewer's own ``is_read`` flag.
        Without it every notification is returned and ``is_read`` is false.
        """
        if viewer_id is None:
            query = """
                SELECT id, message, target_id, created_at, 0 AS is_read
                FROM notifications
                ORDER BY created_at DESC, rowid DESC
            """
            params: Tuple[Any, ...] = ()
        else:
            query = """
                SELECT n.id, n.message, n.target_id, n.created_at,
                       CASE WHEN r.notification_id IS NULL THEN 0 ELSE 1 END AS is_read
                FROM notifications n
                LEFT JOIN notification_reads r
                       ON r.notification_id = n.id AND r.account_id = ?
                WHERE n.target_id IS NULL OR n.target_id = ?
                ORDER BY n.created_at DESC, n.rowid DESC
            """
            params = (viewer_id, viewer_id)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                result = self._rows_to_dicts(await cur.fetchall(), cur.description)
        for item in result:
            item["is_read"] = bool(item["is_read"])
        return result

    async def mark_notifications_read(self, viewer_id: str) -> int:
        """Record every notification visible to ``viewer_id`` as read by it."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO notification_reads (notification_id, account_id)
                SELECT id, ? FROM notifications
                WHERE target_id IS NULL OR target_id = ?
                """,
                (viewer_id, viewer_id),
            )
            await db.commit()
            return max(cursor.rowcount, 0)

    async def count_unread(self, viewer_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(*) FROM notifications n
                WHERE (n.target_id IS NULL OR n.target_id = ?)
                  AND NOT EXISTS (
                      SELECT 1 FROM notification_reads r
                      WHERE r.notification_id = n.id AND r.account_id = ?
                  )
                """,
                (viewer_id, viewer_id),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)
