import json
import aiosqlite
from datetime import datetime
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field

from .models import SCHEMA


def _dump_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ScopedToken:
    token: str
    expires_at: datetime


@dataclass
class Credentials:
    refresh_token: str = ""
    access_token: str = ""
    access_token_expires_at: Optional[datetime] = None
    session_token: str = ""
    session_token_expires_at: Optional[datetime] = None
    remote_user_id: str = ""
    scoped_tokens: dict[str, ScopedToken] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "refresh_token": self.refresh_token,
            "access_token": self.access_token,
            "access_token_expires_at": _dump_time(self.access_token_expires_at),
            "session_token": self.session_token,
            "session_token_expires_at": _dump_time(self.session_token_expires_at),
            "remote_user_id": self.remote_user_id,
            "scoped_tokens": {
                audience: {"token": scoped.token, "expires_at": _dump_time(scoped.expires_at)}
                for audience, scoped in self.scoped_tokens.items()
            },
        })

    @classmethod
    def from_json(cls, raw: str) -> "Credentials":
        data = json.loads(raw) if raw else {}
        scoped = {}
        for audience, item in (data.get("scoped_tokens") or {}).items():
            expires_at = _load_time(item.get("expires_at"))
            if item.get("token") and expires_at:
                scoped[audience] = ScopedToken(token=item["token"], expires_at=expires_at)
        return cls(
            refresh_token=data.get("refresh_token") or "",
            access_token=data.get("access_token") or "",
            access_token_expires_at=_load_time(data.get("access_token_expires_at")),
            session_token=data.get("session_token") or "",
            session_token_expires_at=_load_time(data.get("session_token_expires_at")),
            remote_user_id=data.get("remote_user_id") or "",
            scoped_tokens=scoped,
        )


@dataclass
class ThreadRecord:
    account_id: str
    thread_id: str
    conversation_id: str
    is_one_to_one: bool = False
    name: str = ""
    last_sequence_id: str = ""
    last_message_ts: int = 0


@dataclass
class RemoteProfile:
    remote_user_id: str
    display_name: str
    last_seen_ts: int


class Repository:

    def __init__(self, db_path: Path | str):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Repository":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def save_credentials(self, account_id: str, credentials: Credentials) -> None:
        await self._conn.execute(
            """
            INSERT INTO accounts (account_id, metadata, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(account_id) DO UPDATE SET
                metadata = excluded.metadata,
                updated_at = CURRENT_TIMESTAMP
            """,
            (account_id, credentials.to_json())
        )
        await self._conn.commit()

    async def get_credentials(self, account_id: str) -> Optional[Credentials]:
        cursor = await self._conn.execute(
            "SELECT metadata FROM accounts WHERE account_id = ?",
            (account_id,)
        )
        row = await cursor.fetchone()
        if row:
            return Credentials.from_json(row["metadata"])
        return None

    async def list_accounts(self) -> list[str]:
        cursor = await self._conn.execute("SELECT account_id FROM accounts ORDER BY account_id")
        rows = await cursor.fetchall()
        return [row["account_id"] for row in rows]

    async def delete_account(self, account_id: str) -> None:
        await self._conn.execute("DELETE FROM accounts WHERE account_id = ?", (account_id,))
        await self._conn.commit()

    async def upsert_thread(self, thread: ThreadRecord) -> None:
        # Discovery owns name and flag; the cursor columns belong to ingestion.
        await self._conn.execute(
            """
            INSERT INTO thread_state (account_id, thread_id, conversation_id, is_one_to_one, name)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(account_id, thread_id) DO UPDATE SET
                conversation_id = excluded.conversation_id,
                is_one_to_one = excluded.is_one_to_one,
                name = excluded.name
            """,
            (thread.account_id, thread.thread_id, thread.conversation_id, thread.is_one_to_one, thread.name)
        )
        await self._conn.commit()

    async def update_cursor(
        self,
        account_id: str,
        thread_id: str,
        sequence_id: str,
        message_ts: int
    ) -> None:
        await self._conn.execute(
            """
            UPDATE thread_state
            SET last_sequence_id = ?, last_message_ts = MAX(last_message_ts, ?)
            WHERE account_id = ? AND thread_id = ?
            """,
            (sequence_id, message_ts, account_id, thread_id)
        )
        await self._conn.commit()

    def _row_to_thread(self, row) -> ThreadRecord:
        return ThreadRecord(
            account_id=row["account_id"],
            thread_id=row["thread_id"],
            conversation_id=row["conversation_id"],
            is_one_to_one=bool(row["is_one_to_one"]),
            name=row["name"] or "",
            last_sequence_id=row["last_sequence_id"] or "",
            last_message_ts=row["last_message_ts"] or 0,
        )

    async def get_thread(self, account_id: str, thread_id: str) -> Optional[ThreadRecord]:
        cursor = await self._conn.execute(
            "SELECT * FROM thread_state WHERE account_id = ? AND thread_id = ?",
            (account_id, thread_id)
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_thread(row)
        return None

    async def list_threads(self, account_id: str) -> list[ThreadRecord]:
        cursor = await self._conn.execute(
            "SELECT * FROM thread_state WHERE account_id = ? ORDER BY thread_id",
            (account_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_thread(row) for row in rows]

    async def upsert_profile(self, profile: RemoteProfile) -> None:
        await self._conn.execute(
            """
            INSERT INTO remote_profile (remote_user_id, display_name, last_seen_ts)
            VALUES (?, ?, ?)
            ON CONFLICT(remote_user_id) DO UPDATE SET
                display_name = excluded.display_name,
                last_seen_ts = MAX(remote_profile.last_seen_ts, excluded.last_seen_ts)
            """,
            (profile.remote_user_id, profile.display_name, profile.last_seen_ts)
        )
        await self._conn.commit()

    async def get_profile(self, remote_user_id: str) -> Optional[RemoteProfile]:
        cursor = await self._conn.execute(
            "SELECT remote_user_id, display_name, last_seen_ts FROM remote_profile WHERE remote_user_id = ?",
            (remote_user_id,)
        )
        row = await cursor.fetchone()
        if row:
            return RemoteProfile(
                remote_user_id=row["remote_user_id"],
                display_name=row["display_name"],
                last_seen_ts=row["last_seen_ts"],
            )
        return None

    async def get_read_cursor(self, account_id: str, thread_id: str, remote_user_id: str) -> Optional[int]:
        cursor = await self._conn.execute(
            """
            SELECT last_read_ts FROM read_receipt_cursor
            WHERE account_id = ? AND thread_id = ? AND remote_user_id = ?
            """,
            (account_id, thread_id, remote_user_id)
        )
        row = await cursor.fetchone()
        return row["last_read_ts"] if row else None

    async def upsert_read_cursor(
        self,
        account_id: str,
        thread_id: str,
        remote_user_id: str,
        last_read_ts: int
    ) -> None:
        await self._conn.execute(
            """
            INSERT INTO read_receipt_cursor (account_id, thread_id, remote_user_id, last_read_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(account_id, thread_id, remote_user_id) DO UPDATE SET
                last_read_ts = MAX(read_receipt_cursor.last_read_ts, excluded.last_read_ts)
            """,
            (account_id, thread_id, remote_user_id, last_read_ts)
        )
        await self._conn.commit()
