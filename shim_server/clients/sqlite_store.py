"""SQLite-backed correlation and credential stores."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from shim_server.clients.stores import (
    CorrelationStore,
    CredentialStore,
    DuplicateStateKeyError,
    from_iso,
    to_iso,
)
from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    HandshakeState,
)
from shim_server.services.token_cipher import TokenCipherService


class _SQLiteDatabase:
    """Connection factory shared by the SQLite stores."""

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        raise NotImplementedError


class SQLiteCorrelationStore(_SQLiteDatabase, CorrelationStore):
    """Handshake records in a table keyed by state key."""

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS handshakes (
                    state_key TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider_key TEXT NOT NULL,
                    client_redirect_url TEXT,
                    authorization_url TEXT NOT NULL,
                    request_fields TEXT NOT NULL,
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    claimed_at TEXT
                )
                """
            )

    def create(self, record: AuthorizationRequestParameters) -> None:
        if record.expires_at is None:
            raise ValueError("Handshake records must carry an expiry.")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO handshakes (
                        state_key,
                        user_id,
                        provider_key,
                        client_redirect_url,
                        authorization_url,
                        request_fields,
                        state,
                        created_at,
                        expires_at,
                        claimed_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
                    """,
                    (
                        record.state_key,
                        record.user_id,
                        record.provider_key,
                        record.client_redirect_url,
                        record.authorization_url,
                        json.dumps(record.request_fields),
                        record.state.value,
                        to_iso(record.created_at),
                        to_iso(record.expires_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateStateKeyError(record.state_key) from exc

    def get(self, state_key: str) -> Optional[AuthorizationRequestParameters]:
        now = to_iso(datetime.now(timezone.utc))
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM handshakes WHERE state_key = ? AND expires_at > ?",
                (state_key, now),
            ).fetchone()
        if not row:
            return None
        return self._row_to_record(row)

    def claim(
        self,
        state_key: str,
        *,
        provider_key: str,
        lease_seconds: int,
    ) -> Optional[AuthorizationRequestParameters]:
        now_dt = datetime.now(timezone.utc)
        now = to_iso(now_dt)
        stale = to_iso(now_dt - timedelta(seconds=lease_seconds))
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE handshakes
                SET claimed_at = ?
                WHERE state_key = ?
                  AND provider_key = ?
                  AND state = ?
                  AND expires_at > ?
                  AND (claimed_at IS NULL OR claimed_at <= ?)
                """,
                (
                    now,
                    state_key,
                    provider_key,
                    HandshakeState.INITIATED.value,
                    now,
                    stale,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT * FROM handshakes WHERE state_key = ?",
                (state_key,),
            ).fetchone()
        return self._row_to_record(row)

    def release(self, state_key: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE handshakes SET claimed_at = NULL WHERE state_key = ? AND state = ?",
                (state_key, HandshakeState.INITIATED.value),
            )

    def finish(self, state_key: str, state: HandshakeState) -> bool:
        if state is HandshakeState.INITIATED:
            raise ValueError("finish() requires a terminal state.")
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE handshakes SET state = ? WHERE state_key = ? AND state = ?",
                (state.value, state_key, HandshakeState.INITIATED.value),
            )
        return cursor.rowcount == 1

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        threshold = to_iso(now or datetime.now(timezone.utc))
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM handshakes WHERE expires_at <= ?",
                (threshold,),
            )
        return cursor.rowcount

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AuthorizationRequestParameters:
        return AuthorizationRequestParameters(
            state_key=row["state_key"],
            user_id=row["user_id"],
            provider_key=row["provider_key"],
            client_redirect_url=row["client_redirect_url"],
            authorization_url=row["authorization_url"],
            request_fields=json.loads(row["request_fields"]),
            state=HandshakeState(row["state"]),
            created_at=from_iso(row["created_at"]),
            expires_at=from_iso(row["expires_at"]),
            claimed_at=from_iso(row["claimed_at"]),
        )


class SQLiteCredentialStore(_SQLiteDatabase, CredentialStore):
    """Credential grants with encrypted payloads, ordered by creation."""

    def __init__(self, db_path: str, *, cipher: TokenCipherService) -> None:
        self._cipher = cipher
        super().__init__(db_path)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    credential_id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    provider_key TEXT NOT NULL,
                    payload_encrypted TEXT NOT NULL,
                    state_key TEXT UNIQUE,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS credentials_by_owner
                ON credentials (user_id, provider_key, created_at)
                """
            )

    def save(self, credential: AccessParameters) -> AccessParameters:
        stored = credential.model_copy(
            update={"credential_id": credential.credential_id or uuid4().hex}
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO credentials (
                    credential_id,
                    user_id,
                    provider_key,
                    payload_encrypted,
                    state_key,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(state_key) DO NOTHING
                """,
                (
                    stored.credential_id,
                    stored.user_id,
                    stored.provider_key,
                    self._cipher.encrypt_payload(stored.payload),
                    stored.state_key,
                    to_iso(stored.created_at),
                ),
            )
            if cursor.rowcount == 1:
                return stored
            row = conn.execute(
                "SELECT * FROM credentials WHERE state_key = ?",
                (stored.state_key,),
            ).fetchone()
        return self._row_to_credential(row)

    def replace(
        self, previous_credential_id: str, credential: AccessParameters
    ) -> Optional[AccessParameters]:
        stored = credential.model_copy(
            update={
                "credential_id": credential.credential_id or uuid4().hex,
                "state_key": None,
            }
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO credentials (
                    credential_id,
                    user_id,
                    provider_key,
                    payload_encrypted,
                    state_key,
                    created_at
                )
                SELECT ?, ?, ?, ?, NULL, ?
                WHERE EXISTS (
                    SELECT 1 FROM credentials WHERE credential_id = ?
                )
                """,
                (
                    stored.credential_id,
                    stored.user_id,
                    stored.provider_key,
                    self._cipher.encrypt_payload(stored.payload),
                    to_iso(stored.created_at),
                    previous_credential_id,
                ),
            )
        if cursor.rowcount != 1:
            return None
        return stored

    def latest(self, user_id: str, provider_key: str) -> Optional[AccessParameters]:
        with self._connect() as conn:
            row = conn.execute(
                (
                    "SELECT * FROM credentials WHERE user_id = ? AND provider_key = ? "
                    "ORDER BY created_at DESC, id DESC LIMIT 1"
                ),
                (user_id, provider_key),
            ).fetchone()
        if not row:
            return None
        return self._row_to_credential(row)

    def find_by_state_key(
        self, user_id: str, provider_key: str, state_key: str
    ) -> Optional[AccessParameters]:
        with self._connect() as conn:
            row = conn.execute(
                (
                    "SELECT * FROM credentials "
                    "WHERE user_id = ? AND provider_key = ? AND state_key = ?"
                ),
                (user_id, provider_key, state_key),
            ).fetchone()
        if not row:
            return None
        return self._row_to_credential(row)

    def delete_all(self, user_id: str, provider_key: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM credentials WHERE user_id = ? AND provider_key = ?",
                (user_id, provider_key),
            )
        return cursor.rowcount

    def list_for_user(self, user_id: str) -> List[AccessParameters]:
        with self._connect() as conn:
            rows = conn.execute(
                (
                    "SELECT * FROM credentials WHERE user_id = ? "
                    "ORDER BY created_at DESC, id DESC"
                ),
                (user_id,),
            ).fetchall()
        return [self._row_to_credential(row) for row in rows]

    def _row_to_credential(self, row: sqlite3.Row) -> AccessParameters:
        return AccessParameters(
            credential_id=row["credential_id"],
            user_id=row["user_id"],
            provider_key=row["provider_key"],
            payload=self._cipher.decrypt_payload(row["payload_encrypted"]),
            state_key=row["state_key"],
            created_at=from_iso(row["created_at"]),
        )


__all__ = ["SQLiteCorrelationStore", "SQLiteCredentialStore"]
