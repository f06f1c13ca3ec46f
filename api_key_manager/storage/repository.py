"""
Repository pattern for data access.

Handles database operations and data persistence logic. Every mutating
operation of the pool, registry and aggregator is written through here
so that a restart reconstructs the exact prior state.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AggregationCheckpoint,
    AssignmentRecord,
    CostSample,
    Credential,
    CredentialState,
    StoredState,
)

ADMIN_KEY_SETTING = "admin_api_key"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS credential (
        value TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        remote_id TEXT,
        created_at TEXT NOT NULL,
        retired_at TEXT,
        deleted_at TEXT,
        seq INTEGER NOT NULL,
        workspace_id TEXT,
        revoked_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assignment (
        peer_id TEXT PRIMARY KEY,
        credential TEXT NOT NULL REFERENCES credential(value),
        issued_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cost_sample (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        credential TEXT NOT NULL REFERENCES credential(value),
        bucket_start TEXT NOT NULL,
        bucket_end TEXT NOT NULL,
        amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        description TEXT NOT NULL,
        UNIQUE (credential, bucket_start, description)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoint (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        last_successful_bucket_end TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS setting (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)


# Columns added after the first release; older databases get them on startup.
_ADDED_CREDENTIAL_COLUMNS = ("workspace_id", "revoked_at")

_CREDENTIAL_SELECT = """
    SELECT value, state, remote_id, created_at, retired_at, deleted_at, workspace_id, revoked_at
    FROM credential
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _credential_from_row(row) -> Credential:
    return Credential(
        value=row[0],
        state=CredentialState(row[1]),
        remote_id=row[2],
        created_at=datetime.fromisoformat(row[3]),
        retired_at=_parse_ts(row[4]),
        deleted_at=_parse_ts(row[5]),
        workspace_id=row[6],
        revoked_at=_parse_ts(row[7]),
    )


class StateRepository:
    """Repository for the manager's persisted state.

    Opens a short-lived connection per operation. Callers are expected to
    hold their own serialization lock around a write and the in-memory
    mutation it mirrors.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create all tables if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            for statement in _SCHEMA:
                conn.execute(statement)
            existing = {row[1] for row in conn.execute("PRAGMA table_info(credential)")}
            for column in _ADDED_CREDENTIAL_COLUMNS:
                if column not in existing:
                    conn.execute(f"ALTER TABLE credential ADD COLUMN {column} TEXT")
            conn.commit()
        finally:
            conn.close()

    def load_state(self) -> StoredState:
        """Load every entity set, the checkpoint and the admin secret.

        Credentials come back in insertion order; assignments and cost
        samples in chronological order.
        """
        conn = get_connection(self.db_path)
        try:
            credentials = self._load_credentials(conn)
            assignments = [
                AssignmentRecord(
                    peer_id=row[0],
                    credential=row[1],
                    issued_at=datetime.fromisoformat(row[2]),
                )
                for row in conn.execute(
                    "SELECT peer_id, credential, issued_at FROM assignment ORDER BY rowid"
                )
            ]
            cost_samples = [
                CostSample(
                    credential=row[0],
                    bucket_start=datetime.fromisoformat(row[1]),
                    bucket_end=datetime.fromisoformat(row[2]),
                    amount=Decimal(row[3]),
                    currency=row[4],
                    description=row[5],
                )
                for row in conn.execute("""
                    SELECT credential, bucket_start, bucket_end, amount, currency, description
                    FROM cost_sample ORDER BY id
                """)
            ]
            row = conn.execute(
                "SELECT last_successful_bucket_end FROM checkpoint WHERE id = 1"
            ).fetchone()
            checkpoint = AggregationCheckpoint(_parse_ts(row[0]) if row else None)
            admin_key = self._get_setting(conn, ADMIN_KEY_SETTING)
            return StoredState(
                credentials=credentials,
                assignments=assignments,
                cost_samples=cost_samples,
                checkpoint=checkpoint,
                admin_key=admin_key,
            )
        finally:
            conn.close()

    def load_credentials(self) -> List[Credential]:
        """All credentials in insertion order, as currently stored."""
        conn = get_connection(self.db_path)
        try:
            return self._load_credentials(conn)
        finally:
            conn.close()

    def get_credential(self, value: str) -> Optional[Credential]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(_CREDENTIAL_SELECT + " WHERE value = ?", (value,)).fetchone()
            return _credential_from_row(row) if row else None
        finally:
            conn.close()

    def insert_credential(self, credential: Credential) -> None:
        """Insert a newly added credential."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO credential
                (value, state, remote_id, created_at, retired_at, deleted_at, workspace_id,
                 revoked_at, seq)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?,
                        (SELECT COALESCE(MAX(seq), 0) + 1 FROM credential))
            """, (
                credential.value,
                credential.state.value,
                credential.remote_id,
                _ts(credential.created_at),
                _ts(credential.retired_at),
                _ts(credential.deleted_at),
                credential.workspace_id,
                _ts(credential.revoked_at),
            ))
            conn.commit()
        finally:
            conn.close()

    def update_credential(
        self,
        credential: Credential,
        expected_state: Optional[CredentialState] = None,
    ) -> bool:
        """Persist a state transition, a resolved remote id or a confirmed revocation.

        Args:
            credential: The new row
            expected_state: Only write if the stored row is still in this state

        Returns:
            False if no row matched: the credential is unknown, or another
            process sharing the database moved it on first
        """
        query = """
            UPDATE credential
            SET state = ?, remote_id = ?, retired_at = ?, deleted_at = ?,
                workspace_id = ?, revoked_at = ?
            WHERE value = ?
        """
        params = [
            credential.state.value,
            credential.remote_id,
            _ts(credential.retired_at),
            _ts(credential.deleted_at),
            credential.workspace_id,
            _ts(credential.revoked_at),
            credential.value,
        ]
        if expected_state is not None:
            query += " AND state = ?"
            params.append(expected_state.value)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def insert_assignment(self, record: AssignmentRecord) -> None:
        """Insert an assignment. The peer_id primary key rejects a second one."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO assignment (peer_id, credential, issued_at) VALUES (?, ?, ?)",
                (record.peer_id, record.credential, _ts(record.issued_at)),
            )
            conn.commit()
        finally:
            conn.close()

    def get_assignment(self, peer_id: str) -> Optional[AssignmentRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT peer_id, credential, issued_at FROM assignment WHERE peer_id = ?",
                (peer_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return AssignmentRecord(row[0], row[1], datetime.fromisoformat(row[2]))

    def insert_cost_samples(self, samples: Iterable[CostSample]) -> int:
        """Append cost samples atomically, skipping keys already stored.

        Returns:
            Number of rows actually inserted
        """
        samples = list(samples)
        if not samples:
            return 0

        conn = get_connection(self.db_path)
        try:
            inserted = 0
            conn.execute("BEGIN TRANSACTION")
            for sample in samples:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO cost_sample
                    (credential, bucket_start, bucket_end, amount, currency, description)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    sample.credential,
                    _ts(sample.bucket_start),
                    _ts(sample.bucket_end),
                    str(sample.amount),
                    sample.currency,
                    sample.description,
                ))
                inserted += cursor.rowcount
            conn.commit()
            return inserted
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save_checkpoint(self, checkpoint: AggregationCheckpoint) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO checkpoint (id, last_successful_bucket_end) VALUES (1, ?)",
                (_ts(checkpoint.last_successful_bucket_end),),
            )
            conn.commit()
        finally:
            conn.close()

    def clear_costs(self) -> None:
        """Drop all cost history and the checkpoint in one transaction."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("DELETE FROM cost_sample")
            conn.execute("DELETE FROM checkpoint")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def set_setting(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO setting (key, value) VALUES (?, ?)", (key, value)
            )
            conn.commit()
        finally:
            conn.close()

    def get_setting(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            return self._get_setting(conn, key)
        finally:
            conn.close()

    @staticmethod
    def _get_setting(conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM setting WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None


    @staticmethod
    def _load_credentials(conn: sqlite3.Connection) -> List[Credential]:
        return [_credential_from_row(row) for row in conn.execute(_CREDENTIAL_SELECT + " ORDER BY seq")]
