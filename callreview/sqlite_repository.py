"""SQLite implementation of CallRepository."""

import json
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from .errors import PersistenceError
from .models import (
    CallReviewRecord,
    CallStatus,
    IntegrationCredential,
    Platform,
    ProcessedCallRecord,
    Rep,
    utcnow,
)
from .repository import CallRepository

_INTEGRATION_COLUMNS = (
    "id, tenant_id, client, platform, base_url, access_key, access_key_secret, "
    "client_id, client_secret, access_token, refresh_token, scoring_api_key, "
    "auto_review, updated_at"
)

_LEDGER_COLUMNS = (
    "tenant_id, call_key, call_kind, status, review_id, error_message, "
    "created_at, updated_at, processed_at"
)

_REVIEW_INSERT_COLUMNS = (
    "tenant_id, client, rep_id, rep_name, prospect_company, prospect_name, "
    "call_title, call_date, call_type, deal_stage, category_scores, overall_score, "
    "transcript, ai_analysis, coaching_notes, auxiliary, created_at"
)
_REVIEW_COLUMNS = "id, " + _REVIEW_INSERT_COLUMNS


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteCallRepository(CallRepository):
    """SQLite-based storage for integrations, ledger, reps and reviews."""

    def __init__(self, db_path: str):
        """
        Initialize SQLite repository.

        Args:
            db_path: Path to SQLite database file (":memory:" for an in-memory db)
        """
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        try:
            # Background webhook tasks may run on another thread than the one that opened it
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            self._init_db()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {db_path}: {e}") from e

    def _init_db(self):
        """Initialize database schema."""
        # Per-tenant platform credentials
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS integrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                client TEXT NOT NULL,
                platform TEXT NOT NULL,
                base_url TEXT NOT NULL,
                access_key TEXT,
                access_key_secret TEXT,
                client_id TEXT,
                client_secret TEXT,
                access_token TEXT,
                refresh_token TEXT,
                scoring_api_key TEXT,
                auto_review INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL,
                UNIQUE (tenant_id, client, platform)
            )
        """)

        # Idempotency ledger, one row per (tenant, platform-qualified call id)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS processed_calls (
                tenant_id TEXT NOT NULL,
                call_key TEXT NOT NULL,
                call_kind TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                review_id INTEGER,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                processed_at TEXT,
                PRIMARY KEY (tenant_id, call_key)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS reps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                full_name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (tenant_id, full_name)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS call_reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                client TEXT NOT NULL,
                rep_id INTEGER,
                rep_name TEXT NOT NULL,
                prospect_company TEXT NOT NULL,
                prospect_name TEXT NOT NULL,
                call_title TEXT NOT NULL,
                call_date TEXT NOT NULL,
                call_type TEXT NOT NULL,
                deal_stage TEXT NOT NULL,
                category_scores TEXT NOT NULL,
                overall_score INTEGER NOT NULL,
                transcript TEXT NOT NULL,
                ai_analysis TEXT NOT NULL,
                coaching_notes TEXT NOT NULL,
                auxiliary TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute and commit a statement, mapping driver errors to PersistenceError."""
        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
            return cursor
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"SQLite error: {e}") from e

    # Integrations

    def _row_to_integration(self, row: tuple) -> IntegrationCredential:
        (
            id_, tenant_id, client, platform, base_url, access_key, access_key_secret,
            client_id, client_secret, access_token, refresh_token, scoring_api_key,
            auto_review, updated_at,
        ) = row
        return IntegrationCredential(
            id=id_,
            tenant_id=tenant_id,
            client=client,
            platform=Platform(platform),
            base_url=base_url,
            access_key=access_key,
            access_key_secret=access_key_secret,
            client_id=client_id,
            client_secret=client_secret,
            access_token=access_token,
            refresh_token=refresh_token,
            scoring_api_key=scoring_api_key,
            auto_review=bool(auto_review),
            updated_at=datetime.fromisoformat(updated_at),
        )

    async def list_integrations(
        self, platform: Optional[Platform] = None
    ) -> list[IntegrationCredential]:
        """List configured integrations."""
        if platform is None:
            cursor = self._execute(f"SELECT {_INTEGRATION_COLUMNS} FROM integrations ORDER BY id")
        else:
            cursor = self._execute(
                f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE platform = ? ORDER BY id",
                (platform.value,),
            )
        return [self._row_to_integration(row) for row in cursor.fetchall()]

    async def get_integration(
        self, tenant_id: str, platform: Platform, client: Optional[str] = None
    ) -> Optional[IntegrationCredential]:
        """Get the integration for a tenant."""
        sql = f"SELECT {_INTEGRATION_COLUMNS} FROM integrations WHERE tenant_id = ? AND platform = ?"
        params: tuple = (tenant_id, platform.value)
        if client:
            sql += " AND client = ?"
            params += (client,)
        row = self._execute(sql + " ORDER BY id LIMIT 1", params).fetchone()
        return self._row_to_integration(row) if row else None

    async def upsert_integration(
        self, credential: IntegrationCredential
    ) -> IntegrationCredential:
        """Insert or update an integration keyed by (tenant, client, platform)."""
        updated_at = utcnow()
        self._execute(
            """
            INSERT INTO integrations (
                tenant_id, client, platform, base_url, access_key, access_key_secret,
                client_id, client_secret, access_token, refresh_token, scoring_api_key,
                auto_review, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, client, platform) DO UPDATE SET
                base_url = excluded.base_url,
                access_key = excluded.access_key,
                access_key_secret = excluded.access_key_secret,
                client_id = excluded.client_id,
                client_secret = excluded.client_secret,
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                scoring_api_key = excluded.scoring_api_key,
                auto_review = excluded.auto_review,
                updated_at = excluded.updated_at
            """,
            (
                credential.tenant_id,
                credential.client,
                credential.platform.value,
                credential.base_url,
                credential.access_key,
                credential.access_key_secret,
                credential.client_id,
                credential.client_secret,
                credential.access_token,
                credential.refresh_token,
                credential.scoring_api_key,
                1 if credential.auto_review else 0,
                updated_at.isoformat(),
            ),
        )
        stored = await self.get_integration(
            credential.tenant_id, credential.platform, credential.client
        )
        if stored is None:
            raise PersistenceError(f"Integration {credential.label} was not stored")
        return stored

    async def save_tokens(
        self, integration_id: int, access_token: str, refresh_token: Optional[str]
    ) -> datetime:
        """Persist a refreshed token pair."""
        updated_at = utcnow()
        self._execute(
            "UPDATE integrations SET access_token = ?, refresh_token = ?, updated_at = ? WHERE id = ?",
            (access_token, refresh_token, updated_at.isoformat(), integration_id),
        )
        return updated_at

    async def delete_integration(self, integration_id: int) -> None:
        """Remove an integration."""
        self._execute("DELETE FROM integrations WHERE id = ?", (integration_id,))

    # Processed-call ledger

    def _row_to_record(self, row: tuple) -> ProcessedCallRecord:
        (
            tenant_id, call_key, call_kind, status, review_id, error_message,
            created_at, updated_at, processed_at,
        ) = row
        return ProcessedCallRecord(
            tenant_id=tenant_id,
            call_key=call_key,
            call_kind=call_kind,
            status=CallStatus(status),
            review_id=review_id,
            error_message=error_message,
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
            processed_at=_parse_ts(processed_at),
        )

    async def insert_processed_call(self, record: ProcessedCallRecord) -> bool:
        """Insert a ledger record; False if the key already exists."""
        try:
            self._execute(
                f"INSERT INTO processed_calls ({_LEDGER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.tenant_id,
                    record.call_key,
                    record.call_kind,
                    record.status.value,
                    record.review_id,
                    record.error_message,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                    _ts(record.processed_at),
                ),
            )
        except sqlite3.IntegrityError:
            self.conn.rollback()
            return False
        return True

    async def update_processed_call(
        self,
        tenant_id: str,
        call_key: str,
        *,
        status: CallStatus,
        review_id: Optional[int] = None,
        error_message: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> None:
        """Overwrite the status fields of a ledger record."""
        cursor = self._execute(
            """
            UPDATE processed_calls
            SET status = ?, review_id = ?, error_message = ?, processed_at = ?, updated_at = ?
            WHERE tenant_id = ? AND call_key = ?
            """,
            (
                status.value,
                review_id,
                error_message,
                _ts(processed_at),
                utcnow().isoformat(),
                tenant_id,
                call_key,
            ),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"No ledger record for {tenant_id}/{call_key}")

    async def get_processed_call(
        self, tenant_id: str, call_key: str
    ) -> Optional[ProcessedCallRecord]:
        """Get a single ledger record."""
        row = self._execute(
            f"SELECT {_LEDGER_COLUMNS} FROM processed_calls WHERE tenant_id = ? AND call_key = ?",
            (tenant_id, call_key),
        ).fetchone()
        return self._row_to_record(row) if row else None

    async def list_processed_calls(self, tenant_id: str) -> list[ProcessedCallRecord]:
        """List ledger records for a tenant, newest first."""
        cursor = self._execute(
            f"SELECT {_LEDGER_COLUMNS} FROM processed_calls WHERE tenant_id = ? ORDER BY updated_at DESC",
            (tenant_id,),
        )
        return [self._row_to_record(row) for row in cursor.fetchall()]

    # Reps

    async def find_rep(self, tenant_id: str, full_name: str) -> Optional[Rep]:
        """Find a rep by name."""
        row = self._execute(
            "SELECT id, tenant_id, full_name FROM reps WHERE tenant_id = ? AND full_name = ?",
            (tenant_id, full_name),
        ).fetchone()
        if not row:
            return None
        return Rep(id=row[0], tenant_id=row[1], full_name=row[2])

    async def insert_rep(self, tenant_id: str, full_name: str) -> Optional[Rep]:
        """Insert a rep; None if the name is taken."""
        try:
            cursor = self._execute(
                "INSERT INTO reps (tenant_id, full_name, created_at) VALUES (?, ?, ?)",
                (tenant_id, full_name, utcnow().isoformat()),
            )
        except sqlite3.IntegrityError:
            self.conn.rollback()
            return None
        return Rep(id=cursor.lastrowid, tenant_id=tenant_id, full_name=full_name)

    # Reviews

    def _row_to_review(self, row: tuple) -> CallReviewRecord:
        (
            id_, tenant_id, client, rep_id, rep_name, prospect_company, prospect_name,
            call_title, call_date, call_type, deal_stage, category_scores, overall_score,
            transcript, ai_analysis, coaching_notes, auxiliary, created_at,
        ) = row
        return CallReviewRecord(
            id=id_,
            tenant_id=tenant_id,
            client=client,
            rep_id=rep_id,
            rep_name=rep_name,
            prospect_company=prospect_company,
            prospect_name=prospect_name,
            call_title=call_title,
            call_date=date.fromisoformat(call_date),
            call_type=call_type,
            deal_stage=deal_stage,
            category_scores=json.loads(category_scores),
            overall_score=overall_score,
            transcript=transcript,
            ai_analysis=json.loads(ai_analysis),
            coaching_notes=coaching_notes,
            auxiliary=json.loads(auxiliary),
            created_at=datetime.fromisoformat(created_at),
        )

    async def insert_review(self, review: CallReviewRecord) -> int:
        """Append a call review."""
        params: tuple[Any, ...] = (
            review.tenant_id,
            review.client,
            review.rep_id,
            review.rep_name,
            review.prospect_company,
            review.prospect_name,
            review.call_title,
            review.call_date.isoformat(),
            review.call_type,
            review.deal_stage,
            json.dumps(review.category_scores),
            review.overall_score,
            review.transcript,
            json.dumps(review.ai_analysis, default=str),
            review.coaching_notes,
            json.dumps(review.auxiliary, default=str),
            review.created_at.isoformat(),
        )
        try:
            cursor = self._execute(
                f"INSERT INTO call_reviews ({_REVIEW_INSERT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
        except sqlite3.IntegrityError as e:
            raise PersistenceError(f"Review insert rejected: {e}") from e
        return cursor.lastrowid

    async def get_review(self, review_id: int) -> Optional[CallReviewRecord]:
        """Get a review by id."""
        row = self._execute(
            f"SELECT {_REVIEW_COLUMNS} FROM call_reviews WHERE id = ?", (review_id,)
        ).fetchone()
        return self._row_to_review(row) if row else None

    async def list_reviews(self, tenant_id: str) -> list[CallReviewRecord]:
        """List reviews for a tenant."""
        cursor = self._execute(
            f"SELECT {_REVIEW_COLUMNS} FROM call_reviews WHERE tenant_id = ? ORDER BY id",
            (tenant_id,),
        )
        return [self._row_to_review(row) for row in cursor.fetchall()]

    async def close(self) -> None:
        """Close database connection."""
        self.conn.close()
