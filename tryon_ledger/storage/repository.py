"""
Repository pattern for data access.

Handles the three logical tables behind the pipeline:
- accounts: one gems balance per identity
- gem_transactions: append-only ledger, unique per (job_id, kind)
- tryon_jobs: job history, updated once to a terminal status
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import GemTransaction, JobRecord, JobStatus, TransactionKind


class DuplicateTransaction(Exception):
    """A transaction of this kind already exists for the job.

    The balance update that preceded the failed insert has been rolled back.
    """

    def __init__(self, job_id: str, kind: TransactionKind, balance: Optional[int]):
        super().__init__(f"{kind.value} already recorded for job {job_id}")
        self.job_id = job_id
        self.kind = kind
        self.balance = balance


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class LedgerRepository:
    """Repository for gem balances and the transaction ledger.

    Balance changes and their ledger rows are written in one transaction:
    either both happen or neither does.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def open_account(self, identity: str, initial_balance: int = 0) -> None:
        """Create an account with a starting balance.

        Raises:
            ValueError: If the balance is negative or the account exists
        """
        if initial_balance < 0:
            raise ValueError("initial_balance cannot be negative")

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO accounts (identity, gems_balance, created_at) VALUES (?, ?, ?)",
                (identity, initial_balance, _now().isoformat())
            )
        except sqlite3.IntegrityError:
            raise ValueError(f"Account already exists: {identity}")
        finally:
            conn.close()

    def get_balance(self, identity: str) -> Optional[int]:
        """Return the current balance, or None if the account does not exist."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT gems_balance FROM accounts WHERE identity = ?", (identity,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def apply_transaction(
        self,
        identity: str,
        delta: int,
        kind: TransactionKind,
        job_id: str
    ) -> Optional[int]:
        """Atomically change a balance and append the matching ledger row.

        The balance update is guarded by ``gems_balance + delta >= 0`` so a
        deduction can never drive the balance negative, even when several
        processes write concurrently.

        Args:
            identity: Account identity
            delta: Signed amount (negative for deductions)
            kind: Transaction kind
            job_id: Job the transaction belongs to

        Returns:
            New balance, or None if no row matched (missing account or
            insufficient balance). Nothing is written in that case.

        Raises:
            DuplicateTransaction: If (job_id, kind) is already in the ledger
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE accounts
                SET gems_balance = gems_balance + ?
                WHERE identity = ? AND gems_balance + ? >= 0
                """,
                (delta, identity, delta)
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                return None

            try:
                conn.execute(
                    """
                    INSERT INTO gem_transactions (identity, amount, kind, job_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (identity, delta, kind.value, job_id, _now().isoformat())
                )
            except sqlite3.IntegrityError:
                conn.execute("ROLLBACK")
                raise DuplicateTransaction(job_id, kind, self.get_balance(identity))

            balance = conn.execute(
                "SELECT gems_balance FROM accounts WHERE identity = ?", (identity,)
            ).fetchone()[0]
            conn.execute("COMMIT")
            return balance
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def list_transactions(self, identity: str, limit: int = 100) -> List[GemTransaction]:
        """Fetch ledger rows for an identity, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT id, identity, amount, kind, job_id, created_at
                FROM gem_transactions
                WHERE identity = ?
                ORDER BY id DESC LIMIT ?
                """,
                (identity, limit)
            )
            return [
                GemTransaction(
                    id=row[0],
                    identity=row[1],
                    amount=row[2],
                    kind=TransactionKind(row[3]),
                    job_id=row[4],
                    created_at=datetime.fromisoformat(row[5])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def sum_transactions(self, identity: str) -> int:
        """Sum of all signed ledger amounts for an identity."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM gem_transactions WHERE identity = ?",
                (identity,)
            ).fetchone()
            return row[0]
        finally:
            conn.close()


_JOB_COLUMNS = """
    job_id, identity, model_image, clothing_images, quality, edit_mode, edit_prompt,
    cache_key, gems_charged, status, result_url, prediction_id, error_kind,
    processing_time_ms, created_at, completed_at
"""


def _row_to_job(row) -> JobRecord:
    return JobRecord(
        job_id=row[0],
        identity=row[1],
        model_image=row[2],
        clothing_images=json.loads(row[3]),
        quality=row[4],
        edit_mode=bool(row[5]),
        edit_prompt=row[6],
        cache_key=row[7],
        gems_charged=row[8],
        status=JobStatus(row[9]),
        result_url=row[10],
        prediction_id=row[11],
        error_kind=row[12],
        processing_time_ms=row[13],
        created_at=datetime.fromisoformat(row[14]),
        completed_at=_parse_time(row[15]),
    )


class JobRepository:
    """Repository for try-on job history."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_job(self, job: JobRecord) -> None:
        """Insert a new job record."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO tryon_jobs ({_JOB_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    job.identity,
                    job.model_image,
                    json.dumps(job.clothing_images),
                    job.quality,
                    int(job.edit_mode),
                    job.edit_prompt,
                    job.cache_key,
                    job.gems_charged,
                    job.status.value,
                    job.result_url,
                    job.prediction_id,
                    job.error_kind,
                    job.processing_time_ms,
                    job.created_at.isoformat(),
                    job.completed_at.isoformat() if job.completed_at else None,
                )
            )
        finally:
            conn.close()

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM tryon_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            return _row_to_job(row) if row else None
        finally:
            conn.close()

    def update_inputs(self, job_id: str, model_image: str, clothing_images: List[str]) -> None:
        """Replace inline inputs with their uploaded URLs."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE tryon_jobs SET model_image = ?, clothing_images = ? WHERE job_id = ?",
                (model_image, json.dumps(clothing_images), job_id)
            )
        finally:
            conn.close()

    def mark_completed(
        self,
        job_id: str,
        result_url: str,
        prediction_id: Optional[str],
        processing_time_ms: int
    ) -> bool:
        """Move a processing job to COMPLETED.

        Returns:
            True if the job was updated, False if it was not processing
        """
        return self._finish(
            job_id,
            JobStatus.COMPLETED,
            result_url=result_url,
            prediction_id=prediction_id,
            error_kind=None,
            processing_time_ms=processing_time_ms,
        )

    def mark_failed(
        self,
        job_id: str,
        error_kind: str,
        prediction_id: Optional[str] = None,
        processing_time_ms: Optional[int] = None
    ) -> bool:
        """Move a processing job to FAILED."""
        return self._finish(
            job_id,
            JobStatus.FAILED,
            result_url=None,
            prediction_id=prediction_id,
            error_kind=error_kind,
            processing_time_ms=processing_time_ms,
        )

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result_url: Optional[str],
        prediction_id: Optional[str],
        error_kind: Optional[str],
        processing_time_ms: Optional[int]
    ) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE tryon_jobs
                SET status = ?, result_url = ?, prediction_id = COALESCE(?, prediction_id),
                    error_kind = ?, processing_time_ms = ?, completed_at = ?
                WHERE job_id = ? AND status = ?
                """,
                (
                    status.value,
                    result_url,
                    prediction_id,
                    error_kind,
                    processing_time_ms,
                    _now().isoformat(),
                    job_id,
                    JobStatus.PROCESSING.value,
                )
            )
            return cursor.rowcount == 1
        finally:
            conn.close()

    def find_cached(self, identity: str, cache_key: str, quality: str) -> Optional[JobRecord]:
        """Find the most recent completed job with the same cache key and tier."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM tryon_jobs
                WHERE identity = ? AND cache_key = ? AND quality = ?
                  AND status = ? AND result_url IS NOT NULL
                ORDER BY completed_at DESC LIMIT 1
                """,
                (identity, cache_key, quality, JobStatus.COMPLETED.value)
            ).fetchone()
            return _row_to_job(row) if row else None
        finally:
            conn.close()

    def list_jobs(self, identity: str, limit: int = 50) -> List[JobRecord]:
        """Fetch an identity's jobs, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM tryon_jobs
                WHERE identity = ? ORDER BY created_at DESC LIMIT ?
                """,
                (identity, limit)
            )
            return [_row_to_job(row) for row in cursor.fetchall()]
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger and job tables if they don't exist.

    gem_transactions is an append-only ledger: no UPDATE or DELETE is ever
    issued against it. The UNIQUE(job_id, kind) constraint makes a second
    deduction or a second refund for the same job impossible.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                identity TEXT PRIMARY KEY,
                gems_balance INTEGER NOT NULL CHECK (gems_balance >= 0),
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS gem_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT NOT NULL REFERENCES accounts(identity),
                amount INTEGER NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('deduction', 'refund')),
                job_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (job_id, kind)
            );

            CREATE INDEX IF NOT EXISTS idx_gem_transactions_identity
                ON gem_transactions(identity);

            CREATE TABLE IF NOT EXISTS tryon_jobs (
                job_id TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                model_image TEXT NOT NULL,
                clothing_images TEXT NOT NULL DEFAULT '[]',
                quality TEXT NOT NULL,
                edit_mode INTEGER NOT NULL DEFAULT 0,
                edit_prompt TEXT,
                cache_key TEXT,
                gems_charged INTEGER NOT NULL,
                status TEXT NOT NULL CHECK (status IN ('processing', 'completed', 'failed')),
                result_url TEXT,
                prediction_id TEXT,
                error_kind TEXT,
                processing_time_ms INTEGER,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_tryon_jobs_cache
                ON tryon_jobs(identity, cache_key, quality, status);
        """)
    finally:
        conn.close()
