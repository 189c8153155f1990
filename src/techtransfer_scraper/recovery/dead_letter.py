"""
Local archive of dead-lettered jobs.

The broker's dead-letter queue is the authoritative destination; this SQLite
table keeps a queryable copy of every job the orchestrator gave up on so
operators can inspect failures by kind or institution without draining the
queue.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
import structlog

from techtransfer_scraper.protocols import ErrorKind, Job, ScrapeError

logger = structlog.get_logger(__name__)


@dataclass
class FailedJob:
    """A job that reached the dead-letter destination."""

    job_id: str
    url: str
    institution_type: str
    error_kind: ErrorKind
    error_message: str
    attempts: int
    job_snapshot: Dict[str, Any] = field(default_factory=dict)
    recovery_suggestions: List[str] = field(default_factory=list)
    rate_limit_snapshot: Optional[Dict[str, Any]] = None
    first_failure_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_failure_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_failure(cls, job: Job, error: ScrapeError) -> FailedJob:
        return cls(
            job_id=job.id,
            url=job.url,
            institution_type=job.institution_type.value,
            error_kind=error.kind,
            error_message=error.message,
            attempts=job.retry_count + 1,
            job_snapshot=job.snapshot(),
            recovery_suggestions=list(error.recovery_suggestions),
            rate_limit_snapshot=error.rate_limit_snapshot.to_dict() if error.rate_limit_snapshot else None,
            first_failure_time=job.created_at,
            last_failure_time=error.timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "url": self.url,
            "institution_type": self.institution_type,
            "error_kind": self.error_kind.value,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "job_snapshot": self.job_snapshot,
            "recovery_suggestions": self.recovery_suggestions,
            "rate_limit_snapshot": self.rate_limit_snapshot,
            "first_failure_time": self.first_failure_time.isoformat(),
            "last_failure_time": self.last_failure_time.isoformat(),
        }


class DeadLetterArchive:
    """
    SQLite-backed record of dead-lettered jobs.

    Re-archiving the same job id replaces the earlier row, so a job that is
    manually resubmitted and fails again keeps a single, current entry.
    """

    def __init__(self, db_path: Path = Path("./data/dead_letter.db")):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the database and create the schema."""
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS dead_letter_jobs (
                job_id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                institution_type TEXT NOT NULL,
                error_kind TEXT NOT NULL,
                error_message TEXT NOT NULL,
                attempts INTEGER DEFAULT 1,
                job_snapshot TEXT,
                recovery_suggestions TEXT,
                rate_limit_snapshot TEXT,
                first_failure_time TEXT NOT NULL,
                last_failure_time TEXT NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """
        )
        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_dead_letter_kind
            ON dead_letter_jobs(error_kind)
        """
        )
        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_dead_letter_last_failure
            ON dead_letter_jobs(last_failure_time)
        """
        )
        await self._db.commit()
        logger.info("Dead-letter archive ready", path=str(self.db_path))

    async def record(self, job: Job, error: ScrapeError) -> FailedJob:
        """Archive a dead-lettered job."""
        failed = FailedJob.from_failure(job, error)
        if self._db is None:
            logger.warning("Dead-letter archive not initialized, skipping record", job_id=job.id)
            return failed

        await self._db.execute(
            """
            INSERT OR REPLACE INTO dead_letter_jobs (
                job_id, url, institution_type, error_kind, error_message,
                attempts, job_snapshot, recovery_suggestions, rate_limit_snapshot,
                first_failure_time, last_failure_time
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                failed.job_id,
                failed.url,
                failed.institution_type,
                failed.error_kind.value,
                failed.error_message,
                failed.attempts,
                json.dumps(failed.job_snapshot, default=str),
                json.dumps(failed.recovery_suggestions),
                json.dumps(failed.rate_limit_snapshot) if failed.rate_limit_snapshot else None,
                failed.first_failure_time.isoformat(),
                failed.last_failure_time.isoformat(),
            ),
        )
        await self._db.commit()
        return failed

    async def list_failed(self, kind: Optional[ErrorKind] = None, limit: int = 100) -> List[FailedJob]:
        """Most recent failures first, optionally filtered by error kind."""
        if self._db is None:
            return []

        query = "SELECT * FROM dead_letter_jobs WHERE 1=1"
        params: List[Any] = []
        if kind is not None:
            query += " AND error_kind = ?"
            params.append(kind.value)
        query += " ORDER BY last_failure_time DESC LIMIT ?"
        params.append(limit)

        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_failed_job(row) for row in rows]

    async def get_failure_statistics(self) -> Dict[str, Any]:
        """Counts by error kind and institution type."""
        if self._db is None:
            return {"total_failures": 0, "failures_by_kind": {}, "failures_by_institution_type": {}}

        async with self._db.execute(
            "SELECT error_kind, COUNT(*) FROM dead_letter_jobs GROUP BY error_kind"
        ) as cursor:
            by_kind = {row[0]: row[1] for row in await cursor.fetchall()}

        async with self._db.execute(
            "SELECT institution_type, COUNT(*) FROM dead_letter_jobs GROUP BY institution_type"
        ) as cursor:
            by_type = {row[0]: row[1] for row in await cursor.fetchall()}

        async with self._db.execute("SELECT COUNT(*), AVG(attempts) FROM dead_letter_jobs") as cursor:
            totals = await cursor.fetchone()

        return {
            "total_failures": (totals[0] if totals else 0) or 0,
            "average_attempts": (totals[1] if totals else 0) or 0,
            "failures_by_kind": by_kind,
            "failures_by_institution_type": by_type,
        }

    async def purge_older_than(self, days: int) -> int:
        """Delete entries whose last failure is older than ``days``."""
        if self._db is None:
            return 0

        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self._db.execute(
            "DELETE FROM dead_letter_jobs WHERE last_failure_time < ?",
            (cutoff.isoformat(),),
        ) as cursor:
            deleted = cursor.rowcount
        await self._db.commit()
        logger.info("Purged dead-letter archive", deleted=deleted, older_than_days=days)
        return deleted

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @staticmethod
    def _row_to_failed_job(row: Any) -> FailedJob:
        return FailedJob(
            job_id=row[0],
            url=row[1],
            institution_type=row[2],
            error_kind=ErrorKind(row[3]),
            error_message=row[4],
            attempts=row[5],
            job_snapshot=json.loads(row[6]) if row[6] else {},
            recovery_suggestions=json.loads(row[7]) if row[7] else [],
            rate_limit_snapshot=json.loads(row[8]) if row[8] else None,
            first_failure_time=datetime.fromisoformat(row[9]),
            last_failure_time=datetime.fromisoformat(row[10]),
        )
