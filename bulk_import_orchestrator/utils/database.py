"""
Database utilities for Bulk Import Orchestrator

Defines the ``JobStore`` persistence interface used by the job registry and its
PostgreSQL implementation on top of an asyncpg connection pool. Every status
change is a conditional write, so concurrent processes sharing one database
cannot apply the same transition twice.
"""

import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from ..models.job import ImportJob, JobFile, JobStatus, FileStatus, ProcessingMode
from ..core.exceptions import DatabaseError


SCHEMA_PATH = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"


class JobStore(ABC):
    """Persistence backend for import jobs and their file parts."""

    async def initialize(self) -> None:
        """Open connections or other resources."""

    async def close(self) -> None:
        """Release resources."""

    async def create_schema(self) -> None:
        """Create tables and indexes if the backend needs them."""

    async def is_healthy(self) -> bool:
        return True

    @abstractmethod
    async def insert_job(self, job: ImportJob) -> None:
        """Persist a new job together with its files, all or nothing."""

    @abstractmethod
    async def get_job(self, job_id: str, include_content: bool = True) -> Optional[ImportJob]:
        """Load a job with its files in sequence order, or None."""

    @abstractmethod
    async def insert_files(self, job_id: str, files: List[JobFile], expected_status: JobStatus) -> bool:
        """Append files atomically; False if the job is not in ``expected_status``."""

    @abstractmethod
    async def transition_status(
        self,
        job_id: str,
        expected: JobStatus,
        target: JobStatus,
        message: Optional[str],
        at: datetime,
        outcome: Optional[Dict[str, Any]] = None,
        release_lease: bool = False
    ) -> bool:
        """Move a job from ``expected`` to ``target``; False if it was not in ``expected``."""

    @abstractmethod
    async def claim_next_ready(self, worker_id: str, at: datetime, lease_expires_at: datetime,
                               message: Optional[str] = None) -> Optional[ImportJob]:
        """Atomically move the oldest READY job to RUNNING under a lease held by ``worker_id``."""

    @abstractmethod
    async def update_file(self, job_id: str, file_id: str, row_cursor: int, file_status: FileStatus,
                          outcome: Optional[Dict[str, Any]] = None) -> bool:
        """Update a file's progress; False if the file does not exist."""

    @abstractmethod
    async def renew_lease(self, job_id: str, worker_id: str, lease_expires_at: datetime) -> bool:
        """Extend a RUNNING job's lease if ``worker_id`` still holds it."""

    @abstractmethod
    async def find_expired_leases(self, now: datetime) -> List[str]:
        """IDs of RUNNING jobs whose lease has expired."""

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[ImportJob]:
        """Newest jobs first, files loaded without content."""

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """Job counts keyed by status value plus a ``total`` entry."""


def _dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _load_json(value: Any) -> Optional[Dict[str, Any]]:
    if value is None or isinstance(value, dict):
        return value
    return json.loads(value)


def _row_count(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError, AttributeError):
        return 0


class DatabaseManager(JobStore):
    """
    PostgreSQL job store backed by an asyncpg connection pool.

    Claims use ``FOR UPDATE SKIP LOCKED`` so several executor processes can poll
    the same table without handing one job to two workers.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        if self.pool:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=min(5, self.pool_size),
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60
            )
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.get_connection() as connection:
                await connection.execute("SELECT 1")
                return True
        except Exception:
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    async def create_schema(self) -> None:
        """Create import tables and indexes."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("create_schema", str(e))

    # Row mapping
    @staticmethod
    def _row_to_file(row) -> JobFile:
        return JobFile(
            file_id=row['file_id'],
            job_id=row['job_id'],
            sequence=row['sequence'],
            tenant=row['tenant'],
            description=row['description'],
            content=row['content'] if 'content' in row.keys() else "",
            row_cursor=row['row_cursor'],
            file_status=FileStatus(row['file_status']),
            outcome=_load_json(row['outcome'])
        )

    @staticmethod
    def _row_to_job(row, files: List[JobFile]) -> ImportJob:
        return ImportJob(
            job_id=row['job_id'],
            description=row['description'],
            processing_mode=ProcessingMode(row['processing_mode']),
            batch_size=row['batch_size'],
            declared_file_count=row['declared_file_count'],
            status=JobStatus(row['status']),
            status_message=row['status_message'],
            status_time=row['status_time'],
            created_at=row['created_at'],
            files=files,
            lease_owner=row['lease_owner'],
            lease_expires_at=row['lease_expires_at'],
            outcome=_load_json(row['outcome'])
        )

    async def _fetch_files(self, conn, job_id: str, include_content: bool) -> List[JobFile]:
        columns = "*" if include_content else (
            "job_id, file_id, sequence, tenant, description, row_cursor, file_status, outcome"
        )
        rows = await conn.fetch(
            f"SELECT {columns} FROM import_job_files WHERE job_id = $1 ORDER BY sequence",
            job_id
        )
        return [self._row_to_file(row) for row in rows]

    # Job methods
    @staticmethod
    async def _write_files(conn, job_id: str, files: List[JobFile]) -> None:
        await conn.executemany("""
            INSERT INTO import_job_files (
                job_id, file_id, sequence, tenant, description,
                content, row_cursor, file_status, outcome
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
        """, [
            (job_id, f.file_id, f.sequence, f.tenant, f.description, f.content,
             f.row_cursor, f.file_status.value, _dump_json(f.outcome))
            for f in files
        ])

    async def insert_job(self, job: ImportJob) -> None:
        """Insert a new job row and its file rows in one transaction."""
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    await conn.execute("""
                        INSERT INTO import_jobs (
                            job_id, description, processing_mode, batch_size,
                            declared_file_count, status, status_message, status_time,
                            created_at, lease_owner, lease_expires_at, outcome
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb)
                    """,
                    job.job_id, job.description, job.processing_mode.value, job.batch_size,
                    job.declared_file_count, job.status.value, job.status_message, job.status_time,
                    job.created_at, job.lease_owner, job.lease_expires_at, _dump_json(job.outcome))
                    if job.files:
                        await self._write_files(conn, job.job_id, job.files)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("insert_job", str(e), table="import_jobs")

    async def get_job(self, job_id: str, include_content: bool = True) -> Optional[ImportJob]:
        """Get a job by ID."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM import_jobs WHERE job_id = $1", job_id)
                if not row:
                    return None
                files = await self._fetch_files(conn, job_id, include_content)
                return self._row_to_job(row, files)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("get_job", str(e), table="import_jobs")

    async def insert_files(self, job_id: str, files: List[JobFile], expected_status: JobStatus) -> bool:
        """Append files in one transaction while holding the job row lock."""
        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    status = await conn.fetchval(
                        "SELECT status FROM import_jobs WHERE job_id = $1 FOR UPDATE", job_id
                    )
                    if status != expected_status.value:
                        return False

                    await self._write_files(conn, job_id, files)
            return True
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("insert_files", str(e), table="import_job_files")

    async def transition_status(self, job_id, expected, target, message, at, outcome=None,
                                release_lease=False) -> bool:
        """Conditionally move a job between statuses."""
        try:
            async with self.get_connection() as conn:
                result = await conn.execute("""
                    UPDATE import_jobs SET
                        status = $3,
                        status_message = $4,
                        status_time = $5,
                        outcome = COALESCE($6::jsonb, outcome),
                        lease_owner = CASE WHEN $7 THEN NULL ELSE lease_owner END,
                        lease_expires_at = CASE WHEN $7 THEN NULL ELSE lease_expires_at END
                    WHERE job_id = $1 AND status = $2
                """, job_id, expected.value, target.value, message, at, _dump_json(outcome), release_lease)
            return _row_count(result) == 1
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("transition_status", str(e), table="import_jobs")

    async def claim_next_ready(self, worker_id, at, lease_expires_at, message=None) -> Optional[ImportJob]:
        """Claim the oldest READY job."""
        try:
            async with self.get_connection() as conn:
                job_id = await conn.fetchval("""
                    UPDATE import_jobs SET
                        status = $1,
                        status_message = $2,
                        status_time = $3,
                        lease_owner = $4,
                        lease_expires_at = $5
                    WHERE job_id = (
                        SELECT job_id FROM import_jobs
                        WHERE status = $6
                        ORDER BY status_time, created_at
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING job_id
                """, JobStatus.RUNNING.value, message, at, worker_id, lease_expires_at, JobStatus.READY.value)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("claim_next_ready", str(e), table="import_jobs")

        if job_id is None:
            return None
        return await self.get_job(job_id)

    async def update_file(self, job_id, file_id, row_cursor, file_status, outcome=None) -> bool:
        """Record file progress."""
        try:
            async with self.get_connection() as conn:
                result = await conn.execute("""
                    UPDATE import_job_files SET
                        row_cursor = GREATEST(row_cursor, $3),
                        file_status = $4,
                        outcome = COALESCE($5::jsonb, outcome)
                    WHERE job_id = $1 AND file_id = $2
                """, job_id, file_id, row_cursor, file_status.value, _dump_json(outcome))
            return _row_count(result) == 1
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("update_file", str(e), table="import_job_files")

    async def renew_lease(self, job_id, worker_id, lease_expires_at) -> bool:
        try:
            async with self.get_connection() as conn:
                result = await conn.execute("""
                    UPDATE import_jobs SET lease_expires_at = $3
                    WHERE job_id = $1 AND lease_owner = $2 AND status = $4
                """, job_id, worker_id, lease_expires_at, JobStatus.RUNNING.value)
            return _row_count(result) == 1
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("renew_lease", str(e), table="import_jobs")

    async def find_expired_leases(self, now) -> List[str]:
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT job_id FROM import_jobs
                    WHERE status = $1 AND lease_expires_at < $2
                """, JobStatus.RUNNING.value, now)
            return [row['job_id'] for row in rows]
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("find_expired_leases", str(e), table="import_jobs")

    async def list_jobs(self, status=None, limit=100) -> List[ImportJob]:
        """List jobs, newest first."""
        try:
            async with self.get_connection() as conn:
                if status:
                    rows = await conn.fetch(
                        "SELECT * FROM import_jobs WHERE status = $1 ORDER BY created_at DESC LIMIT $2",
                        status.value, limit
                    )
                else:
                    rows = await conn.fetch(
                        "SELECT * FROM import_jobs ORDER BY created_at DESC LIMIT $1", limit
                    )
                jobs = []
                for row in rows:
                    files = await self._fetch_files(conn, row['job_id'], include_content=False)
                    jobs.append(self._row_to_job(row, files))
                return jobs
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("list_jobs", str(e), table="import_jobs")

    async def count_by_status(self) -> Dict[str, int]:
        """Get job statistics."""
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("""
                    SELECT status, COUNT(*) as count
                    FROM import_jobs
                    GROUP BY status
                """)
            stats = {"total": 0}
            for row in rows:
                stats[row['status']] = row['count']
                stats["total"] += row['count']
            return stats
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("count_by_status", str(e), table="import_jobs")


def create_job_store(database_url: str, pool_size: int = 10) -> JobStore:
    """
    Build a job store for ``database_url``.

    ``memory://`` selects the in-process store; anything else is handed to asyncpg.
    """
    if database_url.startswith("memory://"):
        from .memory_store import InMemoryJobStore
        return InMemoryJobStore()
    return DatabaseManager(database_url, pool_size=pool_size)
