"""Job store abstraction with in-memory and SQLite backends."""

import asyncio
import copy
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import settings
from .exceptions import JobNotFound, JobStoreError
from .models import CrawlJob, JobStatus, PageError, PageResult

logger = logging.getLogger(__name__)

# Job fields the orchestrator may change after creation
UPDATABLE_FIELDS = frozenset({"status", "progress", "started_at", "completed_at", "error"})

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS crawl_jobs (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    vendor_id TEXT,
    urls TEXT NOT NULL,
    settings TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_crawl_jobs_owner ON crawl_jobs (owner, created_at);

CREATE TABLE IF NOT EXISTS crawl_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES crawl_jobs (id),
    url TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT,
    screenshot TEXT,
    duration_ms REAL,
    retry_count INTEGER,
    crawled_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS crawl_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES crawl_jobs (id),
    url TEXT NOT NULL,
    error_class TEXT NOT NULL,
    message TEXT,
    retry_count INTEGER,
    timestamp TIMESTAMP
);
"""


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise JobStoreError(f"Fields cannot be updated: {sorted(unknown)}")


def _to_column(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AbstractJobStore(ABC):
    """Abstract base class defining the job store interface."""

    @abstractmethod
    async def create(self, job: CrawlJob) -> None:
        """Persist a new job.

        Args:
            job: The job, normally in ``pending`` status with no outcomes yet.
        """
        pass

    @abstractmethod
    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        """Update scalar job fields (status, progress, timestamps, error).

        Args:
            job_id: Identifier of the job.
            fields: Mapping of field name to new value.
        """
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[CrawlJob]:
        """Load a job with its results and errors, or None if unknown."""
        pass

    @abstractmethod
    async def store_result(self, job_id: str, result: PageResult) -> None:
        """Append a PageResult to a job."""
        pass

    @abstractmethod
    async def record_error(self, job_id: str, error: PageError) -> None:
        """Append a PageError to a job."""
        pass

    @abstractmethod
    async def list_by_owner(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        vendor_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> List[CrawlJob]:
        """List an owner's jobs, newest first.

        Args:
            owner: Owner identifier.
            status: Only jobs in this status.
            vendor_id: Only jobs for this vendor/grouping identifier.
            offset: Number of jobs to skip.
            limit: Maximum number of jobs to return.

        Returns:
            List of jobs.
        """
        pass

    async def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryJobStore(AbstractJobStore):
    """Process-local store. Jobs do not survive a restart."""

    def __init__(self):
        self._jobs: Dict[str, CrawlJob] = {}

    def _require(self, job_id: str) -> CrawlJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    async def create(self, job: CrawlJob) -> None:
        if job.id in self._jobs:
            raise JobStoreError(f"Job {job.id} already exists")
        self._jobs[job.id] = copy.deepcopy(job)

    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        _check_fields(fields)
        job = self._require(job_id)
        for name, value in fields.items():
            setattr(job, name, value)

    async def get(self, job_id: str) -> Optional[CrawlJob]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job else None

    async def store_result(self, job_id: str, result: PageResult) -> None:
        self._require(job_id).results.append(copy.deepcopy(result))

    async def record_error(self, job_id: str, error: PageError) -> None:
        self._require(job_id).errors.append(copy.deepcopy(error))

    async def list_by_owner(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        vendor_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> List[CrawlJob]:
        jobs = [
            job for job in self._jobs.values()
            if job.owner == owner
            and (status is None or job.status == status)
            and (vendor_id is None or job.vendor_id == vendor_id)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [copy.deepcopy(j) for j in jobs[offset:offset + limit]]


class SqliteJobStore(AbstractJobStore):
    """SQLite job store for local persistence."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize the SQLite job store.

        Args:
            db_path: Path to the database file, or ":memory:". Defaults to
                settings.DB_PATH.
        """
        self.db_path = db_path or settings.DB_PATH
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self.connect()
        self.create_schema()

    def connect(self) -> None:
        """Establish SQLite connection."""
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        logger.debug(f"Connected to SQLite job store: {self.db_path}")

    def create_schema(self) -> None:
        """Create the job tables if they don't exist."""
        with self.conn:
            self.conn.executescript(CREATE_TABLES_SQL)
        logger.debug("Schema verified/created for SQLite job store")

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug("Closed SQLite job store")

    async def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        async with self._lock:
            try:
                with self.conn:
                    return self.conn.execute(sql, params)
            except sqlite3.Error as e:
                raise JobStoreError(f"SQLite error: {e}") from e

    async def _exists(self, job_id: str) -> bool:
        cursor = await self._execute("SELECT 1 FROM crawl_jobs WHERE id = ?", (job_id,))
        return cursor.fetchone() is not None

    async def create(self, job: CrawlJob) -> None:
        await self._execute(
            "INSERT INTO crawl_jobs (id, owner, vendor_id, urls, settings, status, progress, "
            "created_at, started_at, completed_at, error) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                job.id,
                job.owner,
                job.vendor_id,
                json.dumps(job.urls),
                json.dumps(job.settings.to_dict()),
                job.status.value,
                job.progress,
                _to_column(job.created_at),
                _to_column(job.started_at),
                _to_column(job.completed_at),
                job.error,
            ),
        )
        for result in job.results:
            await self.store_result(job.id, result)
        for error in job.errors:
            await self.record_error(job.id, error)
        logger.debug(f"Created job {job.id} for owner {job.owner}")

    async def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        _check_fields(fields)
        if not fields:
            return

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = tuple(_to_column(v) for v in fields.values())
        cursor = await self._execute(
            f"UPDATE crawl_jobs SET {assignments} WHERE id = ?",
            values + (job_id,),
        )
        if cursor.rowcount == 0:
            raise JobNotFound(f"Job {job_id} not found")

    async def store_result(self, job_id: str, result: PageResult) -> None:
        if not await self._exists(job_id):
            raise JobNotFound(f"Job {job_id} not found")
        row = result.to_dict()
        await self._execute(
            "INSERT INTO crawl_results (job_id, url, status, data, screenshot, duration_ms, "
            "retry_count, crawled_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                job_id,
                row["url"],
                row["status"],
                json.dumps(row["data"]),
                row["screenshot"],
                row["duration_ms"],
                row["retry_count"],
                row["crawled_at"],
            ),
        )

    async def record_error(self, job_id: str, error: PageError) -> None:
        if not await self._exists(job_id):
            raise JobNotFound(f"Job {job_id} not found")
        row = error.to_dict()
        await self._execute(
            "INSERT INTO crawl_errors (job_id, url, error_class, message, retry_count, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (job_id, row["url"], row["error_class"], row["message"], row["retry_count"], row["timestamp"]),
        )

    async def _load(self, row: sqlite3.Row) -> CrawlJob:
        job_id = row["id"]
        results = await self._execute(
            "SELECT * FROM crawl_results WHERE job_id = ? ORDER BY id ASC", (job_id,)
        )
        result_rows = results.fetchall()
        errors = await self._execute(
            "SELECT * FROM crawl_errors WHERE job_id = ? ORDER BY id ASC", (job_id,)
        )
        error_rows = errors.fetchall()

        return CrawlJob.from_dict({
            "id": job_id,
            "owner": row["owner"],
            "vendor_id": row["vendor_id"],
            "urls": json.loads(row["urls"]),
            "settings": json.loads(row["settings"]),
            "status": row["status"],
            "progress": row["progress"],
            "created_at": row["created_at"],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
            "error": row["error"],
            "results": [
                {**dict(r), "data": json.loads(r["data"]) if r["data"] else {}}
                for r in result_rows
            ],
            "errors": [dict(r) for r in error_rows],
        })

    async def get(self, job_id: str) -> Optional[CrawlJob]:
        cursor = await self._execute("SELECT * FROM crawl_jobs WHERE id = ?", (job_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return await self._load(row)

    async def list_by_owner(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        vendor_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> List[CrawlJob]:
        query = "SELECT * FROM crawl_jobs WHERE owner = ?"
        params: list = [owner]
        if status is not None:
            query += " AND status = ?"
            params.append(_to_column(status))
        if vendor_id is not None:
            query += " AND vendor_id = ?"
            params.append(vendor_id)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = await self._execute(query, tuple(params))
        rows = cursor.fetchall()
        return [await self._load(row) for row in rows]


def get_job_store(backend: Optional[str] = None, **kwargs) -> AbstractJobStore:
    """Factory function to create the configured job store.

    Args:
        backend: Store backend ('memory' or 'sqlite'). Defaults to settings.STORE_BACKEND.
        **kwargs: Additional arguments passed to the store constructor.

    Returns:
        An instance of AbstractJobStore.

    Raises:
        ValueError: If an unknown backend is specified.
    """
    backend = backend or settings.STORE_BACKEND

    if backend == "memory":
        logger.info("Using in-memory job store")
        return InMemoryJobStore()
    elif backend == "sqlite":
        logger.info("Using SQLite job store")
        return SqliteJobStore(**kwargs)
    else:
        raise ValueError(
            f"Unknown job store backend: '{backend}'. "
            "Supported backends: 'memory', 'sqlite'"
        )
