"""
Durable transcoding job queue.

Jobs are rows in transcoding_jobs; the table is the queue. Intake inserts a
queued row and wakes any worker in this process. Workers claim the oldest
queued row atomically, so embedded workers and standalone worker processes can
share one database:

- PostgreSQL: SELECT ... FOR UPDATE SKIP LOCKED inside a transaction
- SQLite: plain SELECT, then an UPDATE guarded by status='queued'; the write
  lock serializes competing claims and the re-read tells us who won

Rows left 'running' by a crashed process are put back to 'queued' on startup,
giving at-least-once execution.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Set

import sqlalchemy as sa

from api.common import ensure_utc
from api.database import database, transcoding_jobs
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry, with_db_retry
from api.enums import JobStatus

logger = logging.getLogger(__name__)

# Events of workers running in this process, set on every enqueue
_wakeup_events: Set[asyncio.Event] = set()


@dataclass
class TranscodeJob:
    """A transcoding job as stored in transcoding_jobs."""

    id: int
    content_id: int
    episode_id: Optional[int]
    source_filename: str
    source_path: str
    status: str
    current_rung: Optional[str] = None
    error: Optional[str] = None
    worker_id: Optional[str] = None
    submitted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "TranscodeJob":
        data = dict(row)
        job = cls(**{name: data.get(name) for name in cls.__dataclass_fields__})
        # SQLite hands back naive datetimes
        job.submitted_at = ensure_utc(job.submitted_at)
        job.started_at = ensure_utc(job.started_at)
        job.completed_at = ensure_utc(job.completed_at)
        return job


def register_wakeup(event: asyncio.Event) -> None:
    _wakeup_events.add(event)


def unregister_wakeup(event: asyncio.Event) -> None:
    _wakeup_events.discard(event)


def notify_workers() -> None:
    """Wake every in-process worker waiting for new jobs."""
    for event in list(_wakeup_events):
        event.set()


def _is_postgres() -> bool:
    return database.url.dialect == "postgresql"


async def enqueue_transcode(content_id: int, episode_id: Optional[int], source_path: str) -> int:
    """
    Insert a queued job for an uploaded original and wake local workers.

    Args:
        content_id: Content the original belongs to
        episode_id: Episode the original belongs to, or None for a movie-level upload
        source_path: Original's path relative to the media root

    Returns:
        The new job id
    """
    job_id = await db_execute_with_retry(
        transcoding_jobs.insert().values(
            content_id=content_id,
            episode_id=episode_id,
            source_filename=source_path.rsplit("/", 1)[-1],
            source_path=source_path,
            status=JobStatus.QUEUED.value,
            submitted_at=datetime.now(timezone.utc),
        )
    )
    logger.info(f"Queued transcode job {job_id} for content {content_id} (episode={episode_id}): {source_path}")
    notify_workers()
    return job_id


@with_db_retry()
async def claim_next_job(worker_id: str) -> Optional[TranscodeJob]:
    """Move the oldest queued job to running for worker_id, or return None."""
    now = datetime.now(timezone.utc)

    async with database.transaction():
        if _is_postgres():
            row = await database.fetch_one(
                sa.text(
                    """
                    SELECT id FROM transcoding_jobs
                    WHERE status = 'queued'
                    ORDER BY submitted_at, id
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                    """
                )
            )
        else:
            row = await database.fetch_one(
                sa.select(transcoding_jobs.c.id)
                .where(transcoding_jobs.c.status == JobStatus.QUEUED.value)
                .order_by(transcoding_jobs.c.submitted_at, transcoding_jobs.c.id)
                .limit(1)
            )
        if row is None:
            return None

        job_id = row["id"]
        await database.execute(
            transcoding_jobs.update()
            .where(transcoding_jobs.c.id == job_id)
            .where(transcoding_jobs.c.status == JobStatus.QUEUED.value)
            .values(
                status=JobStatus.RUNNING.value,
                worker_id=worker_id,
                started_at=now,
                current_rung=None,
                error=None,
                completed_at=None,
            )
        )
        claimed = await database.fetch_one(transcoding_jobs.select().where(transcoding_jobs.c.id == job_id))

    if claimed is None or claimed["worker_id"] != worker_id or claimed["status"] != JobStatus.RUNNING.value:
        # Another worker won the race
        return None

    logger.info(f"Worker {worker_id} claimed job {job_id}")
    return TranscodeJob.from_row(claimed)


async def requeue_interrupted_jobs() -> int:
    """Put jobs left running by a dead process back in the queue. Returns the count."""
    rows = await fetch_all_with_retry(
        sa.select(transcoding_jobs.c.id).where(transcoding_jobs.c.status == JobStatus.RUNNING.value)
    )
    if not rows:
        return 0

    await db_execute_with_retry(
        transcoding_jobs.update()
        .where(transcoding_jobs.c.status == JobStatus.RUNNING.value)
        .values(status=JobStatus.QUEUED.value, worker_id=None, started_at=None, current_rung=None)
    )
    logger.info(f"Requeued {len(rows)} interrupted transcode job(s)")
    return len(rows)


async def set_current_rung(job_id: int, rung: str) -> None:
    await db_execute_with_retry(
        transcoding_jobs.update().where(transcoding_jobs.c.id == job_id).values(current_rung=rung)
    )


async def mark_job_completed(job_id: int) -> None:
    await db_execute_with_retry(
        transcoding_jobs.update()
        .where(transcoding_jobs.c.id == job_id)
        .values(
            status=JobStatus.COMPLETED.value,
            completed_at=datetime.now(timezone.utc),
            error=None,
        )
    )


async def mark_job_failed(job_id: int, rung: Optional[str], error: str) -> None:
    """Record a terminal failure. error must already be sanitized."""
    await db_execute_with_retry(
        transcoding_jobs.update()
        .where(transcoding_jobs.c.id == job_id)
        .values(
            status=JobStatus.FAILED.value,
            current_rung=rung,
            error=error,
            completed_at=datetime.now(timezone.utc),
        )
    )


async def get_job(job_id: int) -> Optional[TranscodeJob]:
    row = await fetch_one_with_retry(transcoding_jobs.select().where(transcoding_jobs.c.id == job_id))
    return TranscodeJob.from_row(row) if row else None


async def list_jobs(status: Optional[str] = None, limit: int = 50) -> List[TranscodeJob]:
    """Most recent jobs first, optionally filtered by status."""
    query = transcoding_jobs.select()
    if status:
        query = query.where(transcoding_jobs.c.status == status)
    query = query.order_by(transcoding_jobs.c.submitted_at.desc(), transcoding_jobs.c.id.desc()).limit(limit)
    rows = await fetch_all_with_retry(query)
    return [TranscodeJob.from_row(row) for row in rows]
