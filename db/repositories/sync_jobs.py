"""Sync job repository — atomic job claims and forward-only status transitions."""
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ACTIVE_SYNC_STATUSES, SyncJob, utcnow
from db.repositories.contacts import parse_id
from errors import SyncInProgressError

logger = logging.getLogger(__name__)


async def create_if_absent(
    session: AsyncSession, source: str, sync_type: str, config: Optional[dict] = None
) -> SyncJob:
    """Insert a pending job, unless the source already has a pending/running one.

    The partial unique index on (source) WHERE status IN ('pending', 'running')
    makes the check and the insert a single atomic step.
    """
    job = SyncJob(
        id=uuid.uuid4(),
        source=source,
        type=sync_type,
        status="pending",
        config=config or {},
    )
    try:
        async with session.begin_nested():
            session.add(job)
            await session.flush()
    except IntegrityError as exc:
        raise SyncInProgressError(source) from exc
    return job


async def get(session: AsyncSession, job_id: Any) -> Optional[SyncJob]:
    parsed = parse_id(job_id)
    if parsed is None:
        return None
    return await session.get(SyncJob, parsed)


async def list_active(session: AsyncSession) -> list[SyncJob]:
    result = await session.execute(
        select(SyncJob).where(SyncJob.status.in_(ACTIVE_SYNC_STATUSES))
    )
    return list(result.scalars().all())


async def list_jobs(
    session: AsyncSession, page: int = 1, limit: int = 20, source: Optional[str] = None
) -> tuple[list[SyncJob], int]:
    """Return one page of jobs (newest first) and the total job count."""
    stmt = select(SyncJob)
    count_stmt = select(func.count()).select_from(SyncJob)
    if source:
        stmt = stmt.where(SyncJob.source == source)
        count_stmt = count_stmt.where(SyncJob.source == source)
    result = await session.execute(
        stmt.order_by(SyncJob.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    total = (await session.execute(count_stmt)).scalar_one()
    return list(result.scalars().all()), int(total)


async def last_completed(session: AsyncSession, source: str) -> Optional[SyncJob]:
    result = await session.execute(
        select(SyncJob)
        .where(SyncJob.source == source, SyncJob.status == "completed")
        .order_by(SyncJob.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def last_job(session: AsyncSession, source: str) -> Optional[SyncJob]:
    result = await session.execute(
        select(SyncJob)
        .where(SyncJob.source == source)
        .order_by(SyncJob.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def mark_running(session: AsyncSession, job_id: uuid.UUID) -> bool:
    """pending -> running. Returns False if the job left 'pending' meanwhile."""
    result = await session.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == "pending")
        .values(status="running", started_at=utcnow())
    )
    return result.rowcount == 1


async def save_progress(session: AsyncSession, job_id: uuid.UUID, values: dict) -> bool:
    """Write counters while the job is still running.

    Returns False once the job has been moved to a terminal state by someone
    else (cancellation); the caller should stop claiming progress.
    """
    result = await session.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status == "running")
        .values(**values)
    )
    return result.rowcount == 1


async def finish(
    session: AsyncSession, job_id: uuid.UUID, status: str, values: Optional[dict] = None
) -> bool:
    """Move an active job to 'completed' or 'failed'. Terminal jobs are left alone."""
    result = await session.execute(
        update(SyncJob)
        .where(SyncJob.id == job_id, SyncJob.status.in_(ACTIVE_SYNC_STATUSES))
        .values(status=status, completed_at=utcnow(), **(values or {}))
    )
    return result.rowcount == 1
