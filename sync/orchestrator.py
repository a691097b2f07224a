"""Sync orchestrator — background sync jobs with per-source exclusion.

Lifecycle of a job:
  pending -> running -> completed | failed

start_sync() claims the source atomically (see sync_jobs.create_if_absent)
and returns the job id at once; the run itself is an asyncio task. Records
are processed in batches: every record of a batch is issued together and
settles into a RecordOutcome, and the batch is a barrier before the next.
Progress is committed after each batch so status polling sees it.
"""
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import settings
from db.connection import session_scope
from db.models import SyncJob, as_utc, utcnow
from db.repositories import contacts as contacts_repo
from db.repositories import segments as segments_repo
from db.repositories import sync_jobs as sync_jobs_repo
from errors import NotFoundError, RecordError, ValidationError
from schemas.sync_job import JobList, LastSyncInfo, SyncJobSnapshot
from segments import engine as segment_engine
from sync.sources import ContactSource, HubSpotSource, RawRecord, SheetsSource, UploadSource

logger = logging.getLogger(__name__)

SourceFactory = Callable[[Mapping[str, Any]], ContactSource]

_SYNC_TYPE_ALIASES = {
    "full": "full",
    "full_sync": "full",
    "manual_sync": "full",
    "incremental": "incremental",
    "incremental_sync": "incremental",
}

DEFAULT_SOURCE_FACTORIES: dict[str, SourceFactory] = {
    "hubspot": lambda config: HubSpotSource(
        list_id=config.get("list_id"), list_name=config.get("list_name")
    ),
    "google_sheets": lambda config: SheetsSource(
        config.get("spreadsheet_id"), config.get("sheet_name"), config.get("mapping")
    ),
}


def normalize_sync_type(sync_type: str) -> str:
    try:
        return _SYNC_TYPE_ALIASES[(sync_type or "").lower()]
    except KeyError:
        raise ValidationError(
            f"Unknown sync type '{sync_type}'. Use 'full' or 'incremental'."
        ) from None


def snapshot(job: SyncJob) -> SyncJobSnapshot:
    """Status view of a job; only the most recent errors are included."""
    return SyncJobSnapshot(
        id=job.id,
        source=job.source,
        type=job.type,
        status=job.status,
        progress=job.progress,
        total_records=job.total_records,
        processed_records=job.processed_records,
        success_count=job.success_count,
        error_count=job.error_count,
        summary=dict(job.summary or {}),
        recent_errors=list(job.sync_errors or [])[-settings.JOB_STATUS_ERRORS:],
        config=dict(job.config or {}),
        started_at=as_utc(job.started_at),
        completed_at=as_utc(job.completed_at),
        created_at=as_utc(job.created_at),
    )


# ---------------------------------------------------------------------------
# Per-record results
# ---------------------------------------------------------------------------


@dataclass
class RecordOutcome:
    source_id: str
    kind: str  # created | updated | skipped | failed
    error: Optional[RecordError] = None


@dataclass
class JobCounters:
    """Running totals for one job. processed == success + errors + skipped."""

    tail_size: int = settings.JOB_ERROR_TAIL
    total: int = 0
    processed: int = 0
    success: int = 0
    errors: int = 0
    summary: dict[str, int] = field(
        default_factory=lambda: {"created": 0, "updated": 0, "skipped": 0, "deleted": 0}
    )
    tail: deque = field(init=False)

    def __post_init__(self):
        self.tail = deque(maxlen=self.tail_size)

    def add(self, outcome: RecordOutcome) -> None:
        self.processed += 1
        if outcome.kind in ("created", "updated"):
            self.success += 1
            self.summary[outcome.kind] += 1
        elif outcome.kind == "skipped":
            self.summary["skipped"] += 1
        else:
            self.errors += 1
            self.record_error(outcome.source_id, str(outcome.error))

    def record_error(self, record: Optional[str], message: str) -> None:
        self.tail.append({"record": record, "error": message, "timestamp": utcnow().isoformat()})

    def values(self) -> dict:
        return {
            "total_records": self.total,
            "processed_records": self.processed,
            "success_count": self.success,
            "error_count": self.errors,
            "summary": dict(self.summary),
            "sync_errors": list(self.tail),
        }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int = settings.SYNC_BATCH_SIZE,
        source_factories: Optional[Mapping[str, SourceFactory]] = None,
        fallback_hours: int = settings.INCREMENTAL_FALLBACK_HOURS,
    ):
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.fallback_hours = fallback_hours
        self._source_factories = {**DEFAULT_SOURCE_FACTORIES, **(source_factories or {})}
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

    @property
    def sources(self) -> list[str]:
        return sorted(self._source_factories)

    # -- starting jobs ------------------------------------------------------

    async def start_sync(
        self, source: str, sync_type: str = "full", config: Optional[Mapping[str, Any]] = None
    ) -> uuid.UUID:
        """Claim `source` and run a sync in the background. Returns the job id.

        Raises SyncInProgressError if the source already has a pending or
        running job; no second job row is written in that case.
        """
        sync_type = normalize_sync_type(sync_type)
        factory = self._source_factories.get(source)
        if factory is None:
            raise ValidationError(f"Unknown source '{source}'. Expected one of {self.sources}")
        config = dict(config or {})
        contact_source = factory(config)
        prune = bool(config.get("prune_missing"))
        if prune and (sync_type != "full" or not contact_source.supports_pruning):
            raise ValidationError("prune_missing is only allowed on full syncs of the whole HubSpot CRM")
        job_config = {**contact_source.config(), "prune_missing": prune}
        return await self._launch(contact_source, sync_type, job_config)

    async def start_upload(
        self,
        headers: Sequence[Any],
        rows: Sequence[Sequence[Any]],
        *,
        name: str,
        mapping: Optional[Mapping[str, Optional[str]]] = None,
    ) -> uuid.UUID:
        """Ingest an already-parsed upload as a full job on source csv_<name>."""
        upload = UploadSource(headers, rows, name, mapping)
        return await self._launch(upload, "full", upload.config())

    async def _launch(self, source: ContactSource, sync_type: str, config: dict) -> uuid.UUID:
        async with session_scope(self._session_factory) as session:
            job = await sync_jobs_repo.create_if_absent(session, source.name, sync_type, config)
        job_id = job.id
        task = asyncio.create_task(self._run(job_id, source, sync_type, config), name=f"sync-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        logger.info("Started %s sync job %s for %s", sync_type, job_id, source.name)
        return job_id

    async def wait(self, job_id: Any) -> None:
        """Block until the job's background task (if still alive) has finished."""
        task = self._tasks.get(contacts_repo.parse_id(job_id))
        if task is not None:
            await task

    # -- running jobs -------------------------------------------------------

    async def _incremental_since(self, source: str) -> datetime:
        async with session_scope(self._session_factory) as session:
            last = await sync_jobs_repo.last_completed(session, source)
        if last is not None and last.completed_at is not None:
            return as_utc(last.completed_at)
        return utcnow() - timedelta(hours=self.fallback_hours)

    async def _run(
        self, job_id: uuid.UUID, source: ContactSource, sync_type: str, config: dict
    ) -> None:
        counters = JobCounters()
        try:
            async with session_scope(self._session_factory) as session:
                if not await sync_jobs_repo.mark_running(session, job_id):
                    logger.info("Job %s is no longer pending; not running it", job_id)
                    return

            since = await self._incremental_since(source.name) if sync_type == "incremental" else None
            records = await source.fetch(since)
            counters.total = len(records)
            logger.info("Job %s fetched %d records from %s", job_id, counters.total, source.name)

            async with session_scope(self._session_factory) as session:
                if not await sync_jobs_repo.save_progress(session, job_id, counters.values()):
                    return

            for start in range(0, len(records), self.batch_size):
                batch = records[start:start + self.batch_size]
                async with session_scope(self._session_factory) as session:
                    for outcome in await self._process_batch(session, source, batch):
                        counters.add(outcome)
                    still_running = await sync_jobs_repo.save_progress(
                        session, job_id, counters.values()
                    )
                if not still_running:
                    logger.info("Job %s was cancelled; stopping after %d records", job_id, counters.processed)
                    return

            if config.get("prune_missing") and not records:
                logger.warning("Job %s fetched no records; skipping prune", job_id)
            async with session_scope(self._session_factory) as session:
                if config.get("prune_missing") and records:
                    counters.summary["deleted"] = await contacts_repo.soft_delete_missing(
                        session, source.name, [r.source_id for r in records]
                    )
                finished = await sync_jobs_repo.finish(session, job_id, "completed", counters.values())

            if finished:
                logger.info(
                    "Job %s completed: %d processed, %d errors, summary=%s",
                    job_id, counters.processed, counters.errors, counters.summary,
                )
                await self._create_batch_segment(source, counters)
        except asyncio.CancelledError:
            await self._fail(job_id, counters, "Sync interrupted")
            raise
        except Exception as exc:
            logger.exception("Sync job %s failed", job_id)
            await self._fail(job_id, counters, str(exc))

    async def _fail(self, job_id: uuid.UUID, counters: JobCounters, message: str) -> None:
        counters.record_error(None, message)
        try:
            async with session_scope(self._session_factory) as session:
                await sync_jobs_repo.finish(session, job_id, "failed", counters.values())
        except Exception:
            logger.exception("Could not mark job %s failed", job_id)

    async def _process_batch(
        self, session: AsyncSession, source: ContactSource, batch: Sequence[RawRecord]
    ) -> list[RecordOutcome]:
        # One AsyncSession cannot run statements concurrently; the lock
        # serializes store access while translation overlaps.
        lock = asyncio.Lock()
        return list(await asyncio.gather(
            *(self._process_record(session, lock, source, record) for record in batch)
        ))

    async def _process_record(
        self, session: AsyncSession, lock: asyncio.Lock, source: ContactSource, record: RawRecord
    ) -> RecordOutcome:
        try:
            data = source.translate(record)
        except Exception as exc:
            logger.warning("Record %s could not be translated: %s", record.source_id, exc)
            return RecordOutcome(
                record.source_id, "failed", RecordError(f"Translation failed: {exc}", record.source_id)
            )
        if data is None:
            return RecordOutcome(record.source_id, "skipped")

        async with lock:
            try:
                async with session.begin_nested():
                    _, created = await contacts_repo.upsert(session, data)
            except Exception as exc:
                logger.warning("Record %s failed to save: %s", record.source_id, exc)
                await self._note_contact_error(session, data, str(exc))
                return RecordOutcome(record.source_id, "failed", RecordError(str(exc), record.source_id))
        return RecordOutcome(record.source_id, "created" if created else "updated")

    async def _note_contact_error(self, session: AsyncSession, data: dict, message: str) -> None:
        """Attach the failure to the stored contact, when the record already exists."""
        try:
            async with session.begin_nested():
                contact = await contacts_repo.get_by_source_record(
                    session, data["source"], data["source_id"]
                )
                if contact is not None:
                    await contacts_repo.append_sync_error(
                        session, contact, message, settings.CONTACT_SYNC_ERROR_LIMIT
                    )
        except Exception:
            logger.exception("Could not record sync error on %s", data.get("source_id"))

    async def _create_batch_segment(self, source: ContactSource, counters: JobCounters) -> None:
        definition = source.batch_segment()
        if definition is None or counters.success == 0:
            return
        try:
            async with session_scope(self._session_factory) as session:
                existing = await segments_repo.get_by_name(session, definition["name"])
                if existing is not None:
                    await segment_engine.refresh_count(session, existing)
                else:
                    await segment_engine.create_segment(session, created_by="sync", **definition)
        except Exception:
            logger.exception("Could not create segment %s", definition["name"])

    # -- job queries / control ----------------------------------------------

    async def get_job_status(self, job_id: Any) -> SyncJobSnapshot:
        async with session_scope(self._session_factory) as session:
            job = await sync_jobs_repo.get(session, job_id)
            if job is None:
                raise NotFoundError(f"Sync job {job_id} not found")
            return snapshot(job)

    async def list_jobs(self, page: int = 1, limit: int = 20, source: Optional[str] = None) -> JobList:
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")
        async with session_scope(self._session_factory) as session:
            jobs, total = await sync_jobs_repo.list_jobs(session, page, limit, source)
            return JobList(jobs=[snapshot(j) for j in jobs], page=page, limit=limit, total=total)

    async def cancel(self, job_id: Any) -> SyncJobSnapshot:
        """Mark an active job failed. The runner notices after its current batch."""
        async with session_scope(self._session_factory) as session:
            job = await sync_jobs_repo.get(session, job_id)
            if job is None:
                raise NotFoundError(f"Sync job {job_id} not found")
            if job.status == "completed":
                raise ValidationError("Cannot cancel a completed job")
            if job.status != "failed":
                entry = {"record": None, "error": "Job cancelled by user", "timestamp": utcnow().isoformat()}
                await sync_jobs_repo.finish(
                    session, job.id, "failed", {"sync_errors": [*(job.sync_errors or []), entry]}
                )
                await session.refresh(job)
                logger.info("Cancelled sync job %s", job.id)
            return snapshot(job)

    async def last_sync_info(self, source: str) -> LastSyncInfo:
        async with session_scope(self._session_factory) as session:
            last = await sync_jobs_repo.last_job(session, source)
            completed = await sync_jobs_repo.last_completed(session, source)
            return LastSyncInfo(
                source=source,
                last_job=snapshot(last) if last else None,
                last_completed_at=as_utc(completed.completed_at) if completed else None,
                in_progress=bool(last and last.status in ("pending", "running")),
            )

    async def recover_stale_jobs(self) -> int:
        """Fail jobs left pending/running by a previous process, freeing their sources."""
        recovered = 0
        async with session_scope(self._session_factory) as session:
            for job in await sync_jobs_repo.list_active(session):
                if job.id in self._tasks:
                    continue
                entry = {"record": None, "error": "Interrupted by restart", "timestamp": utcnow().isoformat()}
                if await sync_jobs_repo.finish(
                    session, job.id, "failed", {"sync_errors": [*(job.sync_errors or []), entry]}
                ):
                    recovered += 1
        if recovered:
            logger.warning("Marked %d interrupted sync jobs as failed", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Cancel in-flight runs; each marks its job failed on the way out."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
