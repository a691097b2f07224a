"""Bulk export — stream a segment (or ad-hoc filter) as a delimited document.

Results under `direct_limit` rows are streamed in one response, one
`page_size` page at a time, without holding the set in memory. Larger
results get a ChunkManifest instead: `chunk_size` slices, each fetched
with its own request (chunk=1..n).
"""
import csv
import io
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import settings
from db.connection import session_scope
from db.models import Contact, as_utc
from errors import ValidationError
from export.progress import ExportProgressCache
from schemas.export import ChunkManifest, ChunkRef
from segments import engine as segment_engine
from segments.engine import ContactSet

logger = logging.getLogger(__name__)

FORMATS = {
    "csv": (",", "text/csv"),
    "tsv": ("\t", "text/tab-separated-values"),
}


def _date(value: Optional[datetime]) -> str:
    return as_utc(value).isoformat() if value else ""


def _address(part: str) -> Callable[[Contact], Any]:
    return lambda c: (c.address or {}).get(part)


COLUMNS: list[tuple[str, Callable[[Contact], Any]]] = [
    ("First Name", lambda c: c.first_name),
    ("Last Name", lambda c: c.last_name),
    ("Email", lambda c: "" if c.email_is_placeholder else c.email),
    ("Phone", lambda c: c.phone),
    ("Company", lambda c: c.company),
    ("Job Title", lambda c: c.job_title),
    ("Street Address", _address("street")),
    ("City", _address("city")),
    ("State", _address("state")),
    ("Zip Code", _address("zip_code")),
    ("Country", _address("country")),
    ("Source", lambda c: c.source),
    ("Lifecycle Stage", lambda c: c.lifecycle_stage),
    ("Status", lambda c: c.status),
    ("DNC Status", lambda c: c.dnc_status),
    ("DNC Date", lambda c: _date(c.dnc_date)),
    ("DNC Reason", lambda c: c.dnc_reason),
    ("Tags", lambda c: "; ".join(c.tags or [])),
    ("Created Date", lambda c: _date(c.created_at)),
    ("Last Synced", lambda c: _date(c.last_synced_at)),
]


def render_rows(rows: list[list[Any]], delimiter: str) -> str:
    """Serialize rows with csv quoting (fields with delimiters, quotes or newlines get quoted)."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    writer.writerows([["" if v is None else v for v in row] for row in rows])
    return buffer.getvalue()


def contact_row(contact: Contact) -> list[Any]:
    return [getter(contact) for _, getter in COLUMNS]


def build_manifest(total: int, chunk_size: int, url_template: Optional[str] = None) -> ChunkManifest:
    """Split [0, total) into ceil(total / chunk_size) contiguous 1-based chunks."""
    total_chunks = math.ceil(total / chunk_size) if total else 0
    chunks = []
    for index in range(1, total_chunks + 1):
        start = (index - 1) * chunk_size
        stop = min(index * chunk_size, total)
        chunks.append(ChunkRef(
            index=index,
            start=start,
            stop=stop,
            rows=stop - start,
            url=url_template.format(chunk=index) if url_template else None,
        ))
    return ChunkManifest(total=total, chunk_size=chunk_size, total_chunks=total_chunks, chunks=chunks)


@dataclass
class DirectExport:
    run_id: str
    total: int
    filename: str
    media_type: str
    body: AsyncIterator[str]


ExportResult = Union[DirectExport, ChunkManifest]


class BulkExportStreamer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        direct_limit: int = settings.EXPORT_DIRECT_LIMIT,
        page_size: int = settings.EXPORT_PAGE_SIZE,
        chunk_size: int = settings.EXPORT_CHUNK_SIZE,
        timeout_seconds: float = settings.EXPORT_TIMEOUT_SECONDS,
        progress: Optional[ExportProgressCache] = None,
    ):
        self._session_factory = session_factory
        self.direct_limit = direct_limit
        self.page_size = page_size
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self.progress = progress or ExportProgressCache()

    async def export_segment(
        self, segment_id: Any, fmt: str = "csv", chunk: Optional[int] = None
    ) -> ExportResult:
        async with session_scope(self._session_factory) as session:
            segment = await segment_engine.get_segment(session, segment_id, refresh=False)
            contact_set = segment_engine.resolve_contact_set(segment)
            label = segment.name
        url_template = f"/segments/{segment_id}/export?format={fmt}&chunk={{chunk}}"
        return await self._export(contact_set, label, fmt, chunk, url_template)

    async def export_filters(
        self, filters: Any, fmt: str = "csv", chunk: Optional[int] = None
    ) -> ExportResult:
        contact_set = segment_engine.contact_set_for_filters(filters)
        return await self._export(contact_set, "contacts", fmt, chunk, None)

    async def _export(
        self,
        contact_set: ContactSet,
        label: str,
        fmt: str,
        chunk: Optional[int],
        url_template: Optional[str],
    ) -> ExportResult:
        if fmt not in FORMATS:
            raise ValidationError(f"Unsupported export format '{fmt}'. Use one of {sorted(FORMATS)}")
        async with session_scope(self._session_factory) as session:
            total = await contact_set.count(session)

        if chunk is not None:
            manifest = build_manifest(total, self.chunk_size)
            if not 1 <= chunk <= manifest.total_chunks:
                raise ValidationError(f"Chunk {chunk} out of range (1..{manifest.total_chunks})")
            ref = manifest.chunks[chunk - 1]
            return self._direct(contact_set, f"{label}_part{chunk}", fmt, ref.start, ref.stop)

        if total >= self.direct_limit:
            logger.info("Export of %s has %d rows; returning chunk manifest", label, total)
            return build_manifest(total, self.chunk_size, url_template)
        return self._direct(contact_set, label, fmt, 0, total)

    def _direct(
        self, contact_set: ContactSet, label: str, fmt: str, start: int, stop: int
    ) -> DirectExport:
        run_id = f"export_{uuid.uuid4().hex[:12]}_{int(time.time())}"
        delimiter, media_type = FORMATS[fmt]
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in label).strip("_") or "export"
        return DirectExport(
            run_id=run_id,
            total=stop - start,
            filename=f"{safe}_{datetime.now():%Y-%m-%d}.{fmt}",
            media_type=media_type,
            body=self._stream(run_id, contact_set, start, stop, delimiter),
        )

    async def _stream(
        self, run_id: str, contact_set: ContactSet, start: int, stop: int, delimiter: str
    ) -> AsyncIterator[str]:
        # Registered on first iteration: a body that is never consumed leaves no run behind
        self.progress.start(run_id, stop - start)
        deadline = time.monotonic() + self.timeout_seconds
        processed = 0
        try:
            yield render_rows([[name for name, _ in COLUMNS]], delimiter)
            async with self._session_factory() as session:
                async for rows in contact_set.iter_range(session, start, stop, self.page_size):
                    if time.monotonic() > deadline:
                        raise TimeoutError(f"Export exceeded {self.timeout_seconds}s")
                    yield render_rows([contact_row(c) for c in rows], delimiter)
                    processed += len(rows)
                    self.progress.advance(run_id, processed)
            self.progress.complete(run_id)
            logger.info("Export %s completed: %d rows", run_id, processed)
        except Exception as exc:
            # Headers are already out; record the failure and end the stream.
            logger.exception("Export %s failed after %d rows", run_id, processed)
            self.progress.fail(run_id, str(exc))
        finally:
            if not self.progress.is_finished(run_id):
                self.progress.fail(run_id, "Stream closed before completion")
