"""HTTP surface for audience-sync.

Run with `python cli.py serve` or `uvicorn api:app`. Every collaborator
lives on app.state so tests can build an app around their own engine.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.connection import dispose_engine, get_session_factory, session_scope
from db.repositories import contacts as contacts_repo
from errors import (
    AudienceSyncError,
    ConflictError,
    NotFoundError,
    PipelineError,
    ProtectedSegmentError,
    ValidationError,
)
from export.streamer import BulkExportStreamer, DirectExport
from schemas import (
    ContactCreate,
    ContactOut,
    ContactPage,
    ContactSearch,
    ContactStats,
    ExportRequest,
    HubSpotList,
    JobStarted,
    SegmentCreate,
    SegmentDuplicate,
    SegmentOut,
    SegmentUpdate,
    SheetsConnectionRequest,
    SpreadsheetInfo,
    StartSyncRequest,
    UploadRequest,
)
from segments import engine as segment_engine
from sync import sources
from sync.field_mapping import finalize, is_placeholder_email
from sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

_STATUS_CODES = [
    (ProtectedSegmentError, 403),
    (ConflictError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (PipelineError, 502),
]


def status_for(exc: AudienceSyncError) -> int:
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


async def _handle_app_error(request: Request, exc: AudienceSyncError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"success": False, "error": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with session_scope(request.app.state.session_factory) as session:
        yield session


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_streamer(request: Request) -> BulkExportStreamer:
    return request.app.state.streamer


def _export_response(result: Any) -> Any:
    if isinstance(result, DirectExport):
        return StreamingResponse(
            result.body,
            media_type=result.media_type,
            headers={
                "Content-Disposition": f'attachment; filename="{result.filename}"',
                "X-Export-ID": result.run_id,
                "X-Total-Records": str(result.total),
            },
        )
    return result


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

sync_router = APIRouter(prefix="/sync", tags=["sync"])


@sync_router.post("/upload", status_code=202, response_model=JobStarted)
async def start_upload(
    body: UploadRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)
):
    job_id = await orchestrator.start_upload(
        body.headers, body.rows, name=body.name, mapping=body.mapping
    )
    return JobStarted(job_id=job_id, source=sources.upload_source_name(body.name))


@sync_router.get("/jobs")
async def list_jobs(
    page: int = Query(1),
    limit: int = Query(20),
    source: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.list_jobs(page, limit, source)


@sync_router.get("/jobs/{job_id}")
async def get_job(job_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_job_status(job_id)


@sync_router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.cancel(job_id)


@sync_router.get("/last/{source}")
async def last_sync(source: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.last_sync_info(source)


@sync_router.post("/test/{source}")
async def check_source_connection(source: str, body: Optional[SheetsConnectionRequest] = None):
    """Credential check; a failed check is reported in the body, not as an error status."""
    return await sources.check_connection(source, body.spreadsheet_id if body else None)


@sync_router.get("/hubspot/lists", response_model=list[HubSpotList])
async def hubspot_lists():
    return await sources.hubspot_lists()


@sync_router.get("/google-sheets/{spreadsheet_id}/info", response_model=SpreadsheetInfo)
async def spreadsheet_info(spreadsheet_id: str):
    return await sources.spreadsheet_info(spreadsheet_id)


@sync_router.post("/{source}", status_code=202, response_model=JobStarted)
async def start_sync(
    source: str,
    body: Optional[StartSyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    body = body or StartSyncRequest()
    config = body.model_dump(exclude={"type"}, exclude_none=True)
    job_id = await orchestrator.start_sync(source, body.type, config)
    return JobStarted(job_id=job_id, source=source)


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

segment_router = APIRouter(prefix="/segments", tags=["segments"])


@segment_router.post("", status_code=201, response_model=SegmentOut)
async def create_segment(body: SegmentCreate, session: AsyncSession = Depends(get_session)):
    return await segment_engine.create_segment(
        session,
        body.name,
        filters=body.filters,
        contact_ids=body.contact_ids,
        description=body.description,
        created_by=body.created_by,
        color=body.color,
        icon=body.icon,
    )


@segment_router.get("", response_model=list[SegmentOut])
async def list_segments(session: AsyncSession = Depends(get_session)):
    return await segment_engine.list_segments(session)


@segment_router.get("/templates")
async def list_templates():
    return segment_engine.filter_templates()


@segment_router.get("/{segment_id}", response_model=SegmentOut)
async def get_segment(segment_id: str, session: AsyncSession = Depends(get_session)):
    return await segment_engine.get_segment(session, segment_id)


@segment_router.put("/{segment_id}", response_model=SegmentOut)
async def update_segment(
    segment_id: str, body: SegmentUpdate, session: AsyncSession = Depends(get_session)
):
    return await segment_engine.update_segment(session, segment_id, body.model_dump(exclude_unset=True))


@segment_router.delete("/{segment_id}")
async def delete_segment(segment_id: str, session: AsyncSession = Depends(get_session)):
    await segment_engine.delete_segment(session, segment_id)
    return {"success": True}


@segment_router.post("/{segment_id}/duplicate", status_code=201, response_model=SegmentOut)
async def duplicate_segment(
    segment_id: str,
    body: Optional[SegmentDuplicate] = None,
    session: AsyncSession = Depends(get_session),
):
    return await segment_engine.duplicate_segment(session, segment_id, body.name if body else None)


@segment_router.get("/{segment_id}/contacts")
async def segment_contacts(
    segment_id: str,
    page: int = Query(1),
    limit: int = Query(50),
    session: AsyncSession = Depends(get_session),
):
    return await segment_engine.get_segment_contacts(session, segment_id, page, limit)


@segment_router.get("/{segment_id}/export")
async def export_segment(
    segment_id: str,
    format: str = Query("csv"),
    chunk: Optional[int] = Query(None),
    streamer: BulkExportStreamer = Depends(get_streamer),
):
    return _export_response(await streamer.export_segment(segment_id, format, chunk))


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

export_router = APIRouter(prefix="/export", tags=["export"])


@export_router.post("")
async def export_filters(body: ExportRequest, streamer: BulkExportStreamer = Depends(get_streamer)):
    return _export_response(await streamer.export_filters(body.filters, body.format, body.chunk))


@export_router.get("/progress/{run_id}")
async def export_progress(run_id: str, streamer: BulkExportStreamer = Depends(get_streamer)):
    progress = streamer.progress.get(run_id)
    if progress is None:
        raise NotFoundError(f"Export run {run_id} not found or expired")
    return progress


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

contact_router = APIRouter(prefix="/contacts", tags=["contacts"])


@contact_router.get("", response_model=ContactPage)
async def list_contacts(
    page: int = Query(1),
    limit: int = Query(50),
    search: Optional[str] = None,
    source: Optional[str] = None,
    lifecycle_stage: Optional[str] = Query(None, alias="lifecycleStage"),
    dnc_status: Optional[str] = Query(None, alias="dncStatus"),
    tag: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    filters = {
        "source": source,
        "lifecycleStage": lifecycle_stage,
        "dncStatus": dnc_status,
        "tags": [tag] if tag else None,
    }
    return await segment_engine.search_contacts(
        session,
        {key: value for key, value in filters.items() if value},
        page,
        limit,
        query=search,
    )


@contact_router.post("/search", response_model=ContactPage)
async def search_contacts(body: ContactSearch, session: AsyncSession = Depends(get_session)):
    return await segment_engine.search_contacts(
        session, body.filters, body.page, body.limit, query=body.query
    )


@contact_router.get("/stats", response_model=ContactStats)
async def contact_stats(session: AsyncSession = Depends(get_session)):
    return await segment_engine.contact_stats(session)


@contact_router.post("", status_code=201, response_model=ContactOut)
async def create_contact(body: ContactCreate, session: AsyncSession = Depends(get_session)):
    """Manual entry. Stored under source 'manual'; a missing email gets a placeholder."""
    data = body.model_dump()
    data["address"] = (body.address.model_dump(exclude_none=True) if body.address else {})
    if data.get("email"):
        if "@" not in data["email"] or is_placeholder_email(data["email"]):
            raise ValidationError(f"Invalid email address: {data['email']}")
        data["email"] = data["email"].strip().lower()
    record = finalize(data, "manual", f"manual:{uuid.uuid4().hex}")
    if record is None:
        raise ValidationError("A contact needs a name, an email or a company")
    contact, _ = await contacts_repo.upsert(session, record)
    return contact


@contact_router.get("/{contact_id}", response_model=ContactOut)
async def get_contact(contact_id: str, session: AsyncSession = Depends(get_session)):
    contact = await contacts_repo.get_by_id(session, contact_id)
    if contact is None:
        raise NotFoundError(f"Contact {contact_id} not found")
    return contact


@contact_router.delete("/{contact_id}", response_model=ContactOut)
async def delete_contact(contact_id: str, session: AsyncSession = Depends(get_session)):
    contact = await contacts_repo.soft_delete(session, contact_id)
    if contact is None:
        raise NotFoundError(f"Contact {contact_id} not found")
    return contact


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    orchestrator: Optional[SyncOrchestrator] = None,
    streamer: Optional[BulkExportStreamer] = None,
) -> FastAPI:
    owns_engine = session_factory is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        factory = session_factory or get_session_factory()
        app.state.session_factory = factory
        app.state.orchestrator = orchestrator or SyncOrchestrator(factory)
        app.state.streamer = streamer or BulkExportStreamer(factory)

        async with session_scope(factory) as session:
            await segment_engine.initialize_system_segments(session)
        await app.state.orchestrator.recover_stale_jobs()
        logger.info("audience-sync started")

        yield

        logger.info("audience-sync shutting down")
        await app.state.orchestrator.shutdown()
        if owns_engine:
            await dispose_engine()

    app = FastAPI(
        title="audience-sync",
        description="Contact sync, segmentation and bulk export",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(AudienceSyncError, _handle_app_error)
    app.include_router(sync_router)
    app.include_router(segment_router)
    app.include_router(export_router)
    app.include_router(contact_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
