"""Sync job schemas."""
import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from schemas.base import CamelModel


class StartSyncRequest(CamelModel):
    type: str = "full"
    spreadsheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    list_id: Optional[str] = None
    list_name: Optional[str] = None
    mapping: Optional[dict[str, Optional[str]]] = None
    prune_missing: bool = False


class UploadRequest(CamelModel):
    """Already-parsed upload: a header row plus data rows."""
    name: str = Field(min_length=1)
    headers: List[str]
    rows: List[List[Any]]
    mapping: Optional[dict[str, Optional[str]]] = None


class SheetsConnectionRequest(CamelModel):
    spreadsheet_id: str = Field(min_length=1)


class JobStarted(CamelModel):
    job_id: uuid.UUID
    source: str
    status: str = "pending"


class SyncJobSnapshot(CamelModel):
    id: uuid.UUID
    source: str
    type: str
    status: str
    progress: int
    total_records: int
    processed_records: int
    success_count: int
    error_count: int
    summary: dict[str, int]
    recent_errors: List[dict[str, Any]] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class JobList(CamelModel):
    jobs: List[SyncJobSnapshot]
    page: int
    limit: int
    total: int


class LastSyncInfo(CamelModel):
    source: str
    last_job: Optional[SyncJobSnapshot] = None
    last_completed_at: Optional[datetime] = None
    in_progress: bool = False


class HubSpotList(CamelModel):
    id: str
    name: str
    size: int = 0
    dynamic: bool = False


class SheetInfo(CamelModel):
    title: str
    sheet_id: Optional[int] = None
    row_count: int = 0
    column_count: int = 0


class SpreadsheetInfo(CamelModel):
    spreadsheet_id: str
    title: str
    sheets: List[SheetInfo]
