from .base import CamelModel
from .contact import Address, ContactCreate, ContactOut, ContactPage, ContactSearch, ContactStats
from .segment import FilterTemplate, SegmentCreate, SegmentDuplicate, SegmentOut, SegmentUpdate
from .sync_job import (
    JobList,
    HubSpotList,
    JobStarted,
    LastSyncInfo,
    SheetInfo,
    SheetsConnectionRequest,
    SpreadsheetInfo,
    StartSyncRequest,
    SyncJobSnapshot,
    UploadRequest,
)
from .export import ChunkManifest, ChunkRef, ExportProgress, ExportRequest

__all__ = [
    "CamelModel",
    "Address", "ContactCreate", "ContactOut", "ContactPage", "ContactSearch", "ContactStats",
    "FilterTemplate", "SegmentCreate", "SegmentDuplicate", "SegmentOut", "SegmentUpdate",
    "HubSpotList", "JobList", "JobStarted", "LastSyncInfo", "SheetInfo", "SheetsConnectionRequest",
    "SpreadsheetInfo", "StartSyncRequest", "SyncJobSnapshot", "UploadRequest",
    "ChunkManifest", "ChunkRef", "ExportProgress", "ExportRequest",
]
