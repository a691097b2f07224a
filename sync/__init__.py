from .orchestrator import JobCounters, RecordOutcome, SyncOrchestrator
from .sources import ContactSource, HubSpotSource, RawRecord, SheetsSource, UploadSource

__all__ = [
    "JobCounters", "RecordOutcome", "SyncOrchestrator",
    "ContactSource", "HubSpotSource", "RawRecord", "SheetsSource", "UploadSource",
]
