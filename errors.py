"""Error taxonomy shared by the sync, segment and export layers."""
from typing import Optional


class AudienceSyncError(Exception):
    """Base class for all application errors."""


class ValidationError(AudienceSyncError):
    """Caller supplied bad input. Surfaces as HTTP 400."""


class ConflictError(ValidationError):
    """Request collides with existing state (HTTP 409)."""


class SyncInProgressError(ConflictError):
    def __init__(self, source: str):
        super().__init__(f"A sync is already in progress for source '{source}'")
        self.source = source


class ProtectedSegmentError(ValidationError):
    """System segments cannot be modified or deleted (HTTP 403)."""


class NotFoundError(AudienceSyncError):
    """Referenced entity does not exist (HTTP 404)."""


class PipelineError(AudienceSyncError):
    """A source or store failure fatal to a whole sync job."""


class RecordError(AudienceSyncError):
    """A failure isolated to one source record.

    Never raised out of a batch; carried inside a RecordOutcome instead.
    """

    def __init__(self, message: str, source_id: Optional[str] = None):
        super().__init__(message)
        self.source_id = source_id
