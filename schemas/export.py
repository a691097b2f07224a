"""Bulk export schemas."""
from typing import Any, List, Optional

from pydantic import Field

from schemas.base import CamelModel


class ExportRequest(CamelModel):
    filters: dict[str, Any] = Field(default_factory=dict)
    format: str = "csv"
    chunk: Optional[int] = Field(default=None, ge=1)


class ChunkRef(CamelModel):
    index: int
    start: int
    stop: int
    rows: int
    url: Optional[str] = None


class ChunkManifest(CamelModel):
    total: int
    chunk_size: int
    total_chunks: int
    chunks: List[ChunkRef]


class ExportProgress(CamelModel):
    run_id: str
    status: str
    total: int
    processed: int
    percentage: int
    elapsed_seconds: float
    error: Optional[str] = None
