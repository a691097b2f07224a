"""Segment schemas."""
import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import Field

from schemas.base import CamelModel


class SegmentCreate(CamelModel):
    """Either `filters` (a filter map) or `contact_ids` (an identity list)."""
    name: str = Field(min_length=1)
    description: Optional[str] = None
    filters: Optional[dict[str, Any]] = None
    contact_ids: Optional[List[str]] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    created_by: str = "user"


class SegmentUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    filters: Optional[dict[str, Any]] = None
    contact_ids: Optional[List[str]] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class SegmentDuplicate(CamelModel):
    name: Optional[str] = None


class SegmentOut(CamelModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    filters: dict[str, Any] = Field(default_factory=dict)
    contact_ids: Optional[List[str]] = None
    contact_count: int
    last_count_update: Optional[datetime] = None
    created_by: str
    is_system: bool
    color: str
    icon: str
    created_at: datetime
    updated_at: datetime


class FilterTemplate(CamelModel):
    name: str
    description: str
    filters: dict[str, Any]
