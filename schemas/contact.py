"""Contact schemas."""
import uuid
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import Field

from schemas.base import CamelModel

LifecycleStage = Literal["subscriber", "lead", "prospect", "customer", "evangelist"]
DncStatus = Literal["callable", "dnc_internal", "dnc_federal", "dnc_state", "dnc_wireless"]


class Address(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class ContactCreate(CamelModel):
    """Manual contact entry. At least one of name, email or company is required."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    address: Optional[Address] = None
    lifecycle_stage: LifecycleStage = "lead"
    status: Literal["active", "inactive"] = "active"
    dnc_status: Optional[DncStatus] = None
    dnc_reason: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class ContactOut(CamelModel):
    id: uuid.UUID
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: str
    email_is_placeholder: bool = False
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    address: Address = Field(default_factory=Address)
    lifecycle_stage: str
    status: str
    dnc_status: Optional[str] = None
    dnc_date: Optional[datetime] = None
    dnc_reason: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    source: str
    source_id: str
    sync_errors: List[dict[str, Any]] = Field(default_factory=list)
    last_synced_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ContactPage(CamelModel):
    contacts: List[ContactOut]
    page: int
    limit: int
    total_pages: int
    total_records: int


class ContactSearch(CamelModel):
    filters: dict[str, Any] = Field(default_factory=dict)
    query: Optional[str] = None
    page: int = 1
    limit: int = 50


class ContactStats(CamelModel):
    """Counts over contacts that are not soft-deleted."""
    total: int
    callable_contacts: int
    with_sync_errors: int
    placeholder_emails: int
    by_source: dict[str, int]
    by_lifecycle_stage: dict[str, int]
    by_dnc_status: dict[str, int]
