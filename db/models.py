"""SQLAlchemy 2.0 ORM models for audience-sync.

Covers 3 tables:
  - contacts: canonical contact records reconciled from every source
  - segments: named filters / identity lists with a cached count
  - sync_jobs: one row per sync run, with progress counters
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _in_check(column: str, values: tuple[str, ...], nullable: bool = False) -> str:
    check = f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"
    if nullable:
        return f"{column} IS NULL OR {check}"
    return check


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Allowed values used in CHECK constraints
# ---------------------------------------------------------------------------

LIFECYCLE_STAGES = ("subscriber", "lead", "prospect", "customer", "evangelist")
CONTACT_STATUSES = ("active", "inactive", "deleted")
DNC_STATUSES = ("callable", "dnc_internal", "dnc_federal", "dnc_state", "dnc_wireless")

SYNC_TYPES = ("full", "incremental")
SYNC_STATUSES = ("pending", "running", "completed", "failed")
ACTIVE_SYNC_STATUSES = ("pending", "running")
TERMINAL_SYNC_STATUSES = ("completed", "failed")

_ACTIVE_JOB_WHERE = text(_in_check("status", ACTIVE_SYNC_STATUSES))


# ===========================================================================
# Contacts
# ===========================================================================


class Contact(Base):
    """contacts — canonical person record, keyed by (source, source_id)."""

    __tablename__ = "contacts"
    __table_args__ = (
        CheckConstraint(
            _in_check("lifecycle_stage", LIFECYCLE_STAGES),
            name="ck_contact_lifecycle_stage",
        ),
        CheckConstraint(
            _in_check("status", CONTACT_STATUSES),
            name="ck_contact_status",
        ),
        CheckConstraint(
            _in_check("dnc_status", DNC_STATUSES, nullable=True),
            name="ck_contact_dnc_status",
        ),
        UniqueConstraint("source", "source_id", name="uq_contact_source_record"),
        Index("ix_contact_email", "email"),
        Index("ix_contact_source_status", "source", "status"),
        Index("ix_contact_created", "created_at", "id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Not unique: separate sources may hold independent records for one address
    email: Mapped[str] = mapped_column(Text, nullable=False)
    email_is_placeholder: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # {street, city, state, zip_code, country}
    address: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    lifecycle_stage: Mapped[str] = mapped_column(Text, default="lead", nullable=False)
    status: Mapped[str] = mapped_column(Text, default="active", nullable=False)
    dnc_status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dnc_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    dnc_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(
        JSON, default=dict, nullable=False
    )
    source: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    # [{error, timestamp, resolved}], newest last, bounded
    sync_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


# ===========================================================================
# Segments
# ===========================================================================


class Segment(Base):
    """segments — persisted filter map, or an explicit list of contact ids."""

    __tablename__ = "segments"
    __table_args__ = (UniqueConstraint("name", name="uq_segment_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    filters: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    # Set only for identity-list segments
    contact_ids: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    contact_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_count_update: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_by: Mapped[str] = mapped_column(Text, default="system", nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    color: Mapped[str] = mapped_column(Text, default="#3B82F6", nullable=False)
    icon: Mapped[str] = mapped_column(Text, default="users", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def is_identity_list(self) -> bool:
        return self.contact_ids is not None


# ===========================================================================
# Sync jobs
# ===========================================================================


class SyncJob(Base):
    """sync_jobs — one execution run against a single source."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        CheckConstraint(_in_check("type", SYNC_TYPES), name="ck_sync_job_type"),
        CheckConstraint(_in_check("status", SYNC_STATUSES), name="ck_sync_job_status"),
        # At most one pending/running job per source
        Index(
            "uq_sync_job_active_source",
            "source",
            unique=True,
            postgresql_where=_ACTIVE_JOB_WHERE,
            sqlite_where=_ACTIVE_JOB_WHERE,
        ),
        Index("ix_sync_job_source_completed", "source", "completed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, default="pending", nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # [{record, error, timestamp}], bounded tail, newest last
    sync_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )
    summary: Mapped[dict[str, int]] = mapped_column(
        JSON,
        default=lambda: {"created": 0, "updated": 0, "skipped": 0, "deleted": 0},
        nullable=False,
    )
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def progress(self) -> int:
        """Percent of fetched records settled so far."""
        if not self.total_records:
            return 100 if self.status == "completed" else 0
        return round(self.processed_records * 100 / self.total_records)
