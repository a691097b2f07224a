"""Contact repository — source-record matching, merge-upsert and paging."""
import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Contact, utcnow

logger = logging.getLogger(__name__)

# Scalar fields copied onto an existing contact when the incoming value is non-empty
_MERGE_FIELDS = (
    "first_name",
    "last_name",
    "job_title",
    "phone",
    "company",
    "lifecycle_stage",
    "status",
    "dnc_status",
    "dnc_date",
    "dnc_reason",
)

_ORDER = (Contact.created_at, Contact.id)


def parse_id(value: Any) -> Optional[uuid.UUID]:
    """Coerce a str/UUID to UUID, or None when it is not a valid id."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


async def get_by_id(session: AsyncSession, contact_id: Any) -> Optional[Contact]:
    """Return the Contact with this id, or None."""
    parsed = parse_id(contact_id)
    if parsed is None:
        return None
    return await session.get(Contact, parsed)


async def get_by_source_record(
    session: AsyncSession, source: str, source_id: str
) -> Optional[Contact]:
    result = await session.execute(
        select(Contact).where(Contact.source == source, Contact.source_id == source_id)
    )
    return result.scalar_one_or_none()


async def find_match(session: AsyncSession, data: dict) -> Optional[Contact]:
    """Find the stored contact an incoming source record refers to.

    The (source, source_id) key wins; otherwise a real (non-placeholder)
    email match within the same source.
    """
    contact = await get_by_source_record(session, data["source"], data["source_id"])
    if contact is not None or data.get("email_is_placeholder") or not data.get("email"):
        return contact
    result = await session.execute(
        select(Contact)
        .where(
            Contact.source == data["source"],
            Contact.email == data["email"],
            Contact.email_is_placeholder.is_(False),
        )
        .order_by(*_ORDER)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create(session: AsyncSession, data: dict) -> Contact:
    """Insert a new contact.

    data dict keys: source, source_id, email, email_is_placeholder, first_name,
    last_name, job_title, phone, company, address, lifecycle_stage, status,
    dnc_status, dnc_date, dnc_reason, tags, custom_fields
    """
    now = utcnow()
    contact = Contact(
        **{k: v for k, v in data.items() if v is not None},
        last_synced_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(contact)
    await session.flush()
    return contact


def merge(contact: Contact, data: dict) -> Contact:
    """Fold an incoming record into an existing contact (in place)."""
    for field in _MERGE_FIELDS:
        value = data.get(field)
        if value not in (None, ""):
            setattr(contact, field, value)

    # Never replace a real email address with a synthesized one
    if data.get("email") and (not data.get("email_is_placeholder") or contact.email_is_placeholder):
        contact.email = data["email"]
        contact.email_is_placeholder = bool(data.get("email_is_placeholder"))

    if data.get("source_id"):
        contact.source_id = data["source_id"]
    if data.get("address"):
        contact.address = {**(contact.address or {}), **data["address"]}
    if data.get("custom_fields"):
        contact.custom_fields = {**(contact.custom_fields or {}), **data["custom_fields"]}
    if data.get("tags"):
        existing = list(contact.tags or [])
        contact.tags = existing + [t for t in data["tags"] if t not in existing]

    contact.last_synced_at = utcnow()
    return contact


async def upsert(session: AsyncSession, data: dict) -> tuple[Contact, bool]:
    """Create or merge a contact from a translated source record.

    Returns (contact, created).
    """
    existing = await find_match(session, data)
    if existing is None:
        return await create(session, data), True
    merge(existing, data)
    await session.flush()
    return existing, False


async def append_sync_error(
    session: AsyncSession, contact: Contact, message: str, limit: int
) -> None:
    """Record a sync error on the contact, keeping only the newest `limit` entries."""
    entry = {"error": message, "timestamp": utcnow().isoformat(), "resolved": False}
    contact.sync_errors = [*(contact.sync_errors or []), entry][-limit:]
    await session.flush()


async def soft_delete(session: AsyncSession, contact_id: Any) -> Optional[Contact]:
    """Flip status to 'deleted'. Contacts are never removed."""
    contact = await get_by_id(session, contact_id)
    if contact is None:
        return None
    contact.status = "deleted"
    await session.flush()
    return contact


async def soft_delete_missing(
    session: AsyncSession, source: str, seen_source_ids: Iterable[str]
) -> int:
    """Soft-delete active contacts of a source whose source_id was not seen."""
    seen = set(seen_source_ids)
    result = await session.execute(
        select(Contact.id, Contact.source_id).where(
            Contact.source == source, Contact.status != "deleted"
        )
    )
    missing = [row.id for row in result.all() if row.source_id not in seen]
    for start in range(0, len(missing), 500):
        await session.execute(
            update(Contact)
            .where(Contact.id.in_(missing[start:start + 500]))
            .values(status="deleted", updated_at=utcnow())
        )
    if missing:
        logger.info("Soft-deleted %d %s contacts missing from source", len(missing), source)
    return len(missing)


async def count_where(session: AsyncSession, where: ColumnElement[bool]) -> int:
    result = await session.execute(select(func.count()).select_from(Contact).where(where))
    return int(result.scalar_one())


async def count_by(
    session: AsyncSession, column: Any, where: ColumnElement[bool]
) -> dict[Optional[str], int]:
    """Counts of matching contacts grouped by one column's value."""
    result = await session.execute(
        select(column, func.count()).select_from(Contact).where(where).group_by(column)
    )
    return {value: int(count) for value, count in result.all()}


async def page_where(
    session: AsyncSession, where: ColumnElement[bool], offset: int, limit: int
) -> list[Contact]:
    result = await session.execute(
        select(Contact).where(where).order_by(*_ORDER).offset(offset).limit(limit)
    )
    return list(result.scalars().all())


async def keyset_page(
    session: AsyncSession,
    where: ColumnElement[bool],
    after: Optional[tuple[datetime, uuid.UUID]],
    limit: int,
) -> list[Contact]:
    """Next `limit` contacts ordered by (created_at, id), strictly after `after`."""
    clause = where
    if after is not None:
        created_at, contact_id = after
        clause = and_(
            where,
            or_(
                Contact.created_at > created_at,
                and_(Contact.created_at == created_at, Contact.id > contact_id),
            ),
        )
    result = await session.execute(
        select(Contact).where(clause).order_by(*_ORDER).limit(limit)
    )
    return list(result.scalars().all())


async def get_many(session: AsyncSession, ids: Sequence[Any]) -> list[Contact]:
    """Fetch contacts by id, in the given order; unknown or invalid ids are dropped."""
    parsed = [p for p in (parse_id(i) for i in ids) if p is not None]
    if not parsed:
        return []
    result = await session.execute(select(Contact).where(Contact.id.in_(parsed)))
    by_id = {c.id: c for c in result.scalars().all()}
    return [by_id[p] for p in parsed if p in by_id]
