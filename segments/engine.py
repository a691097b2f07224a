"""Segment engine — named audiences, live counts and paginated contact views.

A segment is either filter-based (Segment.filters compiled by
segments.filters) or an identity list (Segment.contact_ids). Both resolve
to a ContactSet, which the export streamer reads as well.
"""
import logging
import math
from typing import Any, AsyncIterator, Optional, Sequence

from sqlalchemy import ColumnElement, and_
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Contact, Segment, utcnow
from db.repositories import contacts as contacts_repo
from db.repositories import segments as segments_repo
from errors import NotFoundError, ProtectedSegmentError, ValidationError
from schemas.contact import ContactOut, ContactPage, ContactStats
from schemas.segment import FilterTemplate
from segments.filters import build_where

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
_SEARCH_KEYS = ("firstName", "lastName", "email", "company")

SYSTEM_SEGMENTS = [
    {"name": "All Contacts", "description": "Every active contact",
     "filters": {}, "color": "#007bff", "icon": "users"},
    {"name": "HubSpot Contacts", "description": "Contacts synced from HubSpot",
     "filters": {"source": "hubspot"}, "color": "#ff7a59", "icon": "hubspot"},
    {"name": "Google Sheets Contacts", "description": "Contacts synced from Google Sheets",
     "filters": {"source": "google_sheets"}, "color": "#34a853", "icon": "google"},
    {"name": "File Uploads", "description": "Contacts imported from uploaded files",
     "filters": {"source": {"$startswith": "csv_"}}, "color": "#6f42c1", "icon": "file-csv"},
    {"name": "New Leads", "description": "Leads created in the last 7 days",
     "filters": {"lifecycleStage": "lead", "createdWithinDays": 7}, "color": "#28a745", "icon": "user-plus"},
    {"name": "Customers", "description": "Contacts in the customer stage",
     "filters": {"lifecycleStage": "customer"}, "color": "#ffc107", "icon": "crown"},
    {"name": "Prospects", "description": "Contacts in the prospect stage",
     "filters": {"lifecycleStage": "prospect"}, "color": "#17a2b8", "icon": "eye"},
    {"name": "DNC - Do Not Call", "description": "Contacts on any do-not-call list",
     "filters": {"dncStatus": {"$in": ["dnc_internal", "dnc_federal", "dnc_state", "dnc_wireless"]}},
     "color": "#dc3545", "icon": "phone-slash"},
    {"name": "Callable Contacts", "description": "Contacts not marked internal do-not-call",
     "filters": {"dncStatus": "callable"}, "color": "#28a745", "icon": "phone"},
    {"name": "Needs Attention", "description": "Contacts with recorded sync errors",
     "filters": {"hasSyncErrors": True}, "color": "#fd7e14", "icon": "triangle-exclamation"},
]

FILTER_TEMPLATES = [
    {"name": "By Source", "description": "Contacts from one source",
     "filters": {"source": "hubspot"}},
    {"name": "By Lifecycle Stage", "description": "Contacts in given stages",
     "filters": {"lifecycleStage": ["lead", "prospect"]}},
    {"name": "By Company Size", "description": "Companies with 100+ employees",
     "filters": {"customFields.numberOfEmployees": {"$gte": "100"}}},
    {"name": "By Location", "description": "Contacts in one state",
     "filters": {"state": "CA"}},
    {"name": "Callable With Phone", "description": "Reachable by phone",
     "filters": {"dncStatus": "callable", "hasPhone": True}},
    {"name": "Recently Synced", "description": "Synced within a date range",
     "filters": {"lastSyncRange": {"start": "2024-01-01", "end": "2024-12-31"}}},
    {"name": "Tagged", "description": "Contacts carrying any of the tags",
     "filters": {"tags": ["vip"]}},
]


# ---------------------------------------------------------------------------
# Contact sets
# ---------------------------------------------------------------------------


class ContactSet:
    """A resolved audience: a WHERE clause over contacts, or an explicit id list."""

    def __init__(self, where: Optional[ColumnElement[bool]] = None, ids: Optional[Sequence[str]] = None):
        if (where is None) == (ids is None):
            raise ValueError("ContactSet needs exactly one of where / ids")
        self.where = where
        self.ids = list(ids) if ids is not None else None

    async def count(self, session: AsyncSession) -> int:
        if self.ids is not None:
            return len(self.ids)
        return await contacts_repo.count_where(session, self.where)

    async def page(self, session: AsyncSession, offset: int, limit: int) -> list[Contact]:
        if self.ids is not None:
            return await contacts_repo.get_many(session, self.ids[offset:offset + limit])
        return await contacts_repo.page_where(session, self.where, offset, limit)

    async def iter_range(
        self, session: AsyncSession, start: int, stop: int, page_size: int
    ) -> AsyncIterator[list[Contact]]:
        """Yield pages covering positions [start, stop) of the set's stable order."""
        if self.ids is not None:
            for offset in range(start, min(stop, len(self.ids)), page_size):
                yield await contacts_repo.get_many(
                    session, self.ids[offset:min(offset + page_size, stop)]
                )
            return

        remaining = stop - start
        rows = await contacts_repo.page_where(session, self.where, start, min(page_size, remaining))
        while rows:
            yield rows
            remaining -= len(rows)
            if remaining <= 0 or len(rows) < page_size:
                return
            last = rows[-1]
            rows = await contacts_repo.keyset_page(
                session, self.where, (last.created_at, last.id), min(page_size, remaining)
            )


def contact_set_for_filters(filters: Any) -> ContactSet:
    return ContactSet(where=build_where(filters))


def resolve_contact_set(segment: Segment) -> ContactSet:
    if segment.is_identity_list:
        return ContactSet(ids=segment.contact_ids)
    return contact_set_for_filters(segment.filters)


# ---------------------------------------------------------------------------
# Segment operations
# ---------------------------------------------------------------------------


def _dedupe_ids(contact_ids: Sequence[Any]) -> list[str]:
    seen: dict[str, None] = {}
    for contact_id in contact_ids:
        seen.setdefault(str(contact_id), None)
    return list(seen)


def _check_definition(filters: Any, contact_ids: Any) -> None:
    if filters is not None and not isinstance(filters, dict):
        raise ValidationError("filters must be an object")
    if contact_ids is not None and not isinstance(contact_ids, (list, tuple)):
        raise ValidationError("contactIds must be a list")


def _ids_from_filters(filters: Any) -> Optional[list]:
    """Ids of a filter map that selects contacts by id alone, else None."""
    if not isinstance(filters, dict) or len(filters) != 1:
        return None
    key, value = next(iter(filters.items()))
    if key not in ("_id", "id"):
        return None
    if isinstance(value, dict) and list(value) == ["$in"]:
        value = value["$in"]
    return list(value) if isinstance(value, (list, tuple)) else None


async def refresh_count(session: AsyncSession, segment: Segment) -> int:
    """Recompute and store the segment's contact count."""
    segment.contact_count = await resolve_contact_set(segment).count(session)
    segment.last_count_update = utcnow()
    await session.flush()
    return segment.contact_count


async def create_segment(
    session: AsyncSession,
    name: str,
    *,
    filters: Optional[dict] = None,
    contact_ids: Optional[Sequence[Any]] = None,
    description: Optional[str] = None,
    created_by: str = "user",
    color: Optional[str] = None,
    icon: Optional[str] = None,
    is_system: bool = False,
) -> Segment:
    """Persist a segment with its count computed immediately.

    Identity-list segments count as the list length; filter segments query
    the store. A filter map that only names ids is stored as an identity list.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Segment name is required")
    _check_definition(filters, contact_ids)
    if contact_ids is None:
        ids = _ids_from_filters(filters)
        if ids is not None:
            filters, contact_ids = None, ids

    segment = await segments_repo.insert(session, {
        "name": name,
        "description": description,
        "filters": {} if contact_ids is not None else (filters or {}),
        "contact_ids": _dedupe_ids(contact_ids) if contact_ids is not None else None,
        "created_by": created_by,
        "is_system": is_system,
        "color": color,
        "icon": icon,
    })
    await refresh_count(session, segment)
    logger.info("Created segment %s (%d contacts)", segment.name, segment.contact_count)
    return segment


async def get_segment(session: AsyncSession, segment_id: Any, refresh: bool = True) -> Segment:
    segment = await segments_repo.get(session, segment_id)
    if segment is None:
        raise NotFoundError(f"Segment {segment_id} not found")
    if refresh:
        await refresh_count(session, segment)
    return segment


async def list_segments(session: AsyncSession) -> list[Segment]:
    """All segments with freshly computed counts. A failing count keeps the cached value."""
    segments = await segments_repo.list_all(session)
    for segment in segments:
        try:
            async with session.begin_nested():
                await refresh_count(session, segment)
        except Exception:
            logger.exception("Count refresh failed for segment %s", segment.name)
    return segments


async def get_segment_contacts(
    session: AsyncSession, segment_id: Any, page: int = 1, limit: int = 50
) -> ContactPage:
    """One page of a segment's contacts, ordered by creation."""
    _check_paging(page, limit)
    segment = await get_segment(session, segment_id, refresh=False)
    return await _page_of(session, resolve_contact_set(segment), page, limit)


async def search_contacts(
    session: AsyncSession,
    filters: Optional[dict] = None,
    page: int = 1,
    limit: int = 50,
    query: Optional[str] = None,
) -> ContactPage:
    """One page of the contacts matching an ad-hoc filter map.

    `query` additionally matches, case-insensitively, any of first name,
    last name, email or company.
    """
    _check_paging(page, limit)
    _check_definition(filters, None)
    where = build_where(filters or {})
    if query and query.strip():
        text = query.strip()
        where = and_(where, build_where(
            {"$or": [{key: text} for key in _SEARCH_KEYS]}, exclude_deleted=False
        ))
    return await _page_of(session, ContactSet(where=where), page, limit)


async def contact_stats(session: AsyncSession) -> ContactStats:
    """Breakdown of the non-deleted contacts."""
    active = build_where({})

    async def count(filters: dict) -> int:
        return await contacts_repo.count_where(session, build_where(filters))

    def keyed(counts: dict) -> dict[str, int]:
        return {key or "none": n for key, n in sorted(counts.items(), key=lambda kv: kv[0] or "")}

    return ContactStats(
        total=await contacts_repo.count_where(session, active),
        callable_contacts=await count({"dncStatus": "callable"}),
        with_sync_errors=await count({"hasSyncErrors": True}),
        placeholder_emails=await count({"emailIsPlaceholder": True}),
        by_source=keyed(await contacts_repo.count_by(session, Contact.source, active)),
        by_lifecycle_stage=keyed(await contacts_repo.count_by(session, Contact.lifecycle_stage, active)),
        by_dnc_status=keyed(await contacts_repo.count_by(session, Contact.dnc_status, active)),
    )


def _check_paging(page: int, limit: int) -> None:
    if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")


async def _page_of(session: AsyncSession, contact_set: ContactSet, page: int, limit: int) -> ContactPage:
    total = await contact_set.count(session)
    rows = await contact_set.page(session, (page - 1) * limit, limit)
    return ContactPage(
        contacts=[ContactOut.model_validate(c) for c in rows],
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit) if total else 0,
        total_records=total,
    )


async def update_segment(session: AsyncSession, segment_id: Any, changes: dict) -> Segment:
    segment = await get_segment(session, segment_id, refresh=False)
    if segment.is_system:
        raise ProtectedSegmentError("System segments cannot be modified")
    _check_definition(changes.get("filters"), changes.get("contact_ids"))
    if changes.get("contact_ids") is None:
        ids = _ids_from_filters(changes.get("filters"))
        if ids is not None:
            changes = {**changes, "filters": None, "contact_ids": ids}

    for field in ("name", "description", "color", "icon"):
        if changes.get(field) is not None:
            setattr(segment, field, changes[field])
    if changes.get("contact_ids") is not None:
        segment.contact_ids = _dedupe_ids(changes["contact_ids"])
        segment.filters = {}
    elif changes.get("filters") is not None:
        segment.filters = changes["filters"]
        segment.contact_ids = None

    await segments_repo.save(session, segment)
    await refresh_count(session, segment)
    return segment


async def delete_segment(session: AsyncSession, segment_id: Any) -> None:
    segment = await get_segment(session, segment_id, refresh=False)
    if segment.is_system:
        raise ProtectedSegmentError("System segments cannot be deleted")
    await segments_repo.delete(session, segment)
    logger.info("Deleted segment %s", segment.name)


async def duplicate_segment(
    session: AsyncSession, segment_id: Any, new_name: Optional[str] = None
) -> Segment:
    original = await get_segment(session, segment_id, refresh=False)
    return await create_segment(
        session,
        new_name or f"{original.name} (Copy)",
        filters=dict(original.filters or {}),
        contact_ids=original.contact_ids,
        description=original.description,
        color=original.color,
        icon=original.icon,
    )


async def initialize_system_segments(session: AsyncSession) -> list[Segment]:
    """Create any missing system segments and refresh the definitions of existing ones."""
    segments = []
    for definition in SYSTEM_SEGMENTS:
        segment = await segments_repo.get_by_name(session, definition["name"])
        if segment is None:
            segment = await create_segment(
                session, created_by="system", is_system=True, **definition
            )
        else:
            segment.filters = definition["filters"]
            segment.is_system = True
            await refresh_count(session, segment)
        segments.append(segment)
    return segments


def filter_templates() -> list[FilterTemplate]:
    return [FilterTemplate(**template) for template in FILTER_TEMPLATES]
