"""Segment repository — persistence only; counting lives in segments.engine."""
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Segment
from db.repositories.contacts import parse_id
from errors import ConflictError

logger = logging.getLogger(__name__)


async def get(session: AsyncSession, segment_id: Any) -> Optional[Segment]:
    parsed = parse_id(segment_id)
    if parsed is None:
        return None
    return await session.get(Segment, parsed)


async def get_by_name(session: AsyncSession, name: str) -> Optional[Segment]:
    result = await session.execute(select(Segment).where(Segment.name == name))
    return result.scalar_one_or_none()


async def list_all(session: AsyncSession) -> list[Segment]:
    """System segments first, then by name."""
    result = await session.execute(
        select(Segment).order_by(Segment.is_system.desc(), Segment.name)
    )
    return list(result.scalars().all())


async def insert(session: AsyncSession, data: dict) -> Segment:
    """Insert a segment; a duplicate name raises ConflictError.

    data dict keys: name, description, filters, contact_ids, contact_count,
    last_count_update, created_by, is_system, color, icon
    """
    segment = Segment(**{k: v for k, v in data.items() if v is not None})
    try:
        async with session.begin_nested():
            session.add(segment)
            await session.flush()
    except IntegrityError as exc:
        raise ConflictError(f"Segment '{data['name']}' already exists") from exc
    return segment


async def save(session: AsyncSession, segment: Segment) -> Segment:
    try:
        async with session.begin_nested():
            await session.flush()
    except IntegrityError as exc:
        raise ConflictError(f"Segment '{segment.name}' already exists") from exc
    return segment


async def delete(session: AsyncSession, segment: Segment) -> None:
    await session.delete(segment)
    await session.flush()
