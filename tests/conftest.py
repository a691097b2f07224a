"""Shared fixtures: a throwaway SQLite database per test."""
import uuid

import pytest
import pytest_asyncio

from db.connection import create_engine_for, make_session_factory
from db.models import Base
from db.repositories import contacts as contacts_repo
from sync.field_mapping import finalize


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'audience.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def make_contact(session_factory):
    """Insert a contact through the upsert path; returns the stored Contact."""

    async def _make(source: str = "manual", source_id: str = None, **fields):
        record = {"address": {}, "custom_fields": {}, "tags": [], **fields}
        data = finalize(record, source, source_id or uuid.uuid4().hex)
        async with session_factory() as session:
            contact, _ = await contacts_repo.upsert(session, data)
            await session.commit()
        return contact

    return _make
