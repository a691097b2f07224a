"""Integration tests for core repository methods."""
import uuid

import pytest
from sqlalchemy import true

from db.models import SyncJob
from db.repositories import contacts as contacts_repo
from db.repositories import segments as segments_repo
from db.repositories import sync_jobs as sync_jobs_repo
from errors import ConflictError, SyncInProgressError
from sync.field_mapping import finalize


def _record(source: str, source_id: str, **fields) -> dict:
    return finalize({"address": {}, "custom_fields": {}, "tags": [], **fields}, source, source_id)


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_contact_upsert_is_idempotent(session_factory):
    """Upserting the same source record twice updates, never duplicates."""
    async with session_factory() as session:
        first, created = await contacts_repo.upsert(
            session, _record("hubspot", "42", first_name="Jane", email="jane@acme.com")
        )
        second, created_again = await contacts_repo.upsert(
            session, _record("hubspot", "42", first_name="Janet", email="jane@acme.com")
        )
        await session.commit()
    assert created is True
    assert created_again is False
    assert first.id == second.id, "Upsert on the same source record must return the same contact"
    assert second.first_name == "Janet"


@pytest.mark.asyncio
async def test_email_match_within_source_only(session_factory):
    """A new source_id with a known email merges within a source, not across sources."""
    async with session_factory() as session:
        original, _ = await contacts_repo.upsert(
            session, _record("csv_fair", "b1:1", email="sam@acme.com", tags=["a"])
        )
        merged, created = await contacts_repo.upsert(
            session, _record("csv_fair", "b2:1", email="sam@acme.com", tags=["b"])
        )
        other, other_created = await contacts_repo.upsert(
            session, _record("hubspot", "7", email="sam@acme.com")
        )
        await session.commit()
    assert created is False
    assert merged.id == original.id
    assert merged.tags == ["a", "b"]
    assert other_created is True
    assert other.id != original.id


@pytest.mark.asyncio
async def test_placeholder_never_replaces_real_email(session_factory):
    async with session_factory() as session:
        contact, _ = await contacts_repo.upsert(
            session, _record("hubspot", "9", email="real@acme.com", company="Acme")
        )
        await contacts_repo.upsert(session, _record("hubspot", "9", company="Acme Corp"))
        await session.commit()
    assert contact.email == "real@acme.com"
    assert contact.email_is_placeholder is False
    assert contact.company == "Acme Corp"


@pytest.mark.asyncio
async def test_placeholder_emails_do_not_match_each_other(session_factory):
    async with session_factory() as session:
        a, _ = await contacts_repo.upsert(session, _record("csv_x", "1", company="A"))
        b, created = await contacts_repo.upsert(session, _record("csv_x", "2", company="B"))
        await session.commit()
    assert created is True
    assert a.id != b.id
    assert a.email != b.email


@pytest.mark.asyncio
async def test_sync_errors_are_bounded(session_factory):
    async with session_factory() as session:
        contact, _ = await contacts_repo.upsert(session, _record("hubspot", "1", first_name="A"))
        for i in range(15):
            await contacts_repo.append_sync_error(session, contact, f"error {i}", limit=10)
        await session.commit()
    assert len(contact.sync_errors) == 10
    assert contact.sync_errors[-1]["error"] == "error 14"


@pytest.mark.asyncio
async def test_soft_delete_missing(session_factory):
    async with session_factory() as session:
        for source_id in ("1", "2", "3"):
            await contacts_repo.upsert(session, _record("hubspot", source_id, first_name=source_id))
        deleted = await contacts_repo.soft_delete_missing(session, "hubspot", ["1", "3"])
        await session.commit()
    async with session_factory() as session:
        gone = await contacts_repo.get_by_source_record(session, "hubspot", "2")
        kept = await contacts_repo.get_by_source_record(session, "hubspot", "1")
    assert deleted == 1
    assert gone.status == "deleted"
    assert kept.status == "active"


@pytest.mark.asyncio
async def test_keyset_pages_cover_everything_once(session_factory):
    async with session_factory() as session:
        for i in range(7):
            await contacts_repo.upsert(session, _record("manual", str(i), first_name=f"C{i}"))
        await session.commit()

    seen = []
    async with session_factory() as session:
        page = await contacts_repo.page_where(session, true(), 0, 3)
        while page:
            seen.extend(c.source_id for c in page)
            last = page[-1]
            page = await contacts_repo.keyset_page(session, true(), (last.created_at, last.id), 3)
    assert sorted(seen) == [str(i) for i in range(7)]
    assert len(seen) == len(set(seen))


@pytest.mark.asyncio
async def test_get_many_keeps_order_and_drops_unknown(session_factory):
    async with session_factory() as session:
        a, _ = await contacts_repo.upsert(session, _record("manual", "a", first_name="A"))
        b, _ = await contacts_repo.upsert(session, _record("manual", "b", first_name="B"))
        await session.commit()
    async with session_factory() as session:
        found = await contacts_repo.get_many(session, [str(b.id), "nope", str(uuid.uuid4()), str(a.id)])
    assert [c.source_id for c in found] == ["b", "a"]


# ---------------------------------------------------------------------------
# Sync jobs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_one_active_job_per_source(session_factory):
    """A second claim on a busy source raises and writes no row."""
    async with session_factory() as session:
        job = await sync_jobs_repo.create_if_absent(session, "hubspot", "full")
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(SyncInProgressError):
            await sync_jobs_repo.create_if_absent(session, "hubspot", "incremental")
        other = await sync_jobs_repo.create_if_absent(session, "google_sheets", "full")
        await session.commit()

    async with session_factory() as session:
        jobs, total = await sync_jobs_repo.list_jobs(session, source="hubspot")
    assert total == 1
    assert jobs[0].id == job.id
    assert other.source == "google_sheets"


@pytest.mark.asyncio
async def test_finished_job_frees_the_source(session_factory):
    async with session_factory() as session:
        job = await sync_jobs_repo.create_if_absent(session, "hubspot", "full")
        assert await sync_jobs_repo.mark_running(session, job.id)
        assert await sync_jobs_repo.finish(session, job.id, "completed", {"processed_records": 3})
        await session.commit()

    async with session_factory() as session:
        again = await sync_jobs_repo.create_if_absent(session, "hubspot", "incremental")
        last = await sync_jobs_repo.last_completed(session, "hubspot")
        await session.commit()
    assert last.id == job.id
    assert last.processed_records == 3
    assert again.id != job.id


@pytest.mark.asyncio
async def test_transitions_are_forward_only(session_factory):
    async with session_factory() as session:
        job = await sync_jobs_repo.create_if_absent(session, "hubspot", "full")
        await sync_jobs_repo.mark_running(session, job.id)
        assert await sync_jobs_repo.finish(session, job.id, "failed")
        assert not await sync_jobs_repo.save_progress(session, job.id, {"processed_records": 5})
        assert not await sync_jobs_repo.finish(session, job.id, "completed")
        assert not await sync_jobs_repo.mark_running(session, job.id)
        await session.commit()
    async with session_factory() as session:
        stored = await session.get(SyncJob, job.id)
    assert stored.status == "failed"
    assert stored.processed_records == 0


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_segment_names_are_unique(session_factory):
    async with session_factory() as session:
        await segments_repo.insert(session, {"name": "VIPs", "filters": {"tags": "vip"}})
        with pytest.raises(ConflictError):
            await segments_repo.insert(session, {"name": "VIPs", "filters": {}})
        await session.commit()
    async with session_factory() as session:
        assert len(await segments_repo.list_all(session)) == 1
