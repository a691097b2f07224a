"""Tests for segments.engine — counts, identity lists, system segments, paging."""
import uuid

import pytest

from db.repositories import contacts as contacts_repo
from errors import ConflictError, NotFoundError, ProtectedSegmentError, ValidationError
from segments import engine as segment_engine
from segments.engine import SYSTEM_SEGMENTS, ContactSet, contact_set_for_filters


@pytest.mark.asyncio
async def test_filter_segment_count(session_factory, make_contact):
    await make_contact(source="hubspot", source_id="1", first_name="A", lifecycle_stage="customer")
    await make_contact(source="hubspot", source_id="2", first_name="B")
    await make_contact(source="csv_fair", source_id="3", first_name="C", lifecycle_stage="customer")

    async with session_factory() as session:
        segment = await segment_engine.create_segment(
            session, "HubSpot customers", filters={"source": "hubspot", "lifecycleStage": "customer"}
        )
        await session.commit()
    assert segment.contact_count == 1
    assert segment.last_count_update is not None


@pytest.mark.asyncio
async def test_identity_list_count_is_list_length(session_factory, make_contact):
    """Identity lists count their ids as given, even ids no longer in the store."""
    a = await make_contact(source_id="1", first_name="A")
    b = await make_contact(source_id="2", first_name="B")

    async with session_factory() as session:
        segment = await segment_engine.create_segment(
            session, "Picked", contact_ids=[str(a.id), str(b.id), str(uuid.uuid4()), str(a.id)]
        )
        await session.commit()
    assert segment.contact_ids == [str(a.id), str(b.id), segment.contact_ids[2]]
    assert segment.contact_count == 3
    assert segment.is_identity_list

    async with session_factory() as session:
        page = await segment_engine.get_segment_contacts(session, segment.id, page=1, limit=10)
    assert page.total_records == 3
    assert [c.id for c in page.contacts] == [a.id, b.id]


@pytest.mark.asyncio
async def test_segment_contacts_pagination(session_factory, make_contact):
    for i in range(5):
        await make_contact(source="hubspot", source_id=str(i), first_name=f"C{i}")

    async with session_factory() as session:
        segment = await segment_engine.create_segment(session, "All HubSpot", filters={"source": "hubspot"})
        first = await segment_engine.get_segment_contacts(session, segment.id, page=1, limit=2)
        last = await segment_engine.get_segment_contacts(session, segment.id, page=3, limit=2)
        beyond = await segment_engine.get_segment_contacts(session, segment.id, page=4, limit=2)
        with pytest.raises(ValidationError):
            await segment_engine.get_segment_contacts(session, segment.id, page=0)
    assert first.total_pages == 3
    assert first.total_records == 5
    assert [c.source_id for c in first.contacts] == ["0", "1"]
    assert [c.source_id for c in last.contacts] == ["4"]
    assert beyond.contacts == []


@pytest.mark.asyncio
async def test_system_segments_are_protected(session_factory):
    async with session_factory() as session:
        created = await segment_engine.initialize_system_segments(session)
        await session.commit()
    assert len(created) == len(SYSTEM_SEGMENTS)
    system = created[0]

    async with session_factory() as session:
        with pytest.raises(ProtectedSegmentError):
            await segment_engine.update_segment(session, system.id, {"name": "Renamed"})
        with pytest.raises(ProtectedSegmentError):
            await segment_engine.delete_segment(session, system.id)

    async with session_factory() as session:
        again = await segment_engine.initialize_system_segments(session)
        await session.commit()
    assert {s.id for s in again} == {s.id for s in created}


@pytest.mark.asyncio
async def test_update_switches_definition(session_factory, make_contact):
    contact = await make_contact(source_id="1", first_name="A", company="Acme")
    await make_contact(source_id="2", first_name="B", company="Globex")

    async with session_factory() as session:
        segment = await segment_engine.create_segment(session, "Acme", filters={"company": "acme"})
        updated = await segment_engine.update_segment(
            session, segment.id, {"contact_ids": [str(contact.id)], "color": "#000000"}
        )
        assert updated.is_identity_list
        assert updated.filters == {}
        assert updated.color == "#000000"

        back = await segment_engine.update_segment(session, segment.id, {"filters": {"company": "o"}})
        assert back.contact_ids is None
        assert back.contact_count == 1
        await session.commit()


@pytest.mark.asyncio
async def test_duplicate_and_name_conflicts(session_factory):
    async with session_factory() as session:
        original = await segment_engine.create_segment(session, "Leads", filters={"lifecycleStage": "lead"})
        copy = await segment_engine.duplicate_segment(session, original.id)
        assert copy.name == "Leads (Copy)"
        assert copy.filters == original.filters
        assert copy.id != original.id
        with pytest.raises(ConflictError):
            await segment_engine.duplicate_segment(session, original.id)
        with pytest.raises(ValidationError):
            await segment_engine.create_segment(session, "   ")
        await session.commit()


@pytest.mark.asyncio
async def test_missing_segment(session_factory):
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await segment_engine.get_segment(session, uuid.uuid4())
        with pytest.raises(NotFoundError):
            await segment_engine.get_segment(session, "not-a-uuid")


@pytest.mark.asyncio
async def test_iter_range_slices(session_factory, make_contact):
    for i in range(7):
        await make_contact(source_id=str(i), first_name=f"C{i}")

    contact_set = contact_set_for_filters({})
    async with session_factory() as session:
        everything = [c.source_id async for page in contact_set.iter_range(session, 0, 7, 3) for c in page]
        middle = [c.source_id async for page in contact_set.iter_range(session, 2, 5, 2) for c in page]
    assert everything == [str(i) for i in range(7)]
    assert middle == ["2", "3", "4"]


def test_contact_set_needs_one_definition():
    with pytest.raises(ValueError):
        ContactSet()


def test_filter_templates():
    templates = segment_engine.filter_templates()
    assert templates
    assert all(t.filters for t in templates)


@pytest.mark.asyncio
async def test_id_filter_is_stored_as_identity_list(session_factory, make_contact):
    a = await make_contact(source_id="1", first_name="A")
    b = await make_contact(source_id="2", first_name="B")
    await make_contact(source_id="3", first_name="C")

    async with session_factory() as session:
        picked = await segment_engine.create_segment(
            session, "Picked by id", filters={"_id": {"$in": [str(a.id), str(b.id), str(a.id)]}}
        )
        assert picked.is_identity_list
        assert picked.filters == {}
        assert picked.contact_ids == [str(a.id), str(b.id)]
        assert picked.contact_count == 2

        other = await segment_engine.create_segment(session, "Everyone", filters={})
        narrowed = await segment_engine.update_segment(session, other.id, {"filters": {"id": [str(b.id)]}})
        assert narrowed.contact_ids == [str(b.id)]
        assert narrowed.filters == {}
        assert narrowed.contact_count == 1

        mixed = await segment_engine.create_segment(
            session, "Mixed", filters={"_id": {"$in": [str(a.id)]}, "firstName": "B"}
        )
        assert not mixed.is_identity_list
        assert mixed.contact_count == 0
        await session.commit()


@pytest.mark.asyncio
async def test_search_contacts(session_factory, make_contact):
    await make_contact(source="hubspot", source_id="1", first_name="Jane", email="jane@acme.com", company="Acme")
    await make_contact(source="hubspot", source_id="2", first_name="Sam", company="Globex")
    await make_contact(source="csv_fair", source_id="3", first_name="Ann", email="ann@janeway.io")
    gone = await make_contact(source="manual", source_id="4", first_name="Janet")
    async with session_factory() as session:
        await contacts_repo.soft_delete(session, gone.id)
        await session.commit()

    async with session_factory() as session:
        by_text = await segment_engine.search_contacts(session, query="JANE")
        narrowed = await segment_engine.search_contacts(session, {"source": "hubspot"}, query="jane")
        by_filter = await segment_engine.search_contacts(session, {"company": "globex"})
        paged = await segment_engine.search_contacts(session, page=2, limit=2)
        with pytest.raises(ValidationError):
            await segment_engine.search_contacts(session, page=0)
        with pytest.raises(ValidationError):
            await segment_engine.search_contacts(session, ["source"])

    assert sorted(c.source_id for c in by_text.contacts) == ["1", "3"]
    assert [c.source_id for c in narrowed.contacts] == ["1"]
    assert [c.source_id for c in by_filter.contacts] == ["2"]
    assert paged.total_records == 3
    assert paged.total_pages == 2
    assert [c.source_id for c in paged.contacts] == ["3"]


@pytest.mark.asyncio
async def test_contact_stats(session_factory, make_contact):
    await make_contact(source="hubspot", source_id="1", first_name="A", email="a@acme.com",
                       lifecycle_stage="customer")
    await make_contact(source="hubspot", source_id="2", first_name="B", dnc_status="dnc_internal")
    flagged = await make_contact(source="csv_fair", source_id="3", first_name="C",
                                 dnc_status="dnc_federal")
    gone = await make_contact(source="manual", source_id="4", first_name="D")
    async with session_factory() as session:
        contact = await contacts_repo.get_by_id(session, flagged.id)
        await contacts_repo.append_sync_error(session, contact, "bad row", limit=10)
        await contacts_repo.soft_delete(session, gone.id)
        await session.commit()

    async with session_factory() as session:
        stats = await segment_engine.contact_stats(session)
    assert stats.total == 3
    assert stats.callable_contacts == 2
    assert stats.with_sync_errors == 1
    assert stats.placeholder_emails == 2
    assert stats.by_source == {"csv_fair": 1, "hubspot": 2}
    assert stats.by_lifecycle_stage == {"customer": 1, "lead": 2}
    assert stats.by_dnc_status == {"none": 1, "dnc_federal": 1, "dnc_internal": 1}
