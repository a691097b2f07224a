"""HTTP-level tests for api.create_app, driven through httpx's ASGI transport."""
import asyncio
import csv
import io
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
import requests

from api import create_app
from sync.field_mapping import translate_hubspot_contact
from sync.orchestrator import SyncOrchestrator
from sync.sources import ContactSource, RawRecord


class GatedCrmSource(ContactSource):
    name = "hubspot"
    supports_incremental = True

    def __init__(self):
        self.gate = asyncio.Event()
        self.gate.set()

    async def fetch(self, since=None):
        await self.gate.wait()
        return [RawRecord("1", {"id": "1", "properties": {"firstname": "Ana", "email": "ana@acme.com"}})]

    def translate(self, record):
        return translate_hubspot_contact(record.payload)


@pytest.fixture
def crm_source():
    return GatedCrmSource()


@pytest_asyncio.fixture
async def app(session_factory, crm_source):
    orchestrator = SyncOrchestrator(session_factory, source_factories={"hubspot": lambda config: crm_source})
    app = create_app(session_factory=session_factory, orchestrator=orchestrator)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_system_segments_exist_after_startup(client):
    resp = await client.get("/segments")
    assert resp.status_code == 200
    segments = resp.json()
    assert any(s["name"] == "All Contacts" and s["isSystem"] for s in segments)

    system_id = segments[0]["id"]
    resp = await client.put(f"/segments/{system_id}", json={"name": "Mine now"})
    assert resp.status_code == 403
    assert resp.json()["success"] is False
    resp = await client.delete(f"/segments/{system_id}")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_segment_crud(client):
    resp = await client.post("/segments", json={"name": "VIPs", "filters": {"tags": "vip"}})
    assert resp.status_code == 201
    segment = resp.json()
    assert segment["contactCount"] == 0

    resp = await client.post("/segments", json={"name": "VIPs", "filters": {}})
    assert resp.status_code == 409

    resp = await client.put(f"/segments/{segment['id']}", json={"description": "Top accounts"})
    assert resp.status_code == 200
    assert resp.json()["description"] == "Top accounts"

    resp = await client.post(f"/segments/{segment['id']}/duplicate", json={"name": "VIPs 2"})
    assert resp.status_code == 201
    assert resp.json()["filters"] == {"tags": "vip"}

    resp = await client.delete(f"/segments/{segment['id']}")
    assert resp.status_code == 200
    resp = await client.get(f"/segments/{segment['id']}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_blank_segment_name_is_rejected(client):
    resp = await client.post("/segments", json={"name": "   "})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_templates(client):
    resp = await client.get("/segments/templates")
    assert resp.status_code == 200
    assert all("filters" in t for t in resp.json())


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_manual_contact_lifecycle(client):
    resp = await client.post("/contacts", json={"company": "Acme", "tags": ["vip"]})
    assert resp.status_code == 201
    contact = resp.json()
    assert contact["source"] == "manual"
    assert contact["emailIsPlaceholder"] is True

    resp = await client.get(f"/contacts/{contact['id']}")
    assert resp.status_code == 200

    resp = await client.delete(f"/contacts/{contact['id']}")
    assert resp.json()["status"] == "deleted"

    resp = await client.post("/contacts", json={"phone": "555-0100"})
    assert resp.status_code == 400
    resp = await client.get("/contacts/not-a-uuid")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_and_job_status(app, client):
    resp = await client.post("/sync/hubspot", json={"type": "full"})
    assert resp.status_code == 202
    job_id = resp.json()["jobId"]
    await app.state.orchestrator.wait(job_id)

    resp = await client.get(f"/sync/jobs/{job_id}")
    job = resp.json()
    assert job["status"] == "completed"
    assert job["processedRecords"] == 1
    assert job["progress"] == 100

    resp = await client.get("/sync/jobs", params={"source": "hubspot"})
    assert resp.json()["total"] == 1
    resp = await client.get("/sync/last/hubspot")
    assert resp.json()["inProgress"] is False


@pytest.mark.asyncio
async def test_busy_source_is_a_conflict(app, client, crm_source):
    crm_source.gate.clear()
    first = await client.post("/sync/hubspot")
    assert first.status_code == 202

    second = await client.post("/sync/hubspot", json={"type": "incremental"})
    assert second.status_code == 409
    assert "already in progress" in second.json()["error"]

    crm_source.gate.set()
    await app.state.orchestrator.wait(first.json()["jobId"])


@pytest.mark.asyncio
async def test_unknown_source_is_rejected(client):
    resp = await client.post("/sync/salesforce")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_upload_then_export(app, client):
    resp = await client.post("/sync/upload", json={
        "name": "Expo",
        "headers": ["First Name", "Email", "Company"],
        "rows": [["Jane", "jane@acme.com", "Acme"], ["Sam", "", "Globex"]],
    })
    assert resp.status_code == 202
    assert resp.json()["source"] == "csv_expo"
    await app.state.orchestrator.wait(resp.json()["jobId"])

    segments = (await client.get("/segments")).json()
    uploads = next(s for s in segments if s["name"] == "File Uploads")
    assert uploads["contactCount"] == 2

    resp = await client.get(f"/segments/{uploads['id']}/contacts", params={"page": 1, "limit": 1})
    assert resp.json()["totalPages"] == 2

    resp = await client.get(f"/segments/{uploads['id']}/export", params={"format": "csv"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(io.StringIO(resp.text)))
    assert len(rows) == 3
    assert rows[2][2] == ""  # placeholder email exported blank

    run_id = resp.headers["x-export-id"]
    progress = (await client.get(f"/export/progress/{run_id}")).json()
    assert progress["status"] == "completed"
    assert progress["processed"] == 2

    resp = await client.post("/export", json={"filters": {"company": "globex"}, "format": "tsv"})
    assert resp.status_code == 200
    assert resp.text.count("\n") == 2

    resp = await client.get("/export/progress/export_missing")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Contact listing, search and stats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_contact_listing_and_search(client, make_contact):
    await make_contact(source="hubspot", source_id="1", first_name="Jane", email="jane@acme.com",
                       lifecycle_stage="customer", tags=["vip"])
    await make_contact(source="hubspot", source_id="2", first_name="Sam", company="Globex")
    await make_contact(source="csv_fair", source_id="3", first_name="Ann", dnc_status="dnc_internal")

    resp = await client.get("/contacts", params={"page": 1, "limit": 2})
    assert resp.status_code == 200
    body = resp.json()
    assert body["totalRecords"] == 3
    assert body["totalPages"] == 2
    assert len(body["contacts"]) == 2

    resp = await client.get("/contacts", params={"source": "hubspot", "search": "sam"})
    assert [c["sourceId"] for c in resp.json()["contacts"]] == ["2"]
    resp = await client.get("/contacts", params={"lifecycleStage": "customer", "tag": "vip"})
    assert [c["sourceId"] for c in resp.json()["contacts"]] == ["1"]
    resp = await client.get("/contacts", params={"dncStatus": "callable"})
    assert resp.json()["totalRecords"] == 2

    resp = await client.post("/contacts/search", json={"filters": {"company": "globex"}})
    assert [c["firstName"] for c in resp.json()["contacts"]] == ["Sam"]
    resp = await client.post("/contacts/search", json={"query": "ann", "limit": 10})
    assert resp.json()["totalRecords"] == 1
    resp = await client.post("/contacts/search", json={"filters": {}, "page": 0})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_contact_stats(client, make_contact):
    await make_contact(source="hubspot", source_id="1", first_name="Jane", email="jane@acme.com")
    await make_contact(source="google_sheets", source_id="2", first_name="Sam", dnc_status="dnc_internal")

    resp = await client.get("/contacts/stats")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total"] == 2
    assert stats["callableContacts"] == 1
    assert stats["placeholderEmails"] == 1
    assert stats["bySource"] == {"google_sheets": 1, "hubspot": 1}
    assert stats["byLifecycleStage"] == {"lead": 2}
    assert stats["byDncStatus"] == {"dnc_internal": 1, "none": 1}


# ---------------------------------------------------------------------------
# Connection checks and source catalogues
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hubspot_connection_check(client):
    with patch("tools.hubspot_tools.hubspot_test_connection", return_value={"connected": True}):
        resp = await client.post("/sync/test/hubspot")
    assert resp.status_code == 200
    assert resp.json() == {"connected": True}

    failed = {"connected": False, "error": "401 Client Error"}
    with patch("tools.hubspot_tools.hubspot_test_connection", return_value=failed):
        resp = await client.post("/sync/test/hubspot")
    assert resp.status_code == 200
    assert resp.json()["connected"] is False


@pytest.mark.asyncio
async def test_sheets_connection_check(client):
    url = "https://docs.google.com/spreadsheets/d/abc123/edit#gid=0"
    with patch(
        "tools.sheets_tools.sheets_test_connection",
        return_value={"connected": True, "title": "Leads"},
    ) as check:
        resp = await client.post("/sync/test/google-sheets", json={"spreadsheetId": url})
    assert resp.json() == {"connected": True, "title": "Leads"}
    check.assert_called_once_with("abc123")

    resp = await client.post("/sync/test/google-sheets")
    assert resp.status_code == 400
    resp = await client.post("/sync/test/salesforce")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_hubspot_lists(client):
    lists = [{"id": "7", "name": "Webinar", "size": 120, "dynamic": False}]
    with patch("tools.hubspot_tools.hubspot_get_lists", return_value=lists):
        resp = await client.get("/sync/hubspot/lists")
    assert resp.status_code == 200
    assert resp.json() == lists

    with patch("tools.hubspot_tools.hubspot_get_lists", side_effect=requests.HTTPError("503")):
        resp = await client.get("/sync/hubspot/lists")
    assert resp.status_code == 502
    assert "HubSpot list lookup failed" in resp.json()["error"]


@pytest.mark.asyncio
async def test_spreadsheet_info(client):
    metadata = {
        "title": "Leads",
        "sheets": [{"title": "Sheet1", "sheet_id": 0, "row_count": 1000, "column_count": 26}],
    }
    with patch("tools.sheets_tools.sheets_get_metadata", return_value=metadata):
        resp = await client.get("/sync/google-sheets/abc123/info")
    assert resp.status_code == 200
    body = resp.json()
    assert body["spreadsheetId"] == "abc123"
    assert body["sheets"] == [{"title": "Sheet1", "sheetId": 0, "rowCount": 1000, "columnCount": 26}]

    with patch("tools.sheets_tools.sheets_get_metadata", side_effect=KeyError("GOOGLE_APPLICATION_CREDENTIALS")):
        resp = await client.get("/sync/google-sheets/abc123/info")
    assert resp.status_code == 502
