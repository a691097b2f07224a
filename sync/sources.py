"""Contact sources — fetch raw records and translate them one at a time.

Fetching is all-or-nothing (a failure raises PipelineError and fails the
job); translation is per record so one bad row never sinks a batch.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, NamedTuple, Optional, Sequence

import requests
from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError

from errors import PipelineError, ValidationError
from sync.field_mapping import RowTransform, build_row_transform, translate_hubspot_contact
from tools import hubspot_tools, sheets_tools

logger = logging.getLogger(__name__)


class RawRecord(NamedTuple):
    source_id: str
    payload: Any
    group: Optional[str] = None


class ContactSource:
    """Base class. `name` is the source tag stored on contacts and jobs."""

    name: str = ""
    supports_incremental: bool = False
    # Pruning soft-deletes every contact of `name` the fetch did not return, so
    # only a source whose full fetch is its whole corpus may allow it
    supports_pruning: bool = False

    def config(self) -> dict:
        """JSON-safe description stored on the job row."""
        return {}

    async def fetch(self, since: Optional[datetime] = None) -> list[RawRecord]:
        raise NotImplementedError

    def translate(self, record: RawRecord) -> Optional[dict]:
        raise NotImplementedError

    def batch_segment(self) -> Optional[dict]:
        """Segment to create after a successful run: {name, description, filters}."""
        return None


# ---------------------------------------------------------------------------
# HubSpot
# ---------------------------------------------------------------------------


class HubSpotSource(ContactSource):
    name = "hubspot"
    supports_incremental = True

    def __init__(self, list_id: Optional[str] = None, list_name: Optional[str] = None):
        self.list_id = str(list_id) if list_id else None
        self.list_name = list_name

    @property
    def supports_pruning(self) -> bool:
        return not self.list_id

    def config(self) -> dict:
        return {"list_id": self.list_id, "list_name": self.list_name} if self.list_id else {}

    async def fetch(self, since: Optional[datetime] = None) -> list[RawRecord]:
        try:
            if self.list_id:
                records = await asyncio.to_thread(hubspot_tools.hubspot_get_list_contacts, self.list_id)
            elif since is not None:
                records = await asyncio.to_thread(hubspot_tools.hubspot_get_contacts_since, since)
            else:
                records = await asyncio.to_thread(hubspot_tools.hubspot_get_all_contacts)
        except (requests.RequestException, KeyError) as exc:
            raise PipelineError(f"HubSpot fetch failed: {exc}") from exc
        return [RawRecord(str(r.get("id")), r) for r in records]

    def translate(self, record: RawRecord) -> Optional[dict]:
        data = translate_hubspot_contact(record.payload)
        if data is not None and self.list_id:
            data["custom_fields"]["hubspotListId"] = self.list_id
        return data

    def batch_segment(self) -> Optional[dict]:
        if not self.list_id:
            return None
        label = self.list_name or self.list_id
        return {
            "name": f"HubSpot List: {label}",
            "description": f"Contacts synced from HubSpot list {label}",
            "filters": {"source": "hubspot", "customFields.hubspotListId": self.list_id},
        }


# ---------------------------------------------------------------------------
# Google Sheets
# ---------------------------------------------------------------------------


class SheetsSource(ContactSource):
    """Reads every sheet (or one named sheet). Sheets has no change feed, so
    incremental runs read everything."""

    name = "google_sheets"

    def __init__(
        self,
        spreadsheet_id: str,
        sheet_name: Optional[str] = None,
        mapping: Optional[Mapping[str, Optional[str]]] = None,
    ):
        spreadsheet_id = sheets_tools.extract_spreadsheet_id(spreadsheet_id or "")
        if not spreadsheet_id:
            raise ValidationError("spreadsheet_id is required for google_sheets syncs")
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self.mapping = mapping
        self._transforms: dict[str, RowTransform] = {}

    def config(self) -> dict:
        return {"spreadsheet_id": self.spreadsheet_id, "sheet_name": self.sheet_name}

    async def fetch(self, since: Optional[datetime] = None) -> list[RawRecord]:
        try:
            grids = await asyncio.to_thread(
                sheets_tools.sheets_get_all_data, self.spreadsheet_id, self.sheet_name
            )
        except (HttpError, GoogleAuthError, KeyError, OSError, ValueError) as exc:
            raise PipelineError(f"Google Sheets fetch failed: {exc}") from exc

        records = []
        for grid in grids:
            sheet = grid["sheet"]
            self._transforms[sheet] = build_row_transform(
                grid["headers"], self.mapping, source=self.name
            )
            for index, row in enumerate(grid["rows"]):
                # +2: one for the header row, one for 1-based sheet rows
                records.append(RawRecord(f"{self.spreadsheet_id}:{sheet}:{index + 2}", row, sheet))
        return records

    def translate(self, record: RawRecord) -> Optional[dict]:
        data = self._transforms[record.group](record.payload, record.source_id)
        if data is not None:
            data["custom_fields"].update(
                {"spreadsheetId": self.spreadsheet_id, "sheetName": record.group}
            )
        return data


# ---------------------------------------------------------------------------
# Uploaded files
# ---------------------------------------------------------------------------


def upload_source_name(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", (name or "").lower()).strip("_")
    return f"csv_{slug or 'upload'}"


class UploadSource(ContactSource):
    """An already-parsed upload: {headers, rows}. Every upload is its own batch."""

    def __init__(
        self,
        headers: Sequence[Any],
        rows: Sequence[Sequence[Any]],
        upload_name: str,
        mapping: Optional[Mapping[str, Optional[str]]] = None,
    ):
        if not headers:
            raise ValidationError("Upload has no header row")
        self.name = upload_source_name(upload_name)
        self.upload_name = upload_name
        self.rows = rows
        self.batch = f"{self.name}_{datetime.now(timezone.utc):%Y%m%d%H%M%S%f}"
        self._transform = build_row_transform(headers, mapping, source=self.name)

    def config(self) -> dict:
        return {"upload_name": self.upload_name, "upload_batch": self.batch, "rows": len(self.rows)}

    async def fetch(self, since: Optional[datetime] = None) -> list[RawRecord]:
        return [RawRecord(f"{self.batch}:{i + 1}", row) for i, row in enumerate(self.rows)]

    def translate(self, record: RawRecord) -> Optional[dict]:
        data = self._transform(record.payload, record.source_id)
        if data is not None:
            data["custom_fields"].update(
                {"uploadBatch": self.batch, "uploadName": self.upload_name}
            )
        return data

    def batch_segment(self) -> Optional[dict]:
        return {
            "name": f"{self.upload_name} ({datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S})",
            "description": f"Contacts imported from upload {self.upload_name}",
            "filters": {"customFields.uploadBatch": self.batch},
        }


# ---------------------------------------------------------------------------
# Connection checks and catalogues
# ---------------------------------------------------------------------------


async def check_connection(source: str, spreadsheet_id: Optional[str] = None) -> dict:
    """{connected, error?} for hubspot, {connected, title | error} for google_sheets."""
    source = source.replace("-", "_")
    if source == HubSpotSource.name:
        return await asyncio.to_thread(hubspot_tools.hubspot_test_connection)
    if source == SheetsSource.name:
        spreadsheet_id = sheets_tools.extract_spreadsheet_id(spreadsheet_id or "")
        if not spreadsheet_id:
            raise ValidationError("spreadsheet_id is required to check a Google Sheets connection")
        return await asyncio.to_thread(sheets_tools.sheets_test_connection, spreadsheet_id)
    raise ValidationError(f"Unknown source '{source}'. Expected hubspot or google_sheets")


async def hubspot_lists() -> list[dict]:
    try:
        return await asyncio.to_thread(hubspot_tools.hubspot_get_lists)
    except (requests.RequestException, KeyError) as exc:
        raise PipelineError(f"HubSpot list lookup failed: {exc}") from exc


async def spreadsheet_info(spreadsheet_id: str) -> dict:
    """Title and sheet sizes, for picking a sheet_name before a sync."""
    spreadsheet_id = sheets_tools.extract_spreadsheet_id(spreadsheet_id or "")
    if not spreadsheet_id:
        raise ValidationError("spreadsheet_id is required")
    try:
        metadata = await asyncio.to_thread(sheets_tools.sheets_get_metadata, spreadsheet_id)
    except (HttpError, GoogleAuthError, KeyError, OSError) as exc:
        raise PipelineError(f"Google Sheets lookup failed: {exc}") from exc
    return {"spreadsheet_id": spreadsheet_id, **metadata}
