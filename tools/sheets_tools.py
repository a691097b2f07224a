"""Google Sheets tools — read-only access via a service account."""
import logging
import os
import re
from typing import Any, Dict, List, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]
_SPREADSHEET_URL_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


def _service():
    creds_path = os.environ["GOOGLE_APPLICATION_CREDENTIALS"]
    creds = service_account.Credentials.from_service_account_file(
        creds_path, scopes=SCOPES
    )
    return build("sheets", "v4", credentials=creds, cache_discovery=False)


def extract_spreadsheet_id(url_or_id: str) -> str:
    """Accept a full spreadsheet URL or a bare id and return the id."""
    match = _SPREADSHEET_URL_RE.search(url_or_id or "")
    return match.group(1) if match else (url_or_id or "").strip()


def sheets_get_metadata(spreadsheet_id: str) -> Dict[str, Any]:
    """Fetch spreadsheet title and per-sheet grid sizes.

    Returns:
        Dict with 'title' and 'sheets' list of {title, sheet_id, row_count, column_count}.
    """
    result = _service().spreadsheets().get(spreadsheetId=spreadsheet_id).execute()
    return {
        "title": result.get("properties", {}).get("title", ""),
        "sheets": [
            {
                "title": sheet["properties"]["title"],
                "sheet_id": sheet["properties"].get("sheetId"),
                "row_count": sheet["properties"].get("gridProperties", {}).get("rowCount", 0),
                "column_count": sheet["properties"].get("gridProperties", {}).get("columnCount", 0),
            }
            for sheet in result.get("sheets", [])
        ],
    }


def sheets_get_values(spreadsheet_id: str, range_: str) -> List[List[Any]]:
    """Return the value grid for an A1 range (ragged rows, as the API returns them)."""
    result = (
        _service()
        .spreadsheets()
        .values()
        .get(spreadsheetId=spreadsheet_id, range=range_)
        .execute()
    )
    return result.get("values", [])


def sheets_get_all_data(spreadsheet_id: str, sheet_name: Optional[str] = None) -> List[Dict[str, Any]]:
    """Read every sheet (or just `sheet_name`) as {sheet, headers, rows}.

    The first row of each sheet is its header row; empty sheets are skipped.
    """
    metadata = sheets_get_metadata(spreadsheet_id)
    titles = [s["title"] for s in metadata["sheets"]]
    if sheet_name:
        if sheet_name not in titles:
            raise ValueError(f"Sheet '{sheet_name}' not found in spreadsheet {spreadsheet_id}")
        titles = [sheet_name]

    grids = []
    for title in titles:
        values = sheets_get_values(spreadsheet_id, f"'{title}'!A:Z")
        if not values:
            logger.info("Sheet %s is empty, skipping", title)
            continue
        grids.append({"sheet": title, "headers": values[0], "rows": values[1:]})
    return grids


def sheets_test_connection(spreadsheet_id: str) -> Dict[str, Any]:
    """Check the credentials can read the spreadsheet metadata."""
    try:
        metadata = sheets_get_metadata(spreadsheet_id)
        return {"connected": True, "title": metadata["title"]}
    except Exception as exc:
        return {"connected": False, "error": str(exc)}
