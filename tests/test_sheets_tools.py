"""Unit tests for sheets_tools and the Sheets/HubSpot contact sources."""
from unittest.mock import patch

import pytest
import requests

from errors import PipelineError, ValidationError
from sync.sources import HubSpotSource, SheetsSource, UploadSource, upload_source_name


SHEETS_MODULE = "tools.sheets_tools"


class TestExtractSpreadsheetId:
    def test_accepts_url_or_id(self):
        from tools.sheets_tools import extract_spreadsheet_id
        url = "https://docs.google.com/spreadsheets/d/1AbC-xyz_9/edit#gid=0"
        assert extract_spreadsheet_id(url) == "1AbC-xyz_9"
        assert extract_spreadsheet_id(" 1AbC ") == "1AbC"


class TestSheetsGetAllData:
    @patch(f"{SHEETS_MODULE}.sheets_get_values")
    @patch(f"{SHEETS_MODULE}.sheets_get_metadata")
    def test_reads_each_sheet_and_skips_empty(self, mock_meta, mock_values):
        mock_meta.return_value = {"title": "Leads", "sheets": [{"title": "Expo"}, {"title": "Blank"}]}
        mock_values.side_effect = [[["Email"], ["a@b.co"]], []]

        from tools.sheets_tools import sheets_get_all_data
        grids = sheets_get_all_data("sheet-1")

        assert grids == [{"sheet": "Expo", "headers": ["Email"], "rows": [["a@b.co"]]}]
        assert mock_values.call_args_list[0].args == ("sheet-1", "'Expo'!A:Z")

    @patch(f"{SHEETS_MODULE}.sheets_get_values")
    @patch(f"{SHEETS_MODULE}.sheets_get_metadata")
    def test_single_sheet(self, mock_meta, mock_values):
        mock_meta.return_value = {"title": "Leads", "sheets": [{"title": "Expo"}, {"title": "Other"}]}
        mock_values.return_value = [["Email"]]

        from tools.sheets_tools import sheets_get_all_data
        grids = sheets_get_all_data("sheet-1", "Other")

        assert [g["sheet"] for g in grids] == ["Other"]
        assert grids[0]["rows"] == []

    @patch(f"{SHEETS_MODULE}.sheets_get_values")
    @patch(f"{SHEETS_MODULE}.sheets_get_metadata")
    def test_unknown_sheet_is_an_error(self, mock_meta, mock_values):
        mock_meta.return_value = {"title": "Leads", "sheets": [{"title": "Expo"}]}

        from tools.sheets_tools import sheets_get_all_data
        with pytest.raises(ValueError, match="Sheet 'Typo' not found"):
            sheets_get_all_data("sheet-1", "Typo")
        mock_values.assert_not_called()


class TestSheetsSource:
    def test_requires_spreadsheet_id(self):
        with pytest.raises(ValidationError):
            SheetsSource("")

    @pytest.mark.asyncio
    @patch(f"{SHEETS_MODULE}.sheets_get_all_data")
    async def test_rows_become_records(self, mock_all):
        mock_all.return_value = [
            {"sheet": "Expo", "headers": ["Name", "Email"], "rows": [["Ana", "ana@x.io"], ["", ""]]},
        ]
        source = SheetsSource("sheet-1", mapping={"Name": "firstName"})
        records = await source.fetch()

        assert [r.source_id for r in records] == ["sheet-1:Expo:2", "sheet-1:Expo:3"]
        data = source.translate(records[0])
        assert data["first_name"] == "Ana"
        assert data["source"] == "google_sheets"
        assert data["custom_fields"]["sheetName"] == "Expo"
        assert source.translate(records[1]) is None

    @pytest.mark.asyncio
    @patch(f"{SHEETS_MODULE}.sheets_get_all_data")
    async def test_missing_credentials_is_a_pipeline_error(self, mock_all):
        mock_all.side_effect = KeyError("GOOGLE_APPLICATION_CREDENTIALS")
        with pytest.raises(PipelineError):
            await SheetsSource("sheet-1").fetch()

    @pytest.mark.asyncio
    @patch(f"{SHEETS_MODULE}.sheets_get_metadata")
    async def test_unknown_sheet_fails_the_fetch(self, mock_meta):
        mock_meta.return_value = {"title": "Leads", "sheets": [{"title": "Expo"}]}
        with pytest.raises(PipelineError, match="not found"):
            await SheetsSource("sheet-1", "Typo").fetch()


class TestHubSpotSource:
    @pytest.mark.asyncio
    @patch("tools.hubspot_tools.hubspot_get_all_contacts")
    async def test_http_failure_is_a_pipeline_error(self, mock_all):
        mock_all.side_effect = requests.HTTPError("503")
        with pytest.raises(PipelineError):
            await HubSpotSource().fetch()

    @pytest.mark.asyncio
    @patch("tools.hubspot_tools.hubspot_get_list_contacts")
    async def test_list_sync_tags_contacts_and_names_segment(self, mock_list):
        mock_list.return_value = [{"id": "11", "properties": {"firstname": "Ana"}}]
        source = HubSpotSource(list_id="99", list_name="Expo 2026")
        [record] = await source.fetch()

        data = source.translate(record)
        assert data["custom_fields"]["hubspotListId"] == "99"
        segment = source.batch_segment()
        assert segment["name"] == "HubSpot List: Expo 2026"
        assert segment["filters"] == {"source": "hubspot", "customFields.hubspotListId": "99"}


class TestUploadSource:
    def test_source_name(self):
        assert upload_source_name("Trade Show 2026!") == "csv_trade_show_2026"
        assert upload_source_name("") == "csv_upload"

    def test_requires_headers(self):
        with pytest.raises(ValidationError):
            UploadSource([], [], "empty")
