"""GoogleSheetsService テスト"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from integrations.services.provider_client import ProviderClient
from integrations.services.sheets import GoogleSheetsService, LeadRow, SheetsConfig, row_to_lead


@pytest.fixture
def sheets_api() -> dict:
    """リクエストの記録と返すデータ"""
    return {"requests": [], "values": [], "files": [], "broken": set()}


@pytest.fixture
def service(sheets_api, mock_http) -> GoogleSheetsService:
    def handler(request: httpx.Request) -> httpx.Response:
        sheets_api["requests"].append(request)
        path = request.url.path

        if path == "/drive/v3/files":
            return httpx.Response(200, json={"files": sheets_api["files"]})
        if "/values/" in path and request.method == "GET":
            return httpx.Response(200, json={"values": sheets_api["values"]})
        if "/values/" in path and request.method == "PUT":
            body = json.loads(request.content)
            return httpx.Response(200, json={"updatedRows": len(body["values"])})
        spreadsheet_id = path.rsplit("/", 1)[-1]
        if spreadsheet_id in sheets_api["broken"]:
            return httpx.Response(403, json={"error": {"message": "forbidden"}})
        return httpx.Response(
            200,
            json={"sheets": [{"properties": {"title": "Leads", "sheetId": 0, "gridProperties": {"rowCount": 100, "columnCount": 6}}}]},
        )

    token_manager = AsyncMock()
    token_manager.ensure_valid_access_token.return_value = "token"
    return GoogleSheetsService(ProviderClient(token_manager, mock_http(handler)))


# =============================================================================
# Row mapping
# =============================================================================


class TestRowToLead:
    def test_defaults(self):
        lead = row_to_lead(["Ana", "ana@example.com"])

        assert lead == LeadRow(name="Ana", email="ana@example.com", status="novo", source="google_sheets")

    def test_all_columns(self):
        lead = row_to_lead(["Ana", "ana@example.com", "119999", "contato", "site", "ligar"])

        assert lead.to_values() == ["Ana", "ana@example.com", "119999", "contato", "site", "ligar"]

    def test_row_without_identity_is_skipped(self):
        assert row_to_lead(["", "", "", "novo"]) is None


# =============================================================================
# Import / Export
# =============================================================================


@pytest.mark.asyncio
async def test_import_reads_configured_range(service, sheets_api):
    sheets_api["values"] = [
        ["Ana", "ana@example.com"],
        [],
        ["", "", "", "novo"],
        ["Bruno", "", "11988887777", "", "", "retornar"],
    ]

    result = await service.import_leads("u1", SheetsConfig(spreadsheet_id="sheet-1"))

    assert [lead.name for lead in result.leads] == ["Ana", "Bruno"]
    assert result.leads[1].status == "novo"
    assert result.skipped == 2
    assert result.errors == []
    path = sheets_api["requests"][0].url.path
    assert path == "/v4/spreadsheets/sheet-1/values/Leads!A2:Z1000"


@pytest.mark.asyncio
async def test_import_requires_spreadsheet_id(service):
    with pytest.raises(ValueError):
        await service.import_leads("u1", SheetsConfig(spreadsheet_id=""))


@pytest.mark.asyncio
async def test_export_writes_raw_rows(service, sheets_api):
    leads = [LeadRow(name="Ana", email="ana@example.com"), LeadRow(name="Bruno", phone="1198")]

    exported = await service.export_leads("u1", SheetsConfig(spreadsheet_id="sheet-1", data_start_row=5), leads)

    request = sheets_api["requests"][0]
    assert exported == 2
    assert request.method == "PUT"
    assert request.url.params["valueInputOption"] == "RAW"
    assert request.url.path == "/v4/spreadsheets/sheet-1/values/Leads!A5:F6"
    assert json.loads(request.content)["values"][1] == ["Bruno", "", "1198", "novo", "google_sheets", ""]


@pytest.mark.asyncio
async def test_export_nothing(service, sheets_api):
    assert await service.export_leads("u1", SheetsConfig(spreadsheet_id="sheet-1"), []) == 0
    assert sheets_api["requests"] == []


@pytest.mark.asyncio
async def test_list_spreadsheets_skips_failures(service, sheets_api):
    sheets_api["files"] = [
        {"id": "s1", "name": "Leads 2030", "webViewLink": "https://docs.example/s1"},
        {"id": "s2", "name": "Privada"},
    ]
    sheets_api["broken"].add("s2")

    spreadsheets = await service.list_spreadsheets("u1")

    assert [sheet["id"] for sheet in spreadsheets] == ["s1"]
    assert spreadsheets[0]["worksheets"] == [{"name": "Leads", "id": 0, "rowCount": 100, "columnCount": 6}]
    drive_request = sheets_api["requests"][0]
    assert "application/vnd.google-apps.spreadsheet" in drive_request.url.params["q"]
