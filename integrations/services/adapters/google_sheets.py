"""Google Sheets / Drive アダプター

Sheets API v4 の値の読み書きと、Drive API v3 によるスプレッドシート一覧を扱う。
"""

from typing import Any, Optional, TypedDict
from urllib.parse import quote

from integrations.services.models import Provider
from integrations.services.provider_client import ProviderClient, ProviderRequest
from integrations.services.providers import DRIVE_API_BASE

SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"
DRIVE_PAGE_SIZE = 50


# =============================================================================
# Types
# =============================================================================


class DriveFile(TypedDict, total=False):
    id: str
    name: str
    webViewLink: str


class GridProperties(TypedDict, total=False):
    rowCount: int
    columnCount: int


class SheetProperties(TypedDict, total=False):
    """Sheets API SheetProperties 型"""
    sheetId: int
    title: str
    gridProperties: GridProperties


class ValueRange(TypedDict, total=False):
    range: str
    majorDimension: str
    values: list[list[Any]]


# =============================================================================
# API Calls
# =============================================================================


class GoogleSheetsAdapter:
    provider = Provider.GOOGLE_SHEETS

    def __init__(self, client: ProviderClient) -> None:
        self._client = client

    async def get_values(self, unit_id: str, spreadsheet_id: str, cell_range: str) -> list[list[Any]]:
        """範囲の値を取得（空の範囲は空リスト）"""
        data: Optional[ValueRange] = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="GET",
                path=f"/spreadsheets/{quote(spreadsheet_id, safe='')}/values/{quote(cell_range, safe='')}",
            ),
        )
        return (data or {}).get("values") or []

    async def update_values(
        self,
        unit_id: str,
        spreadsheet_id: str,
        cell_range: str,
        values: list[list[Any]],
    ) -> int:
        """範囲に値を書き込み（valueInputOption=RAW）

        Returns:
            更新された行数
        """
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="PUT",
                path=f"/spreadsheets/{quote(spreadsheet_id, safe='')}/values/{quote(cell_range, safe='')}",
                params={"valueInputOption": "RAW"},
                json={"range": cell_range, "majorDimension": "ROWS", "values": values},
            ),
        )
        return int((data or {}).get("updatedRows") or len(values))

    async def list_spreadsheet_files(self, unit_id: str) -> list[DriveFile]:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="GET",
                path=f"{DRIVE_API_BASE}/files",
                params={
                    "q": f"mimeType='{SPREADSHEET_MIME_TYPE}'",
                    "fields": "files(id, name, webViewLink)",
                    "pageSize": DRIVE_PAGE_SIZE,
                },
            ),
        )
        return (data or {}).get("files") or []

    async def get_sheet_properties(self, unit_id: str, spreadsheet_id: str) -> list[SheetProperties]:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="GET",
                path=f"/spreadsheets/{quote(spreadsheet_id, safe='')}",
                params={"fields": "sheets(properties(title,sheetId,gridProperties))"},
            ),
        )
        return [sheet.get("properties") or {} for sheet in (data or {}).get("sheets") or []]
