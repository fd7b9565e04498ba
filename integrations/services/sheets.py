"""Google Sheets のリード取り込み・書き出し

列の割り当て（A〜F）:
    name, email, phone, status, source, notes

取り込んだリードの保存は呼び出し側（CRM本体）の責務。
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from integrations.lib.errors import IntegrationError
from integrations.lib.logger import setup_logger
from integrations.services.adapters.google_sheets import GoogleSheetsAdapter
from integrations.services.provider_client import ProviderClient

logger = setup_logger(__name__)

DEFAULT_WORKSHEET = "Leads"
DEFAULT_STATUS = "novo"
DEFAULT_SOURCE = "google_sheets"
LAST_IMPORT_COLUMN = "Z"
LAST_IMPORT_ROW = 1000
LAST_EXPORT_COLUMN = "F"


# =============================================================================
# Types
# =============================================================================


@dataclass
class SheetsConfig:
    spreadsheet_id: str
    worksheet_name: str = DEFAULT_WORKSHEET
    data_start_row: int = 2

    def validate(self) -> None:
        if not self.spreadsheet_id:
            raise ValueError("Spreadsheet ID is required")
        if self.data_start_row < 1:
            raise ValueError("data_start_row must be 1 or greater")

    @property
    def import_range(self) -> str:
        return f"{self.worksheet_name}!A{self.data_start_row}:{LAST_IMPORT_COLUMN}{LAST_IMPORT_ROW}"

    def export_range(self, row_count: int) -> str:
        last_row = self.data_start_row + row_count - 1
        return f"{self.worksheet_name}!A{self.data_start_row}:{LAST_EXPORT_COLUMN}{last_row}"


@dataclass
class LeadRow:
    """シート1行分のリード"""
    name: str = ""
    email: str = ""
    phone: str = ""
    status: str = DEFAULT_STATUS
    source: str = DEFAULT_SOURCE
    notes: str = ""

    def to_values(self) -> list[str]:
        return [self.name, self.email, self.phone, self.status, self.source, self.notes or ""]

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
            "source": self.source,
            "notes": self.notes,
        }


@dataclass
class SheetsImportResult:
    leads: list[LeadRow] = field(default_factory=list)
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


# =============================================================================
# Transform Functions
# =============================================================================


def _cell(row: list[Any], index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def row_to_lead(row: list[Any]) -> Optional[LeadRow]:
    """シートの行 → LeadRow（name / email / phone が全て空なら None）"""
    lead = LeadRow(
        name=_cell(row, 0),
        email=_cell(row, 1),
        phone=_cell(row, 2),
        status=_cell(row, 3) or DEFAULT_STATUS,
        source=_cell(row, 4) or DEFAULT_SOURCE,
        notes=_cell(row, 5),
    )
    if not lead.name and not lead.email and not lead.phone:
        return None
    return lead


# =============================================================================
# Service
# =============================================================================


class GoogleSheetsService:
    def __init__(self, client: ProviderClient) -> None:
        self._adapter = GoogleSheetsAdapter(client)

    async def import_leads(self, unit_id: str, config: SheetsConfig) -> SheetsImportResult:
        """シートからリードを読み込む

        行単位の変換失敗は errors に記録して続行する。取得自体の失敗は例外を送出。
        """
        config.validate()
        rows = await self._adapter.get_values(unit_id, config.spreadsheet_id, config.import_range)

        result = SheetsImportResult()
        for offset, row in enumerate(rows):
            row_number = config.data_start_row + offset
            if not row:
                result.skipped += 1
                continue
            try:
                lead = row_to_lead(row)
            except (TypeError, ValueError) as e:
                result.errors.append(f"Row {row_number}: {e}")
                continue
            if lead is None:
                result.skipped += 1
                continue
            result.leads.append(lead)

        logger.info(
            f"Imported {len(result.leads)} leads from sheet {config.worksheet_name} "
            f"({result.skipped} skipped, {len(result.errors)} errors)"
        )
        return result

    async def export_leads(self, unit_id: str, config: SheetsConfig, leads: list[LeadRow]) -> int:
        """リードをシートに書き出す

        Returns:
            書き出した行数
        """
        config.validate()
        if not leads:
            logger.info("No leads to export")
            return 0

        values = [lead.to_values() for lead in leads]
        updated = await self._adapter.update_values(
            unit_id,
            config.spreadsheet_id,
            config.export_range(len(values)),
            values,
        )
        logger.info(f"Exported {updated} leads to sheet {config.worksheet_name}")
        return updated

    async def list_spreadsheets(self, unit_id: str) -> list[dict[str, Any]]:
        """スプレッドシートとワークシートの一覧

        詳細の取得に失敗したスプレッドシートはスキップする。
        """
        files = await self._adapter.list_spreadsheet_files(unit_id)

        spreadsheets: list[dict[str, Any]] = []
        for file in files:
            try:
                properties = await self._adapter.get_sheet_properties(unit_id, file["id"])
            except IntegrationError as e:
                logger.warning(f"Skipping spreadsheet {file.get('id')}: {e.message}")
                continue

            spreadsheets.append({
                "id": file["id"],
                "name": file.get("name", ""),
                "url": file.get("webViewLink"),
                "worksheets": [
                    {
                        "name": sheet.get("title") or "Sem nome",
                        "id": sheet.get("sheetId") or 0,
                        "rowCount": (sheet.get("gridProperties") or {}).get("rowCount") or 0,
                        "columnCount": (sheet.get("gridProperties") or {}).get("columnCount") or 0,
                    }
                    for sheet in properties
                ],
            })

        return spreadsheets
