"""連携APIのルート

リソース名とプロバイダーの対応:
    calendar        → ms365
    google-calendar → google_calendar
    sheets          → google_sheets
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from integrations.context import IntegrationContext
from integrations.services.adapters import CALENDAR_PROVIDERS, EventDraft, EventPatch
from integrations.services.models import EventStatus, Provider
from integrations.services.sheets import DEFAULT_WORKSHEET, LeadRow, SheetsConfig

router = APIRouter()

RESOURCES: dict[str, Provider] = {
    "calendar": Provider.MS365,
    "google-calendar": Provider.GOOGLE_CALENDAR,
    "sheets": Provider.GOOGLE_SHEETS,
}

CALLBACK_ALIASES: dict[str, Provider] = {
    "ms365": Provider.MS365,
    "microsoft": Provider.MS365,
    "google-calendar": Provider.GOOGLE_CALENDAR,
    "google_calendar": Provider.GOOGLE_CALENDAR,
    "google-sheets": Provider.GOOGLE_SHEETS,
    "google_sheets": Provider.GOOGLE_SHEETS,
}

DEFAULT_LIST_DAYS = 30


# =============================================================================
# Request Models
# =============================================================================


class CreateEventBody(BaseModel):
    title: str = Field(min_length=1)
    start: datetime
    end: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: list[str] = Field(default_factory=list)
    create_meeting_link: bool = True


class UpdateEventBody(BaseModel):
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[list[str]] = None


class FindTimesBody(BaseModel):
    duration: int = Field(gt=0, le=24 * 60)
    start: datetime
    end: datetime


class ConfigBody(BaseModel):
    timezone: str


class SheetsConfigBody(BaseModel):
    spreadsheet_id: str
    worksheet_name: str = DEFAULT_WORKSHEET
    data_start_row: int = Field(default=2, ge=1)

    def to_config(self) -> SheetsConfig:
        return SheetsConfig(
            spreadsheet_id=self.spreadsheet_id,
            worksheet_name=self.worksheet_name,
            data_start_row=self.data_start_row,
        )


class LeadBody(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    status: str = "novo"
    source: str = "google_sheets"
    notes: str = ""


class ExportBody(BaseModel):
    config: SheetsConfigBody
    leads: list[LeadBody]


# =============================================================================
# Helpers
# =============================================================================


def _context(request: Request) -> IntegrationContext:
    return request.app.state.context


def _provider(resource: str) -> Provider:
    provider = RESOURCES.get(resource)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Unknown integration: {resource}")
    return provider


def _calendar_provider(resource: str) -> Provider:
    provider = _provider(resource)
    if provider not in CALENDAR_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"{resource} has no calendar")
    return provider


def _aware(value: datetime) -> datetime:
    """タイムゾーンの無い日時は UTC とみなす"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# Connection
# =============================================================================


@router.get("/oauth/callback/{provider_name}")
async def oauth_callback(
    request: Request,
    provider_name: str,
    state: str = Query(...),
    code: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
) -> dict[str, Any]:
    provider = CALLBACK_ALIASES.get(provider_name)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_name}")

    record = await _context(request).oauth.complete_authorization(
        code,
        state,
        error=error,
        error_description=error_description,
        expected_provider=provider,
    )
    return {
        "success": True,
        "unitId": record.unit_id,
        "provider": record.provider.value,
        "status": record.status.value,
    }


@router.get("/{resource}/{unit}/connect")
async def connect(request: Request, resource: str, unit: str) -> dict[str, str]:
    auth_url = _context(request).oauth.begin_authorization(unit, _provider(resource))
    return {"authUrl": auth_url}


@router.get("/{resource}/{unit}/status")
async def status(request: Request, resource: str, unit: str) -> dict[str, Any]:
    info = await _context(request).connections.get_status(unit, _provider(resource))
    return info.to_dict()


@router.delete("/{resource}/{unit}/disconnect")
async def disconnect(request: Request, resource: str, unit: str) -> dict[str, Any]:
    await _context(request).connections.disconnect(unit, _provider(resource))
    return {"success": True}


@router.put("/{resource}/{unit}/config")
async def update_config(request: Request, resource: str, unit: str, body: ConfigBody) -> dict[str, Any]:
    info = await _context(request).connections.update_settings(unit, _provider(resource), body.timezone)
    return info.to_dict()


# =============================================================================
# Calendar
# =============================================================================


@router.get("/{resource}/{unit}/events")
async def list_events(
    request: Request,
    resource: str,
    unit: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    status: Optional[EventStatus] = Query(default=None),
) -> dict[str, Any]:
    provider = _calendar_provider(resource)
    window_start = _aware(start) if start else datetime.now(timezone.utc)
    window_end = _aware(end) if end else window_start + timedelta(days=DEFAULT_LIST_DAYS)

    events = await _context(request).calendar.list_events(unit, provider, window_start, window_end, status=status)
    return {"events": [event.to_dict() for event in events]}


@router.post("/{resource}/{unit}/events", status_code=201)
async def create_event(request: Request, resource: str, unit: str, body: CreateEventBody) -> dict[str, Any]:
    draft = EventDraft(
        title=body.title,
        start=_aware(body.start),
        end=_aware(body.end),
        description=body.description,
        location=body.location,
        attendees=body.attendees,
        create_meeting_link=body.create_meeting_link,
    )
    event = await _context(request).calendar.create_event(unit, _calendar_provider(resource), draft)
    return event.to_dict()


@router.patch("/{resource}/{unit}/events/{event_id}")
async def update_event(
    request: Request,
    resource: str,
    unit: str,
    event_id: str,
    body: UpdateEventBody,
) -> dict[str, Any]:
    patch = EventPatch(
        title=body.title,
        start=_aware(body.start) if body.start else None,
        end=_aware(body.end) if body.end else None,
        description=body.description,
        location=body.location,
        attendees=body.attendees,
    )
    event = await _context(request).calendar.update_event(unit, _calendar_provider(resource), event_id, patch)
    return event.to_dict()


@router.delete("/{resource}/{unit}/events/{event_id}")
async def cancel_event(request: Request, resource: str, unit: str, event_id: str) -> dict[str, Any]:
    await _context(request).calendar.cancel_event(unit, _calendar_provider(resource), event_id)
    return {"success": True, "message": "Event cancelled"}


@router.post("/{resource}/{unit}/find")
async def find_available_times(request: Request, resource: str, unit: str, body: FindTimesBody) -> dict[str, Any]:
    suggestions = await _context(request).calendar.find_available_times(
        unit,
        _calendar_provider(resource),
        body.duration,
        _aware(body.start),
        _aware(body.end),
    )
    return {"suggestions": [suggestion.to_dict() for suggestion in suggestions]}


@router.post("/{resource}/{unit}/sync")
async def sync(request: Request, resource: str, unit: str) -> Response:
    result = await _context(request).calendar.sync(unit, _calendar_provider(resource))
    content = {
        "success": result.success,
        "synced": result.synced_count,
        "inserted": result.inserted_count,
        "errors": result.errors,
    }
    # 一部失敗は 207
    return JSONResponse(status_code=200 if result.success else 207, content=content)


# =============================================================================
# Sheets
# =============================================================================


@router.post("/sheets/{unit}/import")
async def import_leads(request: Request, unit: str, body: SheetsConfigBody) -> dict[str, Any]:
    result = await _context(request).sheets.import_leads(unit, body.to_config())
    return {
        "success": not result.errors,
        "imported": len(result.leads),
        "skipped": result.skipped,
        "leads": [lead.to_dict() for lead in result.leads],
        "errors": result.errors,
    }


@router.post("/sheets/{unit}/export")
async def export_leads(request: Request, unit: str, body: ExportBody) -> dict[str, Any]:
    leads = [LeadRow(**lead.model_dump()) for lead in body.leads]
    exported = await _context(request).sheets.export_leads(unit, body.config.to_config(), leads)
    return {"success": True, "exported": exported}


@router.get("/sheets/{unit}/spreadsheets")
async def list_spreadsheets(request: Request, unit: str) -> dict[str, Any]:
    spreadsheets = await _context(request).sheets.list_spreadsheets(unit)
    return {"spreadsheets": spreadsheets}
