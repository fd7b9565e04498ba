"""Google Calendar アダプター

Google Calendar API v3 の primary カレンダーを扱う。
同期時は showDeleted=true でキャンセル済みイベントも取得する。
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, TypedDict
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from integrations.lib.errors import InvalidProviderPayload
from integrations.services.adapters.types import DEFAULT_TITLE, EventDraft, EventPatch
from integrations.services.models import (
    CanonicalCalendarEvent,
    EventStatus,
    Provider,
    parse_datetime,
)
from integrations.services.provider_client import ProviderClient, ProviderRequest

CALENDAR_ID = "primary"
MAX_RESULTS_PER_PAGE = 250
# 時刻情報が一切無いキャンセル済みイベントの固定タイムスタンプ
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# Types
# =============================================================================


class GCalDateTime(TypedDict, total=False):
    """Google Calendar API DateTime 型"""
    date: str  # YYYY-MM-DD（終日イベント）
    dateTime: str  # ISO 8601（通常イベント）
    timeZone: str


class GCalEvent(TypedDict, total=False):
    """Google Calendar API Event レスポンス型"""
    id: str
    status: str  # confirmed / tentative / cancelled
    htmlLink: str
    created: str
    updated: str
    summary: str
    description: str
    location: str
    hangoutLink: str
    start: GCalDateTime
    end: GCalDateTime
    originalStartTime: GCalDateTime  # 繰り返しイベントの個別インスタンス
    organizer: dict[str, Any]
    attendees: list[dict[str, Any]]
    conferenceData: dict[str, Any]


@dataclass(frozen=True)
class GoogleEventPayload:
    """Google Calendar の生イベント"""
    data: GCalEvent


# =============================================================================
# Transform Functions (API → Canonical)
# =============================================================================


def _to_datetime(value: Optional[GCalDateTime]) -> Optional[datetime]:
    """終日イベント（date）と通常イベント（dateTime）を統一形式に変換"""
    if not value:
        return None
    if value.get("dateTime"):
        return parse_datetime(value["dateTime"])
    if value.get("date"):
        parsed = datetime.fromisoformat(value["date"])
        tz_name = value.get("timeZone") or "UTC"
        try:
            return parsed.replace(tzinfo=ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            return parsed.replace(tzinfo=timezone.utc)
    return None


def _join_url(event: GCalEvent) -> Optional[str]:
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    for entry_point in (event.get("conferenceData") or {}).get("entryPoints") or []:
        if entry_point.get("entryPointType") == "video" and entry_point.get("uri"):
            return entry_point["uri"]
    return None


def to_canonical(payload: GoogleEventPayload, now: Optional[datetime] = None) -> CanonicalCalendarEvent:
    """Google イベント → CanonicalCalendarEvent

    Raises:
        InvalidProviderPayload: id・start/end の欠落や日時の形式不正
    """
    event = payload.data
    if not event.get("id"):
        raise InvalidProviderPayload("Google event has no id")

    try:
        start = _to_datetime(event.get("start"))
        end = _to_datetime(event.get("end"))
        cancelled = event.get("status") == "cancelled"

        # キャンセル済みイベントは id/status 以外が省略されることがある
        if start is None or end is None:
            if not cancelled:
                raise InvalidProviderPayload(f"Google event {event['id']} has no start/end")
            fallback = (
                _to_datetime(event.get("originalStartTime"))
                or parse_datetime(event.get("updated"))
                or EPOCH
            )
            start = start or fallback
            end = end or start
        created_at = parse_datetime(event.get("created"))
        updated_at = parse_datetime(event.get("updated"))
    except ValueError as e:
        raise InvalidProviderPayload(f"Google event {event['id']} has an invalid date: {e}") from e

    current = now or datetime.now(timezone.utc)
    if cancelled:
        status = EventStatus.CANCELLED
    elif end < current:
        status = EventStatus.COMPLETED
    else:
        status = EventStatus.ACTIVE

    return CanonicalCalendarEvent(
        external_id=event["id"],
        title=event.get("summary") or DEFAULT_TITLE,
        start=start,
        end=end,
        status=status,
        join_url=_join_url(event),
        location=event.get("location"),
        description=event.get("description"),
        web_link=event.get("htmlLink"),
        created_at=created_at,
        updated_at=updated_at,
        organizer_email=(event.get("organizer") or {}).get("email"),
    )


def to_snapshot(payload: GoogleEventPayload) -> dict[str, Any]:
    """同期ログに保存するスナップショット"""
    event = payload.data
    return {
        "summary": event.get("summary"),
        "start": event.get("start"),
        "end": event.get("end"),
        "location": event.get("location"),
        "status": event.get("status"),
        "meetLink": _join_url(event),
    }


def _gcal_datetime(value: datetime, tz_name: str) -> GCalDateTime:
    return {"dateTime": value.isoformat(), "timeZone": tz_name}


def build_create_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": draft.title,
        "start": _gcal_datetime(draft.start, draft.timezone),
        "end": _gcal_datetime(draft.end, draft.timezone),
    }
    if draft.description:
        body["description"] = draft.description
    if draft.location:
        body["location"] = draft.location
    if draft.attendees:
        body["attendees"] = [{"email": email, "responseStatus": "needsAction"} for email in draft.attendees]
    if draft.create_meeting_link:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": f"meet-{int(time.time() * 1000)}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def build_update_body(patch: EventPatch) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if patch.title:
        body["summary"] = patch.title
    if patch.start:
        body["start"] = _gcal_datetime(patch.start, patch.timezone)
    if patch.end:
        body["end"] = _gcal_datetime(patch.end, patch.timezone)
    if patch.description is not None:
        body["description"] = patch.description
    if patch.location is not None:
        body["location"] = patch.location
    if patch.attendees is not None:
        body["attendees"] = [{"email": email} for email in patch.attendees]
    return body


# =============================================================================
# API Calls
# =============================================================================


class GoogleCalendarAdapter:
    provider = Provider.GOOGLE_CALENDAR

    def __init__(self, client: ProviderClient) -> None:
        self._client = client

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(CALENDAR_ID, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def fetch_window(
        self,
        unit_id: str,
        start: datetime,
        end: datetime,
    ) -> list[GoogleEventPayload]:
        """期間内のイベントを取得（ページネーション対応）"""
        payloads: list[GoogleEventPayload] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "timeMin": start.astimezone(timezone.utc).isoformat(),
                "timeMax": end.astimezone(timezone.utc).isoformat(),
                "maxResults": MAX_RESULTS_PER_PAGE,
                "singleEvents": "true",
                "showDeleted": "true",
                "orderBy": "startTime",
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._client.execute_json(
                unit_id,
                self.provider,
                ProviderRequest(method="GET", path=self._events_path(), params=params),
            )
            if not isinstance(data, dict):
                raise InvalidProviderPayload("Invalid response from Google Calendar")

            payloads.extend(GoogleEventPayload(item) for item in data.get("items") or [])

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return payloads

    async def get_event(self, unit_id: str, event_id: str) -> GoogleEventPayload:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(method="GET", path=self._events_path(event_id)),
        )
        return GoogleEventPayload(data)

    async def create_event(self, unit_id: str, draft: EventDraft) -> GoogleEventPayload:
        params: dict[str, Any] = {"sendUpdates": "all"}
        if draft.create_meeting_link:
            params["conferenceDataVersion"] = 1

        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="POST",
                path=self._events_path(),
                params=params,
                json=build_create_body(draft),
            ),
        )
        return GoogleEventPayload(data)

    async def update_event(self, unit_id: str, event_id: str, patch: EventPatch) -> GoogleEventPayload:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="PATCH",
                path=self._events_path(event_id),
                params={"sendUpdates": "all"},
                json=build_update_body(patch),
            ),
        )
        return GoogleEventPayload(data)

    async def delete_event(self, unit_id: str, event_id: str) -> None:
        await self._client.execute(
            unit_id,
            self.provider,
            ProviderRequest(
                method="DELETE",
                path=self._events_path(event_id),
                params={"sendUpdates": "all"},
            ),
        )
