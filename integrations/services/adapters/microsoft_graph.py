"""Microsoft Graph カレンダーアダプター

Graph API v1.0 の /me/calendarView, /me/events を扱う。
読み取りは Prefer: outlook.timezone="UTC" を付けて日時をUTCで受け取る。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, TypedDict
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from integrations.lib.errors import InvalidProviderPayload
from integrations.lib.logger import setup_logger
from integrations.services.adapters.types import DEFAULT_TITLE, EventDraft, EventPatch
from integrations.services.models import (
    CanonicalCalendarEvent,
    EventStatus,
    Provider,
    parse_datetime,
)
from integrations.services.provider_client import ProviderClient, ProviderRequest

logger = setup_logger(__name__)

PAGE_SIZE = 100
UTC_PREFER_HEADER = {"Prefer": 'outlook.timezone="UTC"'}


# =============================================================================
# Types
# =============================================================================


class GraphDateTimeTimeZone(TypedDict, total=False):
    """Graph API dateTimeTimeZone 型"""
    dateTime: str
    timeZone: str


class GraphEmailAddress(TypedDict, total=False):
    name: str
    address: str


class GraphEvent(TypedDict, total=False):
    """Graph API Event レスポンス型"""
    id: str
    subject: str
    bodyPreview: str
    start: GraphDateTimeTimeZone
    end: GraphDateTimeTimeZone
    isCancelled: bool
    isOnlineMeeting: bool
    onlineMeeting: dict[str, Any]
    location: dict[str, Any]
    webLink: str
    createdDateTime: str
    lastModifiedDateTime: str
    organizer: dict[str, GraphEmailAddress]


@dataclass(frozen=True)
class MicrosoftEventPayload:
    """Microsoft Graph の生イベント"""
    data: GraphEvent


# =============================================================================
# Transform Functions (API → Canonical)
# =============================================================================


def _to_datetime(value: Optional[GraphDateTimeTimeZone]) -> Optional[datetime]:
    """dateTimeTimeZone を datetime に変換

    Graph は dateTime にオフセットを含めないため timeZone を適用する。
    Windows形式のタイムゾーン名など解決できない場合はUTCとみなす。
    """
    if not value or not value.get("dateTime"):
        return None

    parsed = parse_datetime(value["dateTime"].rstrip("Z"))
    tz_name = value.get("timeZone")
    if parsed is not None and tz_name and tz_name.upper() != "UTC":
        try:
            parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug(f"Unknown Graph time zone {tz_name!r}, assuming UTC")
    return parsed


def to_canonical(payload: MicrosoftEventPayload, now: Optional[datetime] = None) -> CanonicalCalendarEvent:
    """Graph イベント → CanonicalCalendarEvent

    Raises:
        InvalidProviderPayload: id・start/end の欠落や日時の形式不正
    """
    event = payload.data
    if not event.get("id"):
        raise InvalidProviderPayload("Graph event has no id")

    try:
        start = _to_datetime(event.get("start"))
        end = _to_datetime(event.get("end"))
        created_at = parse_datetime(event.get("createdDateTime"))
        updated_at = parse_datetime(event.get("lastModifiedDateTime"))
    except ValueError as e:
        raise InvalidProviderPayload(f"Graph event {event['id']} has an invalid date: {e}") from e
    if start is None or end is None:
        raise InvalidProviderPayload(f"Graph event {event['id']} has no start/end")

    current = now or datetime.now(timezone.utc)
    if event.get("isCancelled"):
        status = EventStatus.CANCELLED
    elif end < current:
        status = EventStatus.COMPLETED
    else:
        status = EventStatus.ACTIVE

    organizer = (event.get("organizer") or {}).get("emailAddress") or {}

    return CanonicalCalendarEvent(
        external_id=event["id"],
        title=event.get("subject") or DEFAULT_TITLE,
        start=start,
        end=end,
        status=status,
        join_url=(event.get("onlineMeeting") or {}).get("joinUrl"),
        location=(event.get("location") or {}).get("displayName") or None,
        description=event.get("bodyPreview") or None,
        web_link=event.get("webLink"),
        created_at=created_at,
        updated_at=updated_at,
        organizer_email=organizer.get("address"),
    )


def to_snapshot(payload: MicrosoftEventPayload) -> dict[str, Any]:
    """同期ログに保存するスナップショット"""
    event = payload.data
    return {
        "subject": event.get("subject"),
        "start": event.get("start"),
        "end": event.get("end"),
        "location": event.get("location"),
        "isOnlineMeeting": event.get("isOnlineMeeting"),
        "onlineMeetingUrl": (event.get("onlineMeeting") or {}).get("joinUrl"),
    }


def _graph_datetime(value: datetime) -> GraphDateTimeTimeZone:
    return {
        "dateTime": value.astimezone(timezone.utc).replace(tzinfo=None).isoformat(),
        "timeZone": "UTC",
    }


def build_create_body(draft: EventDraft) -> dict[str, Any]:
    body: dict[str, Any] = {
        "subject": draft.title,
        "start": _graph_datetime(draft.start),
        "end": _graph_datetime(draft.end),
        "body": {"contentType": "text", "content": draft.description or ""},
    }
    if draft.location:
        body["location"] = {"displayName": draft.location}
    if draft.attendees:
        body["attendees"] = [
            {"emailAddress": {"address": email}, "type": "required"} for email in draft.attendees
        ]
    if draft.create_meeting_link:
        body["isOnlineMeeting"] = True
        body["onlineMeetingProvider"] = "teamsForBusiness"
    return body


def build_update_body(patch: EventPatch) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if patch.title:
        body["subject"] = patch.title
    if patch.start:
        body["start"] = _graph_datetime(patch.start)
    if patch.end:
        body["end"] = _graph_datetime(patch.end)
    if patch.description is not None:
        body["body"] = {"contentType": "text", "content": patch.description}
    if patch.location is not None:
        body["location"] = {"displayName": patch.location} if patch.location else None
    if patch.attendees is not None:
        body["attendees"] = [
            {"emailAddress": {"address": email}, "type": "required"} for email in patch.attendees
        ]
    return body


# =============================================================================
# API Calls
# =============================================================================


class MicrosoftGraphAdapter:
    provider = Provider.MS365

    def __init__(self, client: ProviderClient) -> None:
        self._client = client

    async def fetch_window(
        self,
        unit_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MicrosoftEventPayload]:
        """期間内のイベントを取得（@odata.nextLink によるページネーション対応）"""
        request: Optional[ProviderRequest] = ProviderRequest(
            method="GET",
            path="/me/calendarView",
            params={
                "startDateTime": start.astimezone(timezone.utc).isoformat(),
                "endDateTime": end.astimezone(timezone.utc).isoformat(),
                "$top": PAGE_SIZE,
                "$orderby": "start/dateTime",
            },
            headers=dict(UTC_PREFER_HEADER),
        )

        payloads: list[MicrosoftEventPayload] = []
        while request is not None:
            data = await self._client.execute_json(unit_id, self.provider, request)
            if not isinstance(data, dict) or not isinstance(data.get("value"), list):
                raise InvalidProviderPayload("Invalid response from Microsoft Graph")

            payloads.extend(MicrosoftEventPayload(item) for item in data["value"])

            next_link = data.get("@odata.nextLink")
            request = (
                ProviderRequest(method="GET", path=next_link, headers=dict(UTC_PREFER_HEADER))
                if next_link
                else None
            )

        return payloads

    async def get_event(self, unit_id: str, event_id: str) -> MicrosoftEventPayload:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="GET",
                path=f"/me/events/{quote(event_id, safe='')}",
                headers=dict(UTC_PREFER_HEADER),
            ),
        )
        return MicrosoftEventPayload(data)

    async def create_event(self, unit_id: str, draft: EventDraft) -> MicrosoftEventPayload:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="POST",
                path="/me/events",
                json=build_create_body(draft),
                headers=dict(UTC_PREFER_HEADER),
            ),
        )
        return MicrosoftEventPayload(data)

    async def update_event(self, unit_id: str, event_id: str, patch: EventPatch) -> MicrosoftEventPayload:
        data = await self._client.execute_json(
            unit_id,
            self.provider,
            ProviderRequest(
                method="PATCH",
                path=f"/me/events/{quote(event_id, safe='')}",
                json=build_update_body(patch),
                headers=dict(UTC_PREFER_HEADER),
            ),
        )
        return MicrosoftEventPayload(data)

    async def delete_event(self, unit_id: str, event_id: str) -> None:
        await self._client.execute(
            unit_id,
            self.provider,
            ProviderRequest(method="DELETE", path=f"/me/events/{quote(event_id, safe='')}"),
        )

