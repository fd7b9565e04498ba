"""プロバイダー別カレンダーアダプター

EventPayload はプロバイダーごとの生イベントのタグ付き共用体。
変換は必ずペイロード型に対応するアダプターの関数で行う。
"""

from datetime import datetime
from typing import Any, Optional, Union

from integrations.services.adapters import google_calendar, microsoft_graph
from integrations.services.adapters.google_calendar import GoogleCalendarAdapter, GoogleEventPayload
from integrations.services.adapters.microsoft_graph import MicrosoftEventPayload, MicrosoftGraphAdapter
from integrations.services.adapters.types import EventDraft, EventPatch
from integrations.services.models import CanonicalCalendarEvent, Provider
from integrations.services.provider_client import ProviderClient

EventPayload = Union[MicrosoftEventPayload, GoogleEventPayload]
CalendarAdapter = Union[MicrosoftGraphAdapter, GoogleCalendarAdapter]

CALENDAR_PROVIDERS = (Provider.MS365, Provider.GOOGLE_CALENDAR)


def create_calendar_adapter(provider: Provider, client: ProviderClient) -> CalendarAdapter:
    """プロバイダーに対応するカレンダーアダプターを生成

    Raises:
        ValueError: カレンダー以外のプロバイダー
    """
    if provider == Provider.MS365:
        return MicrosoftGraphAdapter(client)
    if provider == Provider.GOOGLE_CALENDAR:
        return GoogleCalendarAdapter(client)
    raise ValueError(f"{provider.value} is not a calendar provider")


def to_canonical(payload: EventPayload, now: Optional[datetime] = None) -> CanonicalCalendarEvent:
    if isinstance(payload, MicrosoftEventPayload):
        return microsoft_graph.to_canonical(payload, now=now)
    if isinstance(payload, GoogleEventPayload):
        return google_calendar.to_canonical(payload, now=now)
    raise TypeError(f"Unsupported event payload: {type(payload).__name__}")


def to_snapshot(payload: EventPayload) -> dict[str, Any]:
    if isinstance(payload, MicrosoftEventPayload):
        return microsoft_graph.to_snapshot(payload)
    if isinstance(payload, GoogleEventPayload):
        return google_calendar.to_snapshot(payload)
    raise TypeError(f"Unsupported event payload: {type(payload).__name__}")


__all__ = [
    "CALENDAR_PROVIDERS",
    "CalendarAdapter",
    "EventDraft",
    "EventPatch",
    "EventPayload",
    "GoogleCalendarAdapter",
    "GoogleEventPayload",
    "MicrosoftEventPayload",
    "MicrosoftGraphAdapter",
    "create_calendar_adapter",
    "to_canonical",
    "to_snapshot",
]
