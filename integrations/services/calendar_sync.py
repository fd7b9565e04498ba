"""カレンダー同期エンジン

外部カレンダーのイベントを取得し、アクション（created / updated / cancelled）を判定して
calendar_logs に1件ずつ記録する。同じスナップショットの再同期は何も書き込まない。

イベントの作成・更新・キャンセル・空き時間検索も ProviderClient 経由で行う。
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from integrations.db.repository import IntegrationRepository
from integrations.db.sync_log import SyncLogStore
from integrations.lib.errors import (
    InvalidProviderPayload,
    NoIntegrationFound,
    PartialSyncFailure,
    PolicyViolation,
)
from integrations.lib.logger import setup_logger
from integrations.services.adapters import (
    CALENDAR_PROVIDERS,
    CalendarAdapter,
    EventDraft,
    EventPatch,
    EventPayload,
    create_calendar_adapter,
    to_canonical,
    to_snapshot,
)
from integrations.services.models import (
    CanonicalCalendarEvent,
    EventStatus,
    Provider,
    SyncAction,
    SyncLogEntry,
    utcnow,
)
from integrations.services.provider_client import ProviderClient

logger = setup_logger(__name__)

SYNC_PAST_DAYS = 30
SYNC_FUTURE_DAYS = 90
CREATED_THRESHOLD = timedelta(hours=24)
CANCEL_MIN_LEAD = timedelta(minutes=15)
MIN_EVENT_DURATION = timedelta(minutes=15)
DEFAULT_EVENT_DURATION = timedelta(minutes=30)

BUSINESS_HOURS_START = time(9, 0)
BUSINESS_HOURS_END = time(17, 0)
MAX_SUGGESTIONS = 5
SUGGESTION_CONFIDENCE = 0.8


# =============================================================================
# Types
# =============================================================================


@dataclass
class SyncResult:
    """同期結果"""
    synced_count: int = 0
    inserted_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        """失敗イベントがあれば PartialSyncFailure を送出"""
        if self.errors:
            raise PartialSyncFailure(self.errors, synced_count=self.synced_count)


@dataclass(frozen=True)
class MeetingTimeSuggestion:
    start: datetime
    end: datetime
    confidence: float = SUGGESTION_CONFIDENCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "confidence": self.confidence,
        }


# =============================================================================
# Classification
# =============================================================================


def classify_action(event: CanonicalCalendarEvent, now: Optional[datetime] = None) -> SyncAction:
    """イベントの同期アクションを判定

    - キャンセル済み → cancelled
    - 作成から24時間以内 → created
    - それ以外 → updated
    """
    if event.status == EventStatus.CANCELLED:
        return SyncAction.CANCELLED
    current = now or utcnow()
    if event.created_at is not None and current - event.created_at <= CREATED_THRESHOLD:
        return SyncAction.CREATED
    return SyncAction.UPDATED


def log_timestamp(event: CanonicalCalendarEvent) -> datetime:
    """ログのタイムスタンプ（最終更新 → 作成 → 開始の順）

    同じスナップショットは常に同じ値になる。現在時刻は使わない。
    """
    return event.updated_at or event.created_at or event.start


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def _overlaps(start: datetime, end: datetime, busy: list[tuple[datetime, datetime]]) -> bool:
    return any(start < busy_end and busy_start < end for busy_start, busy_end in busy)


def business_hour_slots(
    window_start: datetime,
    window_end: datetime,
    duration: timedelta,
    busy: list[tuple[datetime, datetime]],
    tz_name: str = "UTC",
    limit: int = MAX_SUGGESTIONS,
) -> list[MeetingTimeSuggestion]:
    """営業時間（09:00-17:00）内の空き枠を1時間刻みで列挙

    Args:
        window_start: 検索開始
        window_end: 検索終了
        duration: 会議の長さ
        busy: 予定が入っている区間
        tz_name: 営業時間を判定するタイムゾーン
        limit: 最大件数
    """
    zone = _zone(tz_name)
    local = window_start.astimezone(zone)
    # 1時間刻みの枠に揃える
    if local.minute or local.second or local.microsecond:
        local = local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    current = local.astimezone(timezone.utc)

    suggestions: list[MeetingTimeSuggestion] = []
    while current + duration <= window_end and len(suggestions) < limit:
        slot_end = current + duration
        local_start = current.astimezone(zone)
        local_end = slot_end.astimezone(zone)
        in_business_hours = (
            local_start.time() >= BUSINESS_HOURS_START
            and local_end.date() == local_start.date()
            and local_end.time() <= BUSINESS_HOURS_END
        )
        if in_business_hours and not _overlaps(current, slot_end, busy):
            suggestions.append(MeetingTimeSuggestion(start=current, end=slot_end))
        current += timedelta(hours=1)

    return suggestions


# =============================================================================
# Engine
# =============================================================================


class CalendarSyncEngine:
    """外部カレンダーとの同期・イベント操作"""

    def __init__(
        self,
        repository: IntegrationRepository,
        sync_log: SyncLogStore,
        client: ProviderClient,
    ) -> None:
        self._repository = repository
        self._sync_log = sync_log
        self._client = client

    def _adapter(self, provider: Provider) -> CalendarAdapter:
        if provider not in CALENDAR_PROVIDERS:
            raise ValueError(f"{provider.value} is not a calendar provider")
        return create_calendar_adapter(provider, self._client)

    async def _timezone(self, unit_id: str, provider: Provider) -> str:
        record = await self._repository.get(unit_id, provider)
        if record is None:
            raise NoIntegrationFound(f"{provider.value} integration not connected for unit {unit_id}")
        return record.timezone

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync(self, unit_id: str, provider: Provider = Provider.MS365) -> SyncResult:
        """直近30日〜90日先のイベントを同期

        Args:
            unit_id: ユニットID
            provider: カレンダープロバイダー

        Returns:
            SyncResult（イベント単位の失敗は errors に格納）

        Raises:
            取得失敗時は ProviderClient / TokenLifecycleManager の例外をそのまま送出
        """
        adapter = self._adapter(provider)
        now = utcnow()
        window_start = now - timedelta(days=SYNC_PAST_DAYS)
        window_end = now + timedelta(days=SYNC_FUTURE_DAYS)

        logger.info(f"Starting {provider.value} sync for unit {unit_id}")
        payloads = await adapter.fetch_window(unit_id, window_start, window_end)
        logger.info(f"Fetched {len(payloads)} events")

        result = SyncResult()
        for payload in payloads:
            event_id = payload.data.get("id") or "unknown"
            try:
                inserted = await self._record(unit_id, payload, now)
            except asyncio.CancelledError:
                logger.warning(f"Sync cancelled for unit {unit_id} after {result.synced_count} events")
                raise
            except Exception as e:
                logger.error(f"Failed to sync event {event_id}: {e}")
                result.errors.append({"eventId": event_id, "error": str(e)})
                continue

            result.synced_count += 1
            if inserted:
                result.inserted_count += 1

        # 同期列のみ更新（metadata は OAuthFlowController の所有）
        await self._repository.update(
            unit_id,
            provider,
            {
                "last_sync_at": now.isoformat(),
                "last_sync_count": result.synced_count,
                "last_sync_errors": len(result.errors),
            },
        )

        logger.info(
            f"Sync completed: {result.synced_count} synced, "
            f"{result.inserted_count} new, {len(result.errors)} failed"
        )
        return result

    async def _record(self, unit_id: str, payload: EventPayload, now: datetime) -> bool:
        event = to_canonical(payload, now=now)
        snapshot = to_snapshot(payload)
        snapshot["syncType"] = "manual"

        entry = SyncLogEntry(
            unit_id=unit_id,
            event_id=event.external_id,
            action=classify_action(event, now),
            event_data_snapshot=snapshot,
            timestamp=log_timestamp(event),
            user_email=event.organizer_email,
        )
        return await self._sync_log.insert(entry)

    # -------------------------------------------------------------------------
    # Event operations
    # -------------------------------------------------------------------------

    async def list_events(
        self,
        unit_id: str,
        provider: Provider,
        start: datetime,
        end: datetime,
        status: Optional[EventStatus] = None,
    ) -> list[CanonicalCalendarEvent]:
        """期間内のイベント一覧（status 指定時はその状態のみ）"""
        if start >= end:
            raise ValueError("start must be before end")

        adapter = self._adapter(provider)
        now = utcnow()
        events: list[CanonicalCalendarEvent] = []
        for payload in await adapter.fetch_window(unit_id, start, end):
            try:
                events.append(to_canonical(payload, now=now))
            except InvalidProviderPayload as e:
                logger.warning(f"Skipping unmappable event for unit {unit_id}: {e}")

        if status is not None:
            events = [event for event in events if event.status == status]
        return sorted(events, key=lambda event: event.start)

    async def create_event(self, unit_id: str, provider: Provider, draft: EventDraft) -> CanonicalCalendarEvent:
        """イベントを作成

        開始が終了以降ならエラー。15分未満のイベントは30分に延長する。

        Raises:
            ValueError: 開始・終了が不正
        """
        if draft.start >= draft.end:
            raise ValueError("start must be before end")
        if draft.end - draft.start < MIN_EVENT_DURATION:
            draft = replace(draft, end=draft.start + DEFAULT_EVENT_DURATION)

        if draft.timezone == "UTC":
            draft = replace(draft, timezone=await self._timezone(unit_id, provider))

        payload = await self._adapter(provider).create_event(unit_id, draft)
        event = to_canonical(payload)
        logger.info(f"Created {provider.value} event {event.external_id} for unit {unit_id}")
        return event

    async def update_event(
        self,
        unit_id: str,
        provider: Provider,
        event_id: str,
        patch: EventPatch,
    ) -> CanonicalCalendarEvent:
        """イベントを更新（指定された項目のみ）

        Raises:
            ValueError: 更新項目が無い、または開始・終了が不正
        """
        if patch.is_empty():
            raise ValueError("No fields to update")
        if patch.start and patch.end and patch.start >= patch.end:
            raise ValueError("start must be before end")

        payload = await self._adapter(provider).update_event(unit_id, event_id, patch)
        event = to_canonical(payload)
        logger.info(f"Updated {provider.value} event {event_id} for unit {unit_id}")
        return event

    async def cancel_event(
        self,
        unit_id: str,
        provider: Provider,
        event_id: str,
        now: Optional[datetime] = None,
    ) -> None:
        """イベントをキャンセル

        Raises:
            PolicyViolation: 開始15分前を過ぎている
        """
        adapter = self._adapter(provider)
        event = to_canonical(await adapter.get_event(unit_id, event_id))

        current = now or utcnow()
        if event.start - current < CANCEL_MIN_LEAD:
            raise PolicyViolation("Events cannot be cancelled less than 15 minutes before they start")

        await adapter.delete_event(unit_id, event_id)
        logger.info(f"Cancelled {provider.value} event {event_id} for unit {unit_id}")

    async def find_available_times(
        self,
        unit_id: str,
        provider: Provider,
        duration_minutes: int,
        start: datetime,
        end: datetime,
    ) -> list[MeetingTimeSuggestion]:
        """空き時間の候補を最大5件返す

        期間内の有効なイベントと重ならない、営業時間内の1時間刻みの枠。
        """
        if duration_minutes <= 0:
            raise ValueError("duration must be positive")
        if start >= end:
            raise ValueError("start must be before end")

        tz_name = await self._timezone(unit_id, provider)
        events = await self.list_events(unit_id, provider, start, end)
        busy = [
            (event.start, event.end)
            for event in events
            if event.status != EventStatus.CANCELLED
        ]
        return business_hour_slots(
            start,
            end,
            timedelta(minutes=duration_minutes),
            busy,
            tz_name=tz_name,
        )
