"""CalendarSyncEngine テスト

ProviderClient とアダプターは実物を使い、プロバイダーHTTPのみ MockTransport で差し替える。
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from integrations.lib.errors import (
    InvalidProviderPayload,
    NetworkError,
    PartialSyncFailure,
    PolicyViolation,
    ProviderError,
)
from integrations.services.adapters import EventDraft, EventPatch
from integrations.services.calendar_sync import (
    CalendarSyncEngine,
    business_hour_slots,
    classify_action,
    log_timestamp,
)
from integrations.services.models import (
    CanonicalCalendarEvent,
    EventStatus,
    Provider,
    SyncAction,
)
from integrations.services.provider_client import ProviderClient


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.0000000Z")


def _graph_time(value: datetime) -> dict:
    return {"dateTime": value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.0000000"), "timeZone": "UTC"}


def graph_event(
    event_id: str,
    start: datetime,
    created: datetime,
    modified: datetime | None = None,
    cancelled: bool = False,
) -> dict:
    return {
        "id": event_id,
        "subject": f"Meeting {event_id}",
        "start": _graph_time(start),
        "end": _graph_time(start + timedelta(hours=1)),
        "isCancelled": cancelled,
        "isOnlineMeeting": True,
        "onlineMeeting": {"joinUrl": f"https://teams.example/{event_id}"},
        "createdDateTime": _iso(created),
        "lastModifiedDateTime": _iso(modified or created),
        "organizer": {"emailAddress": {"address": "owner@example.com"}},
    }


class FakeProvider:
    """プロバイダーAPIのモック（パスごとにレスポンスを返す）"""

    def __init__(self) -> None:
        self.events: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.fail_listing: Exception | None = None

    def find(self, event_id: str) -> dict | None:
        return next((event for event in self.events if event["id"] == event_id), None)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/me/calendarView"):
            if self.fail_listing is not None:
                raise self.fail_listing
            return httpx.Response(200, json={"value": self.events})
        if path.startswith("/v1.0/me/events/"):
            event_id = path.rsplit("/", 1)[-1]
            if request.method == "DELETE":
                return httpx.Response(204)
            event = self.find(event_id)
            if event is None:
                return httpx.Response(404, json={"error": {"message": "not found"}})
            if request.method == "PATCH":
                event = dict(event)
                event.update(json.loads(request.content))
                return httpx.Response(200, json=event)
            return httpx.Response(200, json=event)
        if path == "/v1.0/me/events" and request.method == "POST":
            body = json.loads(request.content)
            now = datetime.now(timezone.utc)
            return httpx.Response(
                201,
                json={
                    "id": "new-1",
                    "subject": body["subject"],
                    "start": body["start"],
                    "end": body["end"],
                    "onlineMeeting": {"joinUrl": "https://teams.example/new-1"},
                    "createdDateTime": _iso(now),
                    "lastModifiedDateTime": _iso(now),
                },
            )
        return httpx.Response(404, json={"error": {"message": "not found"}})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def provider_api() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def engine(repository, sync_log, provider_api, make_record, mock_http) -> CalendarSyncEngine:
    make_record()
    token_manager = AsyncMock()
    token_manager.ensure_valid_access_token.return_value = "token-1"
    client = ProviderClient(token_manager, mock_http(provider_api))
    return CalendarSyncEngine(repository, sync_log, client)


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


# =============================================================================
# Classification
# =============================================================================


class TestClassifyAction:
    def _event(self, **kwargs) -> CanonicalCalendarEvent:
        start = datetime(2030, 1, 1, 10, tzinfo=timezone.utc)
        return CanonicalCalendarEvent(external_id="e", title="t", start=start, end=start + timedelta(hours=1), **kwargs)

    def test_cancelled_wins(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        event = self._event(status=EventStatus.CANCELLED, created_at=now - timedelta(hours=1))
        assert classify_action(event, now) == SyncAction.CANCELLED

    def test_recently_created(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert classify_action(self._event(created_at=now - timedelta(hours=2)), now) == SyncAction.CREATED
        assert classify_action(self._event(created_at=now - timedelta(hours=24)), now) == SyncAction.CREATED

    def test_older_events_are_updates(self):
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert classify_action(self._event(created_at=now - timedelta(hours=25)), now) == SyncAction.UPDATED
        assert classify_action(self._event(), now) == SyncAction.UPDATED


# =============================================================================
# Sync
# =============================================================================


@pytest.mark.asyncio
async def test_sync_records_actions(engine, provider_api, sync_log, now):
    """e1（2時間前に作成）は created、e2（キャンセル済み）は cancelled"""
    provider_api.events = [
        graph_event("e1", start=now + timedelta(days=1), created=now - timedelta(hours=2)),
        graph_event("e2", start=now + timedelta(days=2), created=now - timedelta(days=10), cancelled=True),
    ]

    result = await engine.sync("u1")

    assert result.synced_count == 2
    assert result.inserted_count == 2
    assert result.errors == []
    actions = {entry.event_id: entry.action for entry in sync_log.entries.values()}
    assert actions == {"e1": SyncAction.CREATED, "e2": SyncAction.CANCELLED}

    entry = next(e for e in sync_log.entries.values() if e.event_id == "e1")
    assert entry.user_email == "owner@example.com"
    assert entry.timestamp == now - timedelta(hours=2)
    assert entry.event_data_snapshot["onlineMeetingUrl"] == "https://teams.example/e1"


@pytest.mark.asyncio
async def test_sync_is_idempotent(engine, provider_api, sync_log, now):
    """同じスナップショットの再同期は何も追加しない"""
    provider_api.events = [
        graph_event("e1", start=now + timedelta(days=1), created=now - timedelta(hours=2)),
        graph_event("e2", start=now + timedelta(days=2), created=now - timedelta(days=10), cancelled=True),
    ]

    await engine.sync("u1")
    second = await engine.sync("u1")

    assert second.synced_count == 2
    assert second.inserted_count == 0
    assert len(sync_log.entries) == 2


@pytest.mark.asyncio
async def test_sync_requests_window(engine, provider_api):
    await engine.sync("u1")

    params = provider_api.requests[0].url.params
    start = datetime.fromisoformat(params["startDateTime"])
    end = datetime.fromisoformat(params["endDateTime"])
    assert timedelta(days=119) < end - start <= timedelta(days=120, seconds=1)
    assert params["$top"] == "100"


@pytest.mark.asyncio
async def test_sync_continues_after_event_failure(engine, provider_api, sync_log, now):
    """1件の失敗は errors に記録して続行"""
    broken = graph_event("bad", start=now + timedelta(days=1), created=now - timedelta(days=3))
    del broken["start"]
    provider_api.events = [
        broken,
        graph_event("e1", start=now + timedelta(days=1), created=now - timedelta(hours=2)),
        graph_event("e3", start=now + timedelta(days=3), created=now - timedelta(days=3)),
    ]
    sync_log.fail_for.add("e3")

    result = await engine.sync("u1")

    assert result.synced_count == 1
    assert {error["eventId"] for error in result.errors} == {"bad", "e3"}
    with pytest.raises(PartialSyncFailure) as exc_info:
        result.raise_for_errors()
    assert exc_info.value.synced_count == 1


@pytest.mark.asyncio
async def test_sync_fetch_failure_aborts(engine, provider_api, sync_log):
    provider_api.fail_listing = httpx.ConnectError("unreachable")

    with patch("integrations.services.provider_client.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(NetworkError):
            await engine.sync("u1")

    assert sync_log.entries == {}


@pytest.mark.asyncio
async def test_sync_updates_last_sync_columns(engine, provider_api, repository, now):
    provider_api.events = [graph_event("e1", start=now + timedelta(days=1), created=now - timedelta(days=3))]

    await engine.sync("u1")

    stored = repository.rows[("u1", Provider.MS365)]
    assert stored.last_sync_count == 1
    assert stored.last_sync_errors == 0
    assert stored.last_sync_at >= now


@pytest.mark.asyncio
async def test_sync_leaves_metadata_untouched(engine, provider_api, repository, now):
    """metadata は接続処理が書く列のため、同期は書き戻さない"""
    repository.rows[("u1", Provider.MS365)].metadata["connected_at"] = now.isoformat()

    async def reconnect_during_fetch(*args, **kwargs):
        # 同期中に再接続で metadata が更新された状態
        repository.rows[("u1", Provider.MS365)].metadata["scope"] = "Calendars.ReadWrite"
        return []

    with patch(
        "integrations.services.adapters.microsoft_graph.MicrosoftGraphAdapter.fetch_window",
        side_effect=reconnect_during_fetch,
    ):
        await engine.sync("u1")

    assert set(repository.updates[-1]) == {"last_sync_at", "last_sync_count", "last_sync_errors"}
    assert repository.rows[("u1", Provider.MS365)].metadata == {
        "connected_at": now.isoformat(),
        "scope": "Calendars.ReadWrite",
    }


@pytest.mark.asyncio
async def test_sync_cancellation_keeps_committed_rows(engine, provider_api, sync_log, now):
    """キャンセルされたら以降の処理を止め、書き込み済みの行は残す"""
    provider_api.events = [
        graph_event(f"e{i}", start=now + timedelta(days=1), created=now - timedelta(days=3))
        for i in range(3)
    ]
    original_insert = sync_log.insert

    async def insert_then_cancel(entry):
        inserted = await original_insert(entry)
        if entry.event_id == "e1":
            raise asyncio.CancelledError()
        return inserted

    sync_log.insert = insert_then_cancel

    with pytest.raises(asyncio.CancelledError):
        await engine.sync("u1")

    assert {entry.event_id for entry in sync_log.entries.values()} == {"e0", "e1"}


# =============================================================================
# Event operations
# =============================================================================


@pytest.mark.asyncio
async def test_cancel_event_within_15_minutes_is_rejected(engine, provider_api, now):
    provider_api.events = [graph_event("soon", start=now + timedelta(minutes=10), created=now - timedelta(days=1))]

    with pytest.raises(PolicyViolation):
        await engine.cancel_event("u1", Provider.MS365, "soon", now=now)

    assert not any(request.method == "DELETE" for request in provider_api.requests)


@pytest.mark.asyncio
async def test_cancel_event_with_enough_lead_time(engine, provider_api, now):
    provider_api.events = [graph_event("later", start=now + timedelta(minutes=20), created=now - timedelta(days=1))]

    await engine.cancel_event("u1", Provider.MS365, "later", now=now)

    assert provider_api.requests[-1].method == "DELETE"
    assert provider_api.requests[-1].url.path == "/v1.0/me/events/later"


@pytest.mark.asyncio
async def test_create_event_rejects_inverted_range(engine, now):
    draft = EventDraft(title="Demo", start=now + timedelta(hours=2), end=now + timedelta(hours=1))

    with pytest.raises(ValueError):
        await engine.create_event("u1", Provider.MS365, draft)


@pytest.mark.asyncio
async def test_create_short_event_is_extended(engine, provider_api, now):
    """15分未満のイベントは30分に延長"""
    start = (now + timedelta(days=1)).replace(second=0)
    draft = EventDraft(title="Demo", start=start, end=start + timedelta(minutes=5))

    event = await engine.create_event("u1", Provider.MS365, draft)

    assert event.external_id == "new-1"
    assert event.end - event.start == timedelta(minutes=30)
    body = json.loads(provider_api.requests[-1].content)
    assert body["isOnlineMeeting"] is True
    assert body["onlineMeetingProvider"] == "teamsForBusiness"


@pytest.mark.asyncio
async def test_update_event_sends_only_changed_fields(engine, provider_api, now):
    provider_api.events = [graph_event("e1", start=now + timedelta(days=1), created=now - timedelta(days=1))]

    event = await engine.update_event("u1", Provider.MS365, "e1", EventPatch(title="Renamed"))

    assert event.title == "Renamed"
    assert json.loads(provider_api.requests[-1].content) == {"subject": "Renamed"}


@pytest.mark.asyncio
async def test_update_event_without_fields_raises(engine):
    with pytest.raises(ValueError):
        await engine.update_event("u1", Provider.MS365, "e1", EventPatch())


@pytest.mark.asyncio
async def test_provider_error_propagates(engine):
    with pytest.raises(ProviderError):
        await engine.cancel_event("u1", Provider.MS365, "missing")


# =============================================================================
# Availability
# =============================================================================


class TestBusinessHourSlots:
    def test_skips_busy_and_off_hours(self):
        day = datetime(2030, 1, 7, tzinfo=timezone.utc)
        busy = [(day.replace(hour=10), day.replace(hour=11))]

        slots = business_hour_slots(day.replace(hour=8), day.replace(hour=18), timedelta(hours=1), busy)

        assert [slot.start.hour for slot in slots] == [9, 11, 12, 13, 14]
        assert all(slot.confidence == 0.8 for slot in slots)

    def test_uses_integration_timezone(self):
        # America/Sao_Paulo は UTC-3
        day = datetime(2030, 1, 7, tzinfo=timezone.utc)

        slots = business_hour_slots(day.replace(hour=10), day.replace(hour=16), timedelta(hours=1), [], tz_name="America/Sao_Paulo")

        assert slots[0].start == day.replace(hour=12)

    def test_last_slot_ends_by_17(self):
        day = datetime(2030, 1, 7, tzinfo=timezone.utc)

        slots = business_hour_slots(day.replace(hour=15), day.replace(hour=20), timedelta(hours=1), [])

        assert [slot.start.hour for slot in slots] == [15, 16]


@pytest.mark.asyncio
async def test_find_available_times_avoids_events(engine, provider_api):
    day = datetime(2030, 1, 7, tzinfo=timezone.utc)
    provider_api.events = [
        graph_event("busy", start=day.replace(hour=9), created=day - timedelta(days=1)),
        graph_event("gone", start=day.replace(hour=11), created=day - timedelta(days=1), cancelled=True),
    ]

    slots = await engine.find_available_times("u1", Provider.MS365, 60, day.replace(hour=8), day.replace(hour=18))

    assert [slot.start.hour for slot in slots] == [10, 11, 12, 13, 14]


# =============================================================================
# Google Calendar / malformed payloads
# =============================================================================


@pytest.mark.asyncio
async def test_google_deleted_item_is_logged_once(repository, sync_log, make_record, mock_http):
    """showDeleted で id/status だけが返るキャンセル済みイベントも再同期で増えない"""
    make_record(provider=Provider.GOOGLE_CALENDAR)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": [{"id": "g1", "status": "cancelled"}]})

    token_manager = AsyncMock()
    token_manager.ensure_valid_access_token.return_value = "token-1"
    engine = CalendarSyncEngine(repository, sync_log, ProviderClient(token_manager, mock_http(handler)))

    first = await engine.sync("u1", Provider.GOOGLE_CALENDAR)
    second = await engine.sync("u1", Provider.GOOGLE_CALENDAR)

    assert first.inserted_count == 1
    assert second.synced_count == 1
    assert second.inserted_count == 0
    [entry] = sync_log.entries.values()
    assert entry.action == SyncAction.CANCELLED
    assert entry.timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_log_timestamp_falls_back_to_start():
    start = datetime(2030, 1, 1, 10, tzinfo=timezone.utc)
    event = CanonicalCalendarEvent(external_id="e", title="t", start=start, end=start + timedelta(hours=1))

    assert log_timestamp(event) == start


@pytest.mark.asyncio
async def test_list_events_skips_unmappable_events(engine, provider_api, now):
    provider_api.events = [
        graph_event("ok", start=now + timedelta(days=1), created=now - timedelta(days=1)),
        {"id": "bad"},
    ]

    events = await engine.list_events("u1", Provider.MS365, now, now + timedelta(days=7))

    assert [event.external_id for event in events] == ["ok"]


@pytest.mark.asyncio
async def test_cancel_unmappable_event_raises_provider_fault(engine, provider_api):
    provider_api.events = [{"id": "bad"}]

    with pytest.raises(InvalidProviderPayload):
        await engine.cancel_event("u1", Provider.MS365, "bad")


@pytest.mark.asyncio
async def test_create_event_does_not_modify_draft(engine, make_record, now):
    make_record(tz_name="America/Sao_Paulo")
    start = (now + timedelta(days=1)).replace(second=0)
    draft = EventDraft(title="Demo", start=start, end=start + timedelta(minutes=5))

    await engine.create_event("u1", Provider.MS365, draft)

    assert draft.end == start + timedelta(minutes=5)
    assert draft.timezone == "UTC"
