"""連携サブシステムのデータモデル

- IntegrationRecord: integrations テーブルの1行（トークンは常に暗号文）
- CanonicalCalendarEvent: プロバイダー非依存のイベント表現
- SyncLogEntry: calendar_logs テーブルの1行
- OAuthState: OAuth リダイレクトで往復する state
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Provider(str, Enum):
    MS365 = "ms365"
    GOOGLE_CALENDAR = "google_calendar"
    GOOGLE_SHEETS = "google_sheets"


class IntegrationStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class EventStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601 文字列をタイムゾーン付き datetime に変換

    タイムゾーンが無い場合は UTC とみなす（Graph API は "2025-01-01T10:00:00.0000000" 形式）。
    """
    if not value:
        return None

    text = value.replace("Z", "+00:00")
    # Graph API は小数秒が7桁
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        text = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IntegrationRecord:
    """integrations テーブルのレコード

    access_token_ciphertext / refresh_token_ciphertext は CredentialVault の暗号文。
    last_sync_* は CalendarSyncEngine だけが書く列のため to_row には含めない。
    """
    unit_id: str
    provider: Provider
    access_token_ciphertext: Optional[str] = None
    refresh_token_ciphertext: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    timezone: str = "UTC"
    status: IntegrationStatus = IntegrationStatus.DISCONNECTED
    metadata: dict[str, Any] = field(default_factory=dict)
    last_sync_at: Optional[datetime] = None
    last_sync_count: Optional[int] = None
    last_sync_errors: Optional[int] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "IntegrationRecord":
        return cls(
            id=row.get("id"),
            unit_id=row["unit_id"],
            provider=Provider(row["provider"]),
            access_token_ciphertext=row.get("access_token") or None,
            refresh_token_ciphertext=row.get("refresh_token") or None,
            token_expires_at=parse_datetime(row.get("token_expires_at")),
            timezone=row.get("timezone") or "UTC",
            status=IntegrationStatus(row.get("status") or IntegrationStatus.DISCONNECTED.value),
            metadata=dict(row.get("metadata") or {}),
            last_sync_at=parse_datetime(row.get("last_sync_at")),
            last_sync_count=row.get("last_sync_count"),
            last_sync_errors=row.get("last_sync_errors"),
            created_at=parse_datetime(row.get("created_at")),
            updated_at=parse_datetime(row.get("updated_at")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "provider": self.provider.value,
            "access_token": self.access_token_ciphertext,
            "refresh_token": self.refresh_token_ciphertext,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "timezone": self.timezone,
            "status": self.status.value,
            "metadata": self.metadata,
        }

    @property
    def is_connected(self) -> bool:
        return self.status == IntegrationStatus.CONNECTED and bool(self.access_token_ciphertext)


@dataclass(frozen=True)
class CanonicalCalendarEvent:
    """プロバイダー非依存のカレンダーイベント"""
    external_id: str
    title: str
    start: datetime
    end: datetime
    status: EventStatus = EventStatus.ACTIVE
    join_url: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    web_link: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    organizer_email: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.external_id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status.value,
            "joinUrl": self.join_url,
            "location": self.location,
            "description": self.description,
            "webLink": self.web_link,
        }


@dataclass(frozen=True)
class SyncLogEntry:
    """calendar_logs テーブルのレコード

    (unit_id, event_id, timestamp) で一意。
    """
    unit_id: str
    event_id: str
    action: SyncAction
    event_data_snapshot: dict[str, Any]
    timestamp: datetime
    user_email: Optional[str] = None


@dataclass(frozen=True)
class OAuthState:
    unit_id: str
    provider: Provider
    issued_at: datetime
