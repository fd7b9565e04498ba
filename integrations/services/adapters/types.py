"""カレンダーアダプター共通定義

各プロバイダーのアダプターは自分のペイロード型だけを扱い、
CanonicalCalendarEvent に変換して返す。HTTP実行・再試行は ProviderClient に任せる。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


DEFAULT_TITLE = "Sem título"


@dataclass
class EventDraft:
    """イベント作成リクエスト"""
    title: str
    start: datetime
    end: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: list[str] = field(default_factory=list)
    create_meeting_link: bool = True
    timezone: str = "UTC"


@dataclass
class EventPatch:
    """イベント更新リクエスト（None の項目は変更しない）"""
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[list[str]] = None
    timezone: str = "UTC"

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.title, self.start, self.end, self.description, self.location, self.attendees)
        )
