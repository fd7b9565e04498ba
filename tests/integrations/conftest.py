"""連携サブシステムのテスト用フィクスチャ

Supabase / PostgreSQL の代わりにインメモリのリポジトリ・同期ログを使う。
プロバイダーHTTPは httpx.MockTransport で差し替える。
"""

import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
import pytest

from integrations.lib.config import OAuthClientConfig, Settings
from integrations.lib.vault import CredentialVault
from integrations.services.models import (
    IntegrationRecord,
    IntegrationStatus,
    Provider,
    SyncLogEntry,
)

TEST_KEY = base64.b64encode(bytes(range(32))).decode("ascii")


# =============================================================================
# Fakes
# =============================================================================


class InMemoryIntegrationRepository:
    """IntegrationRepository のインメモリ実装"""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, Provider], IntegrationRecord] = {}
        self.updates: list[dict[str, Any]] = []

    async def get(self, unit_id: str, provider: Provider) -> Optional[IntegrationRecord]:
        return self.rows.get((unit_id, provider))

    @staticmethod
    def _row(record: IntegrationRecord) -> dict[str, Any]:
        """to_row に同期列を加えたDB上の1行"""
        row = record.to_row()
        row["last_sync_at"] = record.last_sync_at.isoformat() if record.last_sync_at else None
        row["last_sync_count"] = record.last_sync_count
        row["last_sync_errors"] = record.last_sync_errors
        return row

    async def upsert(self, record: IntegrationRecord) -> IntegrationRecord:
        # upsert は to_row の列だけを書き、同期列は既存の値を残す
        existing = self.rows.get((record.unit_id, record.provider))
        row = self._row(existing) if existing else {}
        row.update(record.to_row())
        saved = IntegrationRecord.from_row(row)
        self.rows[(record.unit_id, record.provider)] = saved
        return saved

    async def update(
        self,
        unit_id: str,
        provider: Provider,
        fields: dict[str, Any],
    ) -> Optional[IntegrationRecord]:
        record = self.rows.get((unit_id, provider))
        if record is None:
            return None
        self.updates.append(dict(fields))
        row = self._row(record)
        row.update(fields)
        updated = IntegrationRecord.from_row(row)
        self.rows[(unit_id, provider)] = updated
        return updated

    async def delete(self, unit_id: str, provider: Provider) -> None:
        self.rows.pop((unit_id, provider), None)


class InMemorySyncLogStore:
    """SyncLogStore のインメモリ実装（一意制約つき）"""

    def __init__(self) -> None:
        self.entries: dict[tuple[str, str, datetime], SyncLogEntry] = {}
        self.fail_for: set[str] = set()

    async def insert(self, entry: SyncLogEntry) -> bool:
        if entry.event_id in self.fail_for:
            raise RuntimeError(f"insert failed for {entry.event_id}")
        key = (entry.unit_id, entry.event_id, entry.timestamp)
        if key in self.entries:
            return False
        self.entries[key] = entry
        return True

    def close(self) -> None:
        pass


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        encryption_key=TEST_KEY,
        oauth_clients={
            Provider.MS365: OAuthClientConfig(
                client_id="ms-client",
                client_secret="ms-secret",
                redirect_uri="http://localhost:5174/oauth/callback/ms365",
            ),
            Provider.GOOGLE_CALENDAR: OAuthClientConfig(
                client_id="google-client",
                client_secret="google-secret",
                redirect_uri="http://localhost:5174/oauth/callback/google_calendar",
            ),
            Provider.GOOGLE_SHEETS: OAuthClientConfig(
                client_id="google-client",
                client_secret="google-secret",
                redirect_uri="http://localhost:5174/oauth/callback/google_sheets",
            ),
        },
    )


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_KEY)


@pytest.fixture
def repository() -> InMemoryIntegrationRepository:
    return InMemoryIntegrationRepository()


@pytest.fixture
def sync_log() -> InMemorySyncLogStore:
    return InMemorySyncLogStore()


@pytest.fixture
def make_record(vault: CredentialVault, repository: InMemoryIntegrationRepository) -> Callable[..., IntegrationRecord]:
    """連携レコードを作成してリポジトリに保存するファクトリー"""

    def _make(
        unit_id: str = "u1",
        provider: Provider = Provider.MS365,
        access_token: Optional[str] = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: timedelta = timedelta(hours=1),
        status: IntegrationStatus = IntegrationStatus.CONNECTED,
        tz_name: str = "UTC",
    ) -> IntegrationRecord:
        record = IntegrationRecord(
            unit_id=unit_id,
            provider=provider,
            access_token_ciphertext=vault.encrypt(access_token) if access_token else None,
            refresh_token_ciphertext=vault.encrypt(refresh_token) if refresh_token else None,
            token_expires_at=datetime.now(timezone.utc) + expires_in,
            timezone=tz_name,
            status=status,
        )
        repository.rows[(unit_id, provider)] = record
        return record

    return _make


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """ハンドラーから MockTransport を使う AsyncClient を生成"""

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make
