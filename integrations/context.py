"""連携サブシステムの依存関係

起動時に1度だけ IntegrationContext.from_settings() で組み立て、終了時に aclose() する。
モジュール読み込み時にクライアントを生成しないこと。
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from integrations.db.repository import IntegrationRepository
from integrations.db.sync_log import SyncLogStore
from integrations.lib.config import Settings, load_settings
from integrations.lib.db import create_supabase_client
from integrations.lib.logger import set_log_level, setup_logger
from integrations.lib.vault import CredentialVault
from integrations.services.calendar_sync import CalendarSyncEngine
from integrations.services.connections import ConnectionService
from integrations.services.oauth_flow import OAuthFlowController
from integrations.services.provider_client import ProviderClient
from integrations.services.sheets import GoogleSheetsService
from integrations.services.token_manager import TokenLifecycleManager

logger = setup_logger(__name__)


@dataclass
class IntegrationContext:
    settings: Settings
    vault: CredentialVault
    repository: IntegrationRepository
    sync_log: SyncLogStore
    http_client: httpx.AsyncClient
    token_manager: TokenLifecycleManager
    provider_client: ProviderClient
    oauth: OAuthFlowController
    calendar: CalendarSyncEngine
    connections: ConnectionService
    sheets: GoogleSheetsService

    @classmethod
    def build(
        cls,
        settings: Settings,
        repository: IntegrationRepository,
        sync_log: SyncLogStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "IntegrationContext":
        """コンポーネントを組み立てる

        Raises:
            EncryptionError: 暗号化キー未設定・不正（起動時に失敗させる）
        """
        vault = CredentialVault(settings.encryption_key)
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_seconds))

        token_manager = TokenLifecycleManager(repository, vault, http_client, settings)
        provider_client = ProviderClient(token_manager, http_client)

        return cls(
            settings=settings,
            vault=vault,
            repository=repository,
            sync_log=sync_log,
            http_client=http_client,
            token_manager=token_manager,
            provider_client=provider_client,
            oauth=OAuthFlowController(settings, vault, repository, http_client),
            calendar=CalendarSyncEngine(repository, sync_log, provider_client),
            connections=ConnectionService(repository, vault, http_client),
            sheets=GoogleSheetsService(provider_client),
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "IntegrationContext":
        """環境変数の設定から本番用のコンテキストを生成"""
        settings = settings or load_settings()
        set_log_level(settings.log_level)
        # 鍵の検証を最初に行い、DB接続より先に失敗させる
        CredentialVault(settings.encryption_key)

        repository = IntegrationRepository(
            create_supabase_client(settings.supabase_url, settings.supabase_key)
        )
        sync_log = SyncLogStore(settings.database_url)
        context = cls.build(settings, repository, sync_log)
        logger.info(f"Integration context ready ({len(settings.oauth_clients)} OAuth clients configured)")
        return context

    async def aclose(self) -> None:
        await self.http_client.aclose()
        self.sync_log.close()
