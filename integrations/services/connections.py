"""連携の状態取得・切断・設定更新"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from integrations.db.repository import IntegrationRepository
from integrations.lib.errors import DecryptionError, NoIntegrationFound
from integrations.lib.logger import setup_logger
from integrations.lib.vault import CredentialVault
from integrations.services.models import IntegrationStatus, Provider, parse_datetime
from integrations.services.providers import get_endpoints

logger = setup_logger(__name__)


@dataclass(frozen=True)
class IntegrationStatusInfo:
    """利用者に返す連携状態（トークンは含めない）"""
    provider: Provider
    connected: bool
    status: IntegrationStatus
    timezone: str = "UTC"
    last_sync_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "connected": self.connected,
            "status": self.status.value,
            "timezone": self.timezone,
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
        }


class ConnectionService:
    def __init__(
        self,
        repository: IntegrationRepository,
        vault: CredentialVault,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._repository = repository
        self._vault = vault
        self._http_client = http_client

    async def get_status(self, unit_id: str, provider: Provider) -> IntegrationStatusInfo:
        record = await self._repository.get(unit_id, provider)
        if record is None:
            return IntegrationStatusInfo(
                provider=provider,
                connected=False,
                status=IntegrationStatus.DISCONNECTED,
            )

        return IntegrationStatusInfo(
            provider=provider,
            connected=record.is_connected,
            status=record.status,
            timezone=record.timezone,
            last_sync_at=record.last_sync_at,
            connected_at=parse_datetime(record.metadata.get("connected_at")),
        )

    async def disconnect(self, unit_id: str, provider: Provider) -> None:
        """連携を切断

        プロバイダーに失効エンドポイントがあればトークンを失効させる（失敗しても切断は続行）。
        その後トークンを消去して status=disconnected にする。

        Raises:
            NoIntegrationFound: 連携レコードが無い
        """
        record = await self._repository.get(unit_id, provider)
        if record is None:
            raise NoIntegrationFound(f"No {provider.value} integration for unit {unit_id}")

        await self._revoke(record.refresh_token_ciphertext or record.access_token_ciphertext, provider)

        await self._repository.update(
            unit_id,
            provider,
            {
                "access_token": None,
                "refresh_token": None,
                "token_expires_at": None,
                "status": IntegrationStatus.DISCONNECTED.value,
            },
        )
        logger.info(f"{provider.value} disconnected for unit {unit_id}")

    async def _revoke(self, ciphertext: Optional[str], provider: Provider) -> None:
        endpoints = get_endpoints(provider)
        if not endpoints.revoke_url:
            logger.info(f"{endpoints.display_name} has no revocation endpoint, skipping")
            return
        if not ciphertext:
            return

        try:
            token = self._vault.decrypt(ciphertext)
        except DecryptionError as e:
            logger.warning(f"Skipping revocation, stored token is unreadable: {e.message}")
            return

        try:
            response = await self._http_client.post(
                endpoints.revoke_url,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except Exception as e:
            logger.warning(f"Token revocation failed ({type(e).__name__}), continuing disconnect")
            return

        if not response.is_success:
            logger.warning(f"Token revocation returned {response.status_code}, continuing disconnect")

    async def update_settings(self, unit_id: str, provider: Provider, timezone: str) -> IntegrationStatusInfo:
        """タイムゾーン設定を更新

        Raises:
            ValueError: IANA タイムゾーン名として不正
            NoIntegrationFound: 連携レコードが無い
        """
        if not timezone:
            raise ValueError("Timezone is required")
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError, OSError):
            raise ValueError(f"Unknown timezone: {timezone}") from None

        updated = await self._repository.update(unit_id, provider, {"timezone": timezone})
        if updated is None:
            raise NoIntegrationFound(f"No {provider.value} integration for unit {unit_id}")

        logger.info(f"Timezone for {unit_id}/{provider.value} set to {timezone}")
        return await self.get_status(unit_id, provider)
