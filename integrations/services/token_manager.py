"""アクセストークンのライフサイクル管理

プロバイダー呼び出しの前に有効なアクセストークンを用意する。
期限切れ（または期限まで5分以内）ならリフレッシュトークンで更新し、
新しいトークンを暗号化して integrations テーブルに保存してから返す。

同じ (unit_id, provider) へのリフレッシュはプロセス内ロックで直列化する。
プロバイダーによっては並行リフレッシュが互いのトークンを無効化するため。
"""

import asyncio
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, TypedDict

import httpx

from integrations.db.repository import IntegrationRepository
from integrations.lib.config import OAuthClientConfig, Settings
from integrations.lib.errors import (
    ConfigurationError,
    DecryptFailed,
    DecryptionError,
    NetworkError,
    NoIntegrationFound,
    RefreshFailed,
    RefreshTokenMissing,
)
from integrations.lib.logger import redact, setup_logger
from integrations.lib.vault import CredentialVault
from integrations.services.models import IntegrationRecord, IntegrationStatus, Provider
from integrations.services.providers import ProviderEndpoints, get_endpoints

logger = setup_logger(__name__)

DEFAULT_THRESHOLD_MINUTES = 5  # トークン更新の閾値
DEFAULT_EXPIRES_IN_SECONDS = 3600
UNRECOVERABLE_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


class TokenResponse(TypedDict, total=False):
    """トークンエンドポイントのレスポンス"""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str
    scope: str


def expires_at_from(token: TokenResponse, now: Optional[datetime] = None) -> datetime:
    """expires_in から有効期限を計算（不正値は1時間とみなす）"""
    current = now or datetime.now(timezone.utc)
    expires_in = token.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
        expires_in = DEFAULT_EXPIRES_IN_SECONDS
    return current + timedelta(seconds=int(expires_in))


def token_error_code(response: httpx.Response) -> Optional[str]:
    """OAuthエラーレスポンスから error コードを取り出す"""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


async def post_token_request(
    http_client: httpx.AsyncClient,
    endpoints: ProviderEndpoints,
    data: dict[str, str],
) -> httpx.Response:
    """トークンエンドポイントにフォームをPOST

    Raises:
        NetworkError: 通信失敗
    """
    try:
        return await http_client.post(
            endpoints.token_url,
            data=data,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )
    except httpx.TransportError as e:
        raise NetworkError(
            f"{endpoints.display_name} token endpoint unreachable: {type(e).__name__}"
        ) from e


class TokenLifecycleManager:
    """有効なアクセストークンの取得とリフレッシュ"""

    def __init__(
        self,
        repository: IntegrationRepository,
        vault: CredentialVault,
        http_client: httpx.AsyncClient,
        settings: Settings,
        threshold_minutes: int = DEFAULT_THRESHOLD_MINUTES,
    ) -> None:
        self._repository = repository
        self._vault = vault
        self._http_client = http_client
        self._settings = settings
        self._threshold = timedelta(minutes=threshold_minutes)
        self._locks: weakref.WeakValueDictionary[tuple[str, Provider], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = asyncio.Lock()

    async def _get_lock(self, unit_id: str, provider: Provider) -> asyncio.Lock:
        """(unit_id, provider) ごとのロックを取得"""
        async with self._locks_guard:
            key = (unit_id, provider)
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def _load_record(self, unit_id: str, provider: Provider) -> IntegrationRecord:
        record = await self._repository.get(unit_id, provider)
        if record is None or record.status == IntegrationStatus.DISCONNECTED:
            raise NoIntegrationFound(f"{provider.value} integration not connected for unit {unit_id}")
        if not record.access_token_ciphertext:
            raise NoIntegrationFound(f"No access token stored for {unit_id}/{provider.value}")
        return record

    def _decrypt(self, ciphertext: str, label: str, record: IntegrationRecord) -> str:
        try:
            return self._vault.decrypt(ciphertext)
        except DecryptionError as e:
            raise DecryptFailed(
                f"Failed to decrypt {label} for {record.unit_id}/{record.provider.value}: {e.message}"
            ) from e

    def _is_fresh(self, record: IntegrationRecord) -> bool:
        if record.token_expires_at is None:
            # 有効期限が不明な場合は安全のためリフレッシュ
            return False
        remaining = record.token_expires_at - datetime.now(timezone.utc)
        return remaining > self._threshold

    async def ensure_valid_access_token(
        self,
        unit_id: str,
        provider: Provider,
        force_refresh: bool = False,
        stale_token: Optional[str] = None,
    ) -> str:
        """有効なアクセストークンを取得（必要ならリフレッシュ）

        Args:
            unit_id: ユニットID
            provider: プロバイダー
            force_refresh: 401 を受けた場合など、期限に関わらず更新する
            stale_token: 401 を返したトークン（他の呼び出しで更新済みなら再利用する）

        Returns:
            平文のアクセストークン（1回の呼び出しでのみ使用すること）

        Raises:
            NoIntegrationFound, RefreshTokenMissing, RefreshFailed, DecryptFailed
        """
        record = await self._load_record(unit_id, provider)

        if not force_refresh and self._is_fresh(record):
            return self._decrypt(record.access_token_ciphertext, "access token", record)

        lock = await self._get_lock(unit_id, provider)
        async with lock:
            # ロック待ちの間に他の呼び出しが更新した可能性があるため再読み込み
            record = await self._load_record(unit_id, provider)
            current_token = self._decrypt(record.access_token_ciphertext, "access token", record)

            if not force_refresh and self._is_fresh(record):
                return current_token
            if force_refresh and stale_token is not None and current_token != stale_token:
                logger.info(f"Token for {unit_id}/{provider.value} already refreshed by another caller")
                return current_token

            return await self._refresh(record)

    async def _refresh(self, record: IntegrationRecord) -> str:
        """リフレッシュトークンで更新して保存（ロック保持中に呼ぶこと）"""
        if not record.refresh_token_ciphertext:
            raise RefreshTokenMissing(
                f"No refresh token stored for {record.unit_id}/{record.provider.value}"
            )

        refresh_token = self._decrypt(record.refresh_token_ciphertext, "refresh token", record)
        endpoints = get_endpoints(record.provider)
        client_config = self._client_config(record.provider)

        data = {
            "client_id": client_config.client_id,
            "client_secret": client_config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if endpoints.scope_on_refresh:
            data["scope"] = endpoints.scope

        logger.info(f"Refreshing access token for {record.unit_id}/{record.provider.value}...")
        try:
            response = await post_token_request(self._http_client, endpoints, data)
        except NetworkError as e:
            raise RefreshFailed(f"Token refresh request failed: {e.message}") from e

        if not response.is_success:
            await self._handle_refresh_failure(record, response)

        try:
            new_token: TokenResponse = response.json()
        except ValueError as e:
            raise RefreshFailed("Token endpoint returned invalid JSON", status=response.status_code) from e

        access_token = new_token.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RefreshFailed("Token response is missing access_token", status=response.status_code)

        new_expires_at = expires_at_from(new_token)
        fields: dict[str, Any] = {
            "access_token": self._vault.encrypt(access_token),
            "token_expires_at": new_expires_at.isoformat(),
        }
        # refresh_token はプロバイダーが再発行した場合のみ更新
        if new_token.get("refresh_token"):
            fields["refresh_token"] = self._vault.encrypt(new_token["refresh_token"])

        await self._repository.update(record.unit_id, record.provider, fields)

        logger.info(f"Token refreshed (expires: {new_expires_at.isoformat()})")
        return access_token

    async def _handle_refresh_failure(self, record: IntegrationRecord, response: httpx.Response) -> None:
        error_code = token_error_code(response)
        unrecoverable = error_code in UNRECOVERABLE_ERRORS

        logger.error(
            f"Token refresh failed for {record.unit_id}/{record.provider.value}: "
            f"{response.status_code} - {redact(response.text)}"
        )

        if unrecoverable:
            await self._repository.update(
                record.unit_id,
                record.provider,
                {"status": IntegrationStatus.ERROR.value},
            )
            logger.warning(f"Integration {record.unit_id}/{record.provider.value} moved to error state")

        raise RefreshFailed(
            f"Token refresh error: {response.status_code} ({error_code or 'unknown'})",
            status=response.status_code,
            unrecoverable=unrecoverable,
        )

    def _client_config(self, provider: Provider) -> OAuthClientConfig:
        client_config = self._settings.oauth_client(provider)
        if client_config is None:
            raise ConfigurationError(f"{provider.value} OAuth client is not configured")
        return client_config
