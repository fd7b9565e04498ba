"""OAuth 認可コードフロー

1. begin_authorization: 認可URLを生成（state に unitId / provider / issuedAt を署名付きで埋め込む）
2. プロバイダーが redirect_uri に code と state を返す
3. complete_authorization: state を検証してコードをトークンに交換し、暗号化して保存

state は保存しない。5分を過ぎたものは ExpiredState。
"""

import base64
import binascii
import json
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx

from integrations.db.repository import IntegrationRepository
from integrations.lib.config import OAuthClientConfig, Settings
from integrations.lib.errors import (
    ConfigurationError,
    ExpiredState,
    InvalidState,
    OAuthDenied,
    RefreshFailed,
    RefreshTokenMissing,
)
from integrations.lib.logger import redact, setup_logger
from integrations.lib.vault import CredentialVault
from integrations.services.models import (
    IntegrationRecord,
    IntegrationStatus,
    OAuthState,
    Provider,
    utcnow,
)
from integrations.services.providers import get_endpoints
from integrations.services.token_manager import (
    TokenResponse,
    expires_at_from,
    post_token_request,
    token_error_code,
)

logger = setup_logger(__name__)

STATE_TTL = timedelta(minutes=5)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class OAuthFlowController:
    """認可URLの生成とコールバック処理"""

    def __init__(
        self,
        settings: Settings,
        vault: CredentialVault,
        repository: IntegrationRepository,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._settings = settings
        self._vault = vault
        self._repository = repository
        self._http_client = http_client

    def _client_config(self, provider: Provider) -> OAuthClientConfig:
        client_config = self._settings.oauth_client(provider)
        if client_config is None:
            raise ConfigurationError(
                f"{provider.value} OAuth client is not configured",
                user_message=f"{get_endpoints(provider).display_name} integration is not configured.",
            )
        return client_config

    # =========================================================================
    # State
    # =========================================================================

    def encode_state(self, state: OAuthState) -> str:
        """state を base64url(JSON) + "." + base64url(HMAC) に符号化"""
        payload = json.dumps(
            {
                "unitId": state.unit_id,
                "provider": state.provider.value,
                "issuedAt": int(state.issued_at.timestamp() * 1000),
            },
            separators=(",", ":"),
        ).encode("utf-8")
        return f"{_b64url(payload)}.{_b64url(self._vault.sign(payload))}"

    def decode_state(self, encoded: str, now: Optional[datetime] = None) -> OAuthState:
        """state を検証して復元

        Raises:
            InvalidState: 形式不正・署名不一致
            ExpiredState: 発行から5分以上経過
        """
        payload_part, _, signature_part = (encoded or "").partition(".")
        if not payload_part or not signature_part:
            raise InvalidState("OAuth state is malformed")

        try:
            payload = _b64url_decode(payload_part)
            signature = _b64url_decode(signature_part)
        except (binascii.Error, ValueError):
            raise InvalidState("OAuth state is not valid base64") from None

        if not self._vault.verify(payload, signature):
            raise InvalidState("OAuth state signature mismatch")

        try:
            data = json.loads(payload)
            state = OAuthState(
                unit_id=str(data["unitId"]),
                provider=Provider(data["provider"]),
                issued_at=datetime.fromtimestamp(int(data["issuedAt"]) / 1000, tz=timezone.utc),
            )
        except (ValueError, KeyError, TypeError):
            raise InvalidState("OAuth state payload is invalid") from None

        if not state.unit_id:
            raise InvalidState("OAuth state has no unit")

        current = now or utcnow()
        if current - state.issued_at > STATE_TTL:
            raise ExpiredState(f"OAuth state issued at {state.issued_at.isoformat()} has expired")

        return state

    # =========================================================================
    # Flow
    # =========================================================================

    def begin_authorization(self, unit_id: str, provider: Provider) -> str:
        """認可URLを生成

        Args:
            unit_id: ユニットID
            provider: プロバイダー

        Returns:
            リダイレクト先の認可URL

        Raises:
            ConfigurationError: プロバイダーのOAuthクライアントが未設定
        """
        endpoints = get_endpoints(provider)
        client_config = self._client_config(provider)
        state = self.encode_state(OAuthState(unit_id=unit_id, provider=provider, issued_at=utcnow()))

        params = {
            "client_id": client_config.client_id,
            "response_type": "code",
            "redirect_uri": client_config.redirect_uri,
            "scope": endpoints.scope,
            "state": state,
            "prompt": "consent",
            **endpoints.extra_auth_params,
        }
        logger.info(f"Starting {provider.value} authorization for unit {unit_id}")
        return f"{endpoints.auth_url}?{urlencode(params)}"

    async def complete_authorization(
        self,
        code: Optional[str],
        state: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        expected_provider: Optional[Provider] = None,
    ) -> IntegrationRecord:
        """コールバックを処理してトークンを保存

        Args:
            code: 認可コード
            state: begin_authorization で発行した state
            error: プロバイダーが返したエラー
            error_description: エラーの説明
            expected_provider: コールバックURLが示すプロバイダー（state と一致しなければ InvalidState）

        Returns:
            保存した連携レコード（status=connected）

        Raises:
            InvalidState, ExpiredState, OAuthDenied, RefreshFailed, RefreshTokenMissing
        """
        oauth_state = self.decode_state(state)
        unit_id = oauth_state.unit_id
        provider = oauth_state.provider
        if expected_provider is not None and provider != expected_provider:
            raise InvalidState(
                f"State was issued for {provider.value} but the callback is for {expected_provider.value}"
            )

        if error:
            logger.warning(
                f"{provider.value} authorization denied for unit {unit_id}: "
                f"{error} - {redact(error_description or '')}"
            )
            raise OAuthDenied(f"Provider returned error: {error}")
        if not code:
            raise InvalidState("Authorization code is missing")

        endpoints = get_endpoints(provider)
        client_config = self._client_config(provider)

        response = await post_token_request(
            self._http_client,
            endpoints,
            {
                "client_id": client_config.client_id,
                "client_secret": client_config.client_secret,
                "code": code,
                "redirect_uri": client_config.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        if not response.is_success:
            error_code = token_error_code(response)
            logger.error(f"Code exchange failed: {response.status_code} - {redact(response.text)}")
            raise RefreshFailed(
                f"Authorization code exchange failed: {response.status_code} ({error_code or 'unknown'})",
                status=response.status_code,
            )

        try:
            tokens: TokenResponse = response.json()
        except ValueError as e:
            raise RefreshFailed("Token endpoint returned invalid JSON", status=response.status_code) from e

        access_token = tokens.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RefreshFailed("Token response is missing access_token", status=response.status_code)

        existing = await self._repository.get(unit_id, provider)
        refresh_token_ciphertext = self._resolve_refresh_token(tokens, existing)

        record = IntegrationRecord(
            unit_id=unit_id,
            provider=provider,
            access_token_ciphertext=self._vault.encrypt(access_token),
            refresh_token_ciphertext=refresh_token_ciphertext,
            token_expires_at=expires_at_from(tokens),
            timezone=existing.timezone if existing else "UTC",
            status=IntegrationStatus.CONNECTED,
            metadata={
                **(existing.metadata if existing else {}),
                "connected_at": utcnow().isoformat(),
                "scope": tokens.get("scope") or endpoints.scope,
            },
        )
        saved = await self._repository.upsert(record)
        logger.info(f"{provider.value} connected for unit {unit_id}")
        return saved

    def _resolve_refresh_token(
        self,
        tokens: TokenResponse,
        existing: Optional[IntegrationRecord],
    ) -> str:
        """保存するリフレッシュトークン（暗号文）を決定

        再同意でリフレッシュトークンが返らない場合は既存のものを引き継ぐ。
        """
        new_refresh_token = tokens.get("refresh_token")
        if new_refresh_token:
            return self._vault.encrypt(new_refresh_token)
        if existing is not None and existing.refresh_token_ciphertext:
            logger.info(f"No refresh token returned, keeping stored one for {existing.unit_id}")
            return existing.refresh_token_ciphertext
        raise RefreshTokenMissing(
            "Token response has no refresh_token and none is stored",
            user_message="The provider did not grant offline access. Please connect again and approve all permissions.",
        )
