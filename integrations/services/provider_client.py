"""プロバイダーAPI共通のHTTP実行

全プロバイダー（Microsoft Graph / Google Calendar / Google Sheets）はこのクライアント経由で呼び出す。
再試行ポリシー:
    - 429: Retry-After（無ければ5秒、上限60秒）待って再試行。最大3回まで再試行し、超えたら RateLimitExceeded
    - 401: 強制リフレッシュして1回だけ再試行。再度 401 なら AuthenticationFailed
    - 5xx / 通信失敗: GET のみ指数バックオフ（ジッター付き、上限15秒）で最大2回再試行
      POST / PATCH / DELETE は重複作成を避けるため再試行しない
"""

import asyncio
import math
import random
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from integrations.lib.errors import (
    AuthenticationFailed,
    NetworkError,
    ProviderError,
    RateLimitExceeded,
)
from integrations.lib.logger import redact, setup_logger
from integrations.services.models import Provider
from integrations.services.providers import get_endpoints
from integrations.services.token_manager import TokenLifecycleManager

logger = setup_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 5.0
MAX_RETRY_AFTER_SECONDS = 60.0
MAX_RATE_LIMIT_RETRIES = 3
MAX_IDEMPOTENT_RETRIES = 2
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 15.0
IDEMPOTENT_METHODS = {"GET", "HEAD"}


@dataclass
class ProviderRequest:
    """プロバイダーAPIへのリクエスト

    path が "http" で始まる場合は絶対URLとして扱い、それ以外は api_base に連結する。
    """
    method: str
    path: str
    params: Optional[dict[str, Any]] = None
    json: Optional[Any] = None
    headers: dict[str, str] = field(default_factory=dict)

    def url(self, api_base: str) -> str:
        if self.path.startswith("http"):
            return self.path
        return f"{api_base}{self.path}"


def parse_retry_after(response: httpx.Response) -> float:
    """レートリミットレスポンスから待機時間を取得

    数値でない・有限でない値はデフォルト値、大きすぎる値は MAX_RETRY_AFTER_SECONDS に丸める。
    """
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return DEFAULT_RETRY_AFTER_SECONDS

    try:
        seconds = float(retry_after)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
    if not math.isfinite(seconds):
        return DEFAULT_RETRY_AFTER_SECONDS
    return min(max(seconds, 0.0), MAX_RETRY_AFTER_SECONDS)


def backoff_delay(attempt: int) -> float:
    """指数バックオフ（フルジッター、上限 BACKOFF_MAX_SECONDS）"""
    ceiling = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** attempt))
    return random.uniform(ceiling / 2, ceiling)


def _error_body(response: httpx.Response) -> Any:
    try:
        payload = response.json()
    except ValueError:
        return redact(response.text)
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        message = payload["error"].get("message")
        if isinstance(message, str):
            return redact(message)
    return payload


class ProviderClient:
    """認証付きHTTP実行（再試行・レートリミット対応）"""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._token_manager = token_manager
        self._http_client = http_client

    async def execute(
        self,
        unit_id: str,
        provider: Provider,
        request: ProviderRequest,
    ) -> httpx.Response:
        """リクエストを実行

        Args:
            unit_id: ユニットID
            provider: プロバイダー
            request: リクエスト内容

        Returns:
            2xx レスポンス

        Raises:
            RateLimitExceeded, AuthenticationFailed, ProviderError, NetworkError
            （トークン取得時の例外はそのまま伝播）
        """
        endpoints = get_endpoints(provider)
        url = request.url(endpoints.api_base)
        method = request.method.upper()
        idempotent = method in IDEMPOTENT_METHODS

        access_token = await self._token_manager.ensure_valid_access_token(unit_id, provider)

        attempts = 0
        rate_limit_retries = 0
        auth_retried = False
        transient_retries = 0

        while True:
            attempts += 1
            headers = {
                **request.headers,
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            }

            try:
                response = await self._http_client.request(
                    method,
                    url,
                    params=request.params,
                    json=request.json,
                    headers=headers,
                )
            except httpx.TransportError as e:
                if idempotent and transient_retries < MAX_IDEMPOTENT_RETRIES:
                    delay = backoff_delay(transient_retries)
                    transient_retries += 1
                    logger.warning(f"Network error ({type(e).__name__}) on {method} {request.path}. Retrying in {delay:.1f}s...")
                    await asyncio.sleep(delay)
                    continue
                raise NetworkError(
                    f"{endpoints.display_name} request failed: {type(e).__name__}",
                    attempts=attempts,
                ) from e

            if response.is_success:
                return response

            if response.status_code == 429:
                wait_seconds = parse_retry_after(response)
                if rate_limit_retries >= MAX_RATE_LIMIT_RETRIES:
                    raise RateLimitExceeded(
                        f"{endpoints.display_name} rate limit exceeded after {attempts} attempts",
                        attempts=attempts,
                        retry_after=wait_seconds,
                    )
                rate_limit_retries += 1
                logger.warning(f"Rate limited (429). Waiting {wait_seconds}s... ({rate_limit_retries}/{MAX_RATE_LIMIT_RETRIES})")
                await asyncio.sleep(wait_seconds)
                continue

            if response.status_code == 401:
                if auth_retried:
                    raise AuthenticationFailed(
                        f"{endpoints.display_name} rejected refreshed credentials for unit {unit_id}"
                    )
                auth_retried = True
                logger.warning("Token rejected (401), refreshing...")
                access_token = await self._token_manager.ensure_valid_access_token(
                    unit_id,
                    provider,
                    force_refresh=True,
                    stale_token=access_token,
                )
                continue

            if 500 <= response.status_code < 600 and idempotent and transient_retries < MAX_IDEMPOTENT_RETRIES:
                delay = backoff_delay(transient_retries)
                transient_retries += 1
                logger.warning(f"Server error ({response.status_code}). Retrying in {delay:.1f}s...")
                await asyncio.sleep(delay)
                continue

            body = _error_body(response)
            logger.error(f"{endpoints.display_name} API error: {response.status_code} {method} {request.path} - {body}")
            raise ProviderError(response.status_code, body, attempts=attempts)

    async def execute_json(
        self,
        unit_id: str,
        provider: Provider,
        request: ProviderRequest,
    ) -> Any:
        """リクエストを実行して JSON を返す（204 などボディが無い場合は None）"""
        response = await self.execute(unit_id, provider, request)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()
