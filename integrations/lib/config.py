"""環境変数からの設定読み込み

必要な環境変数:
    - INTEGRATION_ENCRYPTION_KEY (base64, 32バイト)
    - SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY
    - DIRECT_DATABASE_URL (同期ログ書き込み用)
    - MICROSOFT_CLIENT_ID / MICROSOFT_CLIENT_SECRET / MICROSOFT_REDIRECT_URI
    - GOOGLE_CALENDAR_CLIENT_ID / _CLIENT_SECRET / _REDIRECT_URI
    - GOOGLE_SHEETS_CLIENT_ID / _CLIENT_SECRET / _REDIRECT_URI
      （Google系は GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET で共通化可）
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from integrations.services.models import Provider


@dataclass(frozen=True)
class OAuthClientConfig:
    """プロバイダーごとのOAuthクライアント設定"""
    client_id: str
    client_secret: str
    redirect_uri: str


@dataclass(frozen=True)
class Settings:
    encryption_key: Optional[str]
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    database_url: Optional[str] = None
    log_level: str = "INFO"
    request_timeout_seconds: float = 10.0
    oauth_clients: dict[Provider, OAuthClientConfig] = field(default_factory=dict)

    def oauth_client(self, provider: Provider) -> Optional[OAuthClientConfig]:
        return self.oauth_clients.get(provider)


_DEFAULT_REDIRECT_URIS = {
    Provider.MS365: "http://localhost:5174/oauth/callback/ms365",
    Provider.GOOGLE_CALENDAR: "http://localhost:5174/oauth/callback/google_calendar",
    Provider.GOOGLE_SHEETS: "http://localhost:5174/oauth/callback/google_sheets",
}

_ENV_PREFIXES = {
    Provider.MS365: ("MICROSOFT", None),
    Provider.GOOGLE_CALENDAR: ("GOOGLE_CALENDAR", "GOOGLE"),
    Provider.GOOGLE_SHEETS: ("GOOGLE_SHEETS", "GOOGLE"),
}


def _oauth_client_from_env(
    env: Mapping[str, str], provider: Provider
) -> Optional[OAuthClientConfig]:
    prefix, fallback = _ENV_PREFIXES[provider]

    def lookup(suffix: str) -> Optional[str]:
        value = env.get(f"{prefix}_{suffix}")
        if not value and fallback:
            value = env.get(f"{fallback}_{suffix}")
        return value or None

    client_id = lookup("CLIENT_ID")
    client_secret = lookup("CLIENT_SECRET")
    if not client_id or not client_secret:
        return None

    redirect_uri = env.get(f"{prefix}_REDIRECT_URI") or _DEFAULT_REDIRECT_URIS[provider]
    return OAuthClientConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """環境変数から設定を読み込み

    暗号化キーの検証は CredentialVault 生成時に行う（起動時に失敗させる）。

    Args:
        env: 環境変数（省略時は os.environ、.env も読み込む）

    Returns:
        設定
    """
    if env is None:
        # ローカル開発時のみ .env を読み込む
        from dotenv import load_dotenv
        load_dotenv()
        env = os.environ

    oauth_clients = {}
    for provider in Provider:
        client = _oauth_client_from_env(env, provider)
        if client is not None:
            oauth_clients[provider] = client

    return Settings(
        encryption_key=env.get("INTEGRATION_ENCRYPTION_KEY"),
        supabase_url=env.get("SUPABASE_URL"),
        supabase_key=env.get("SUPABASE_SERVICE_ROLE_KEY"),
        database_url=env.get("DIRECT_DATABASE_URL"),
        log_level=env.get("LOG_LEVEL", "INFO"),
        request_timeout_seconds=float(env.get("PROVIDER_REQUEST_TIMEOUT", "10")),
        oauth_clients=oauth_clients,
    )
