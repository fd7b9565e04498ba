"""Supabase データベース接続"""

from typing import Optional

from supabase import Client, create_client

from integrations.lib.errors import ConfigurationError


def create_supabase_client(url: Optional[str], key: Optional[str]) -> Client:
    """Supabaseクライアントを生成

    IntegrationContext が起動時に1度だけ呼び出す。

    Raises:
        ConfigurationError: SUPABASE_URL または SUPABASE_SERVICE_ROLE_KEY 未設定
    """
    if not url or not key:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")

    return create_client(url, key)
