"""integrations テーブルへのアクセス

(unit_id, provider) 単位で連携レコードを取得・作成・更新・削除する。
トークン列には CredentialVault の暗号文のみを書き込む（暗号化は呼び出し側の責務）。

更新は呼び出し元が所有する列だけを渡すこと:
    - TokenLifecycleManager: access_token / refresh_token / token_expires_at
    - ConnectionService: status / timezone
    - OAuthFlowController: metadata
    - CalendarSyncEngine: last_sync_at / last_sync_count / last_sync_errors

supabase クライアントは同期I/Oのため、各メソッドは asyncio.to_thread で実行する。
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client

from integrations.lib.logger import setup_logger
from integrations.services.models import IntegrationRecord, Provider

logger = setup_logger(__name__)

TABLE_NAME = "integrations"


class IntegrationRepository:
    """Supabase 上の integrations テーブル"""

    def __init__(self, client: Client) -> None:
        self._client = client

    # =========================================================================
    # Blocking calls (asyncio.to_thread で実行)
    # =========================================================================

    def _select(self, unit_id: str, provider: Provider) -> list[dict[str, Any]]:
        result = (
            self._client.table(TABLE_NAME)
            .select("*")
            .eq("unit_id", unit_id)
            .eq("provider", provider.value)
            .limit(1)
            .execute()
        )
        return result.data or []

    def _upsert(self, row: dict[str, Any]) -> list[dict[str, Any]]:
        result = (
            self._client.table(TABLE_NAME)
            .upsert(row, on_conflict="unit_id,provider")
            .execute()
        )
        return result.data or []

    def _update(self, unit_id: str, provider: Provider, update_data: dict[str, Any]) -> list[dict[str, Any]]:
        result = (
            self._client.table(TABLE_NAME)
            .update(update_data)
            .eq("unit_id", unit_id)
            .eq("provider", provider.value)
            .execute()
        )
        return result.data or []

    def _delete(self, unit_id: str, provider: Provider) -> None:
        self._client.table(TABLE_NAME).delete().eq("unit_id", unit_id).eq(
            "provider", provider.value
        ).execute()

    # =========================================================================
    # Public API
    # =========================================================================

    async def get(self, unit_id: str, provider: Provider) -> Optional[IntegrationRecord]:
        """連携レコードを取得（存在しなければ None）"""
        rows = await asyncio.to_thread(self._select, unit_id, provider)
        if not rows:
            return None
        return IntegrationRecord.from_row(rows[0])

    async def upsert(self, record: IntegrationRecord) -> IntegrationRecord:
        """(unit_id, provider) をキーに作成または置換"""
        row = record.to_row()
        row["updated_at"] = datetime.now(timezone.utc).isoformat()

        rows = await asyncio.to_thread(self._upsert, row)
        if not rows:
            raise RuntimeError(f"Upsert returned no row for {record.unit_id}/{record.provider.value}")

        logger.info(f"Upserted integration {record.unit_id}/{record.provider.value} ({record.status.value})")
        return IntegrationRecord.from_row(rows[0])

    async def update(
        self,
        unit_id: str,
        provider: Provider,
        fields: dict[str, Any],
    ) -> Optional[IntegrationRecord]:
        """指定した列のみ更新

        Args:
            unit_id: ユニットID
            provider: プロバイダー
            fields: 更新する列（DB列名）

        Returns:
            更新後のレコード（対象が無ければ None）
        """
        update_data = dict(fields)
        update_data["updated_at"] = datetime.now(timezone.utc).isoformat()

        rows = await asyncio.to_thread(self._update, unit_id, provider, update_data)
        if not rows:
            return None
        return IntegrationRecord.from_row(rows[0])

    async def delete(self, unit_id: str, provider: Provider) -> None:
        await asyncio.to_thread(self._delete, unit_id, provider)
