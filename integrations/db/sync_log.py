"""calendar_logs テーブルへの書き込み

同期で観測したイベントのアクションを1件ずつ記録する。
(unit_id, event_id, timestamp) の一意制約により、同じスナップショットの再書き込みは何もしない。
書き込みは1件ごとにコミットする（バッチ全体のトランザクションにはしない）。

psycopg2 は同期I/Oのため asyncio.to_thread で実行し、接続はロックで直列化する。
"""

import asyncio
import json
import threading
from typing import Any, Optional

import psycopg2

from integrations.lib.errors import ConfigurationError
from integrations.lib.logger import setup_logger
from integrations.services.models import SyncLogEntry

logger = setup_logger(__name__)

INSERT_SQL = """
    INSERT INTO calendar_logs (unit_id, event_id, action, user_email, event_data, timestamp)
    VALUES (%s, %s, %s, %s, %s, %s)
    ON CONFLICT (unit_id, event_id, timestamp) DO NOTHING
    RETURNING id
"""


class SyncLogStore:
    """直接DB接続による同期ログストア"""

    def __init__(self, database_url: Optional[str]) -> None:
        if not database_url:
            raise ConfigurationError("DIRECT_DATABASE_URL environment variable is required")
        self._database_url = database_url
        self._conn: Any = None
        self._lock = threading.Lock()

    def _get_connection(self):
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self._database_url)
        return self._conn

    def _insert(self, entry: SyncLogEntry) -> bool:
        with self._lock:
            conn = self._get_connection()
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        INSERT_SQL,
                        (
                            entry.unit_id,
                            entry.event_id,
                            entry.action.value,
                            entry.user_email,
                            json.dumps(entry.event_data_snapshot, ensure_ascii=False),
                            entry.timestamp,
                        ),
                    )
                    inserted = cur.fetchone() is not None
                conn.commit()
            except psycopg2.Error:
                conn.rollback()
                raise
            return inserted

    async def insert(self, entry: SyncLogEntry) -> bool:
        """ログを1件書き込み

        Returns:
            新規に書き込まれた場合 True、既存（重複）の場合 False
        """
        return await asyncio.to_thread(self._insert, entry)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
            self._conn = None
