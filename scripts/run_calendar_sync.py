#!/usr/bin/env python3
"""カレンダー同期の手動実行スクリプト

指定ユニットの外部カレンダーを同期し、calendar_logs に記録する。
一部のイベントで失敗した場合は終了コード 1 を返す。

必要な環境変数:
  - INTEGRATION_ENCRYPTION_KEY
  - SUPABASE_URL
  - SUPABASE_SERVICE_ROLE_KEY
  - DIRECT_DATABASE_URL
  - MICROSOFT_CLIENT_ID / MICROSOFT_CLIENT_SECRET（ms365 の場合）
  - GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET（google_calendar の場合）

使用方法:
  python scripts/run_calendar_sync.py UNIT_ID [--provider ms365|google_calendar]
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv

# .envファイルを読み込む
load_dotenv()

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from integrations.context import IntegrationContext
from integrations.lib.errors import IntegrationError, PartialSyncFailure
from integrations.services.models import Provider


async def run(unit_id: str, provider: Provider) -> int:
    context = IntegrationContext.from_settings()
    try:
        result = await context.calendar.sync(unit_id, provider)
        print(f"Synced: {result.synced_count} (new: {result.inserted_count})")
        result.raise_for_errors()
    except PartialSyncFailure as e:
        print(f"Failed events: {len(e.errors)}")
        for error in e.errors:
            print(f"  - {error['eventId']}: {error['error']}")
        return 1
    except IntegrationError as e:
        print(f"Error: {e.code} - {e.message}")
        return 1
    finally:
        await context.aclose()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync external calendar events into calendar_logs")
    parser.add_argument("unit_id", help="Unit ID")
    parser.add_argument(
        "--provider",
        choices=[Provider.MS365.value, Provider.GOOGLE_CALENDAR.value],
        default=Provider.MS365.value,
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.unit_id, Provider(args.provider))))


if __name__ == "__main__":
    main()
