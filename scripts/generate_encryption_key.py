#!/usr/bin/env python3
"""INTEGRATION_ENCRYPTION_KEY 生成スクリプト

AES-256-GCM 用の32バイトのキーを生成し、base64で出力する。
出力された値を .env または実行環境の INTEGRATION_ENCRYPTION_KEY に設定する。

使用方法:
  python scripts/generate_encryption_key.py

注意:
  キーを変更すると既存の暗号化トークンは復号できなくなる（全連携の再接続が必要）。
"""

import os
import sys

# プロジェクトルートをパスに追加
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from integrations.lib.vault import CredentialVault, generate_key


def main() -> None:
    key = generate_key()
    # 生成したキーで暗号化・復号できることを確認
    vault = CredentialVault(key)
    if vault.decrypt(vault.encrypt("check")) != "check":
        sys.exit("Generated key failed round-trip check")

    print(f"INTEGRATION_ENCRYPTION_KEY={key}")


if __name__ == "__main__":
    main()
