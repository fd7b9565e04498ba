"""ロギング設定"""

import logging
import re
import sys
from typing import Optional


_SECRET_PATTERNS = [
    # key=value 形式
    re.compile(r"(?i)\b(client_secret|refresh_token|access_token|code|token)=([^\s&,;]+)"),
    # JSON 形式
    re.compile(r"""(?i)(["'](?:client_secret|refresh_token|access_token|id_token)["']\s*:\s*)(["']).*?\2"""),
    # Authorization ヘッダー
    re.compile(r"(?i)\b(Bearer)\s+([A-Za-z0-9\-._~+/]+=*)"),
]


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """ロガーをセットアップ

    Args:
        name: ロガー名
        level: ログレベル（DEBUG, INFO, WARNING, ERROR）

    Returns:
        設定済みロガー
    """
    logger = logging.getLogger(name)

    if level:
        logger.setLevel(getattr(logging, level.upper()))
    else:
        logger.setLevel(logging.INFO)

    # 既存のハンドラーを削除（重複防止）
    logger.handlers.clear()

    # コンソールハンドラー
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False  # 親ロガーへの伝播を防止

    return logger


def set_log_level(level: str, prefix: str = "integrations") -> None:
    """setup_logger 済みの連携ロガーのレベルを一括変更"""
    for name, logger in logging.root.manager.loggerDict.items():
        if isinstance(logger, logging.Logger) and name.startswith(prefix):
            logger.setLevel(getattr(logging, level.upper()))


def redact(message: str, limit: int = 300) -> str:
    """ログ出力前にトークンらしき値をマスク

    Args:
        message: 元のメッセージ（プロバイダーのエラーボディなど）
        limit: 最大文字数

    Returns:
        マスク済みメッセージ
    """
    redacted = _SECRET_PATTERNS[0].sub(r"\1=[REDACTED]", message)
    redacted = _SECRET_PATTERNS[1].sub(r'\1"[REDACTED]"', redacted)
    redacted = _SECRET_PATTERNS[2].sub(r"\1 [REDACTED]", redacted)
    redacted = " ".join(redacted.split())
    return redacted[:limit]
