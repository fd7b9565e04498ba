"""OAuthトークンの AES-GCM 暗号化・復号

保存形式:
    "v1." + base64url( nonce(12バイト) + ciphertext )
    平文は {"token": ..., "iat": 発行時刻, "exp": 有効期限} の JSON。
    有効期限は発行から1年。

鍵は INTEGRATION_ENCRYPTION_KEY（base64 エンコードされた32バイト）。
デフォルト鍵へのフォールバックは行わない。
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
import time
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from integrations.lib.errors import DecryptionError, EncryptionError


FORMAT_PREFIX = "v1."
NONCE_SIZE = 12  # 96 bits
TAG_SIZE = 16
TOKEN_LIFETIME_SECONDS = 365 * 24 * 60 * 60
_AAD = b"crm-integration-token:v1"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def parse_key(key_b64: Optional[str]) -> bytes:
    """設定値から32バイトの暗号化キーを取り出す

    Raises:
        EncryptionError: キー未設定、または長さ・形式が不正
    """
    if not key_b64:
        raise EncryptionError("INTEGRATION_ENCRYPTION_KEY environment variable is required")

    try:
        key_bytes = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncryptionError("INTEGRATION_ENCRYPTION_KEY must be base64 encoded") from exc

    if len(key_bytes) != 32:
        raise EncryptionError("INTEGRATION_ENCRYPTION_KEY must be 32 bytes (256 bits)")
    return key_bytes


def generate_key() -> str:
    """新しい暗号化キー（base64）を生成"""
    return base64.b64encode(os.urandom(32)).decode("ascii")


class CredentialVault:
    """トークンの暗号化・復号を担当

    プロセス全体で1つの鍵を使う。インスタンスは IntegrationContext が起動時に生成する。
    """

    def __init__(self, key_b64: Optional[str]) -> None:
        self._key = parse_key(key_b64)
        self._aesgcm = AESGCM(self._key)

    def encrypt(self, plaintext: str, now: Optional[float] = None) -> str:
        """トークンを暗号化

        Args:
            plaintext: 平文トークン（空文字不可）
            now: 発行時刻（UNIX秒、テスト用）

        Returns:
            暗号文文字列
        """
        if not isinstance(plaintext, str) or not plaintext:
            raise EncryptionError("Refusing to encrypt an empty token")

        issued_at = int(now if now is not None else time.time())
        payload = json.dumps(
            {"token": plaintext, "iat": issued_at, "exp": issued_at + TOKEN_LIFETIME_SECONDS}
        ).encode("utf-8")

        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, payload, _AAD)
        return FORMAT_PREFIX + _b64url_encode(nonce + sealed)

    def decrypt(self, ciphertext: str, now: Optional[float] = None) -> str:
        """暗号文を検証して復号

        Args:
            ciphertext: encrypt() の出力
            now: 現在時刻（UNIX秒、テスト用）

        Returns:
            平文トークン

        Raises:
            DecryptionError: 改ざん・切り詰め・形式不正・期限切れ
        """
        if not isinstance(ciphertext, str) or not ciphertext.startswith(FORMAT_PREFIX):
            raise DecryptionError("Malformed token ciphertext")

        try:
            data = _b64url_decode(ciphertext[len(FORMAT_PREFIX):])
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Malformed token ciphertext") from exc

        if len(data) <= NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Truncated token ciphertext")

        nonce, sealed = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            payload_bytes = self._aesgcm.decrypt(nonce, sealed, _AAD)
        except InvalidTag:
            raise DecryptionError("Token integrity check failed") from None

        try:
            payload = json.loads(payload_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise DecryptionError("Invalid token payload") from None

        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str):
            raise DecryptionError("Invalid token payload")

        current = now if now is not None else time.time()
        expires_at = payload.get("exp")
        if not isinstance(expires_at, int) or current >= expires_at:
            raise DecryptionError("Encrypted token has expired")

        return token

    def is_valid(self, ciphertext: str) -> bool:
        """暗号文が復号可能かどうか"""
        try:
            self.decrypt(ciphertext)
        except DecryptionError:
            return False
        return True

    def sign(self, message: bytes) -> bytes:
        """OAuth state 用の HMAC-SHA256 署名"""
        state_key = hashlib.sha256(self._key + b"oauth-state").digest()
        return hmac.new(state_key, message, hashlib.sha256).digest()

    def verify(self, message: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(self.sign(message), signature)
