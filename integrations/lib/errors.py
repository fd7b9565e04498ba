"""連携サブシステムの例外定義

全ての例外は IntegrationError を継承する。
user_message はエンドユーザーに返す文言、str(exc) はサーバーログ向けの詳細。
詳細にも平文トークン・鍵は含めないこと。
"""

from typing import Any, Optional


GENERIC_UNAVAILABLE = "The integration is temporarily unavailable. Please try again later."


class IntegrationError(Exception):
    """連携処理の基底例外

    Attributes:
        message: サーバーログ向けメッセージ
        user_message: 利用者向けメッセージ
    """

    code = "INTEGRATION_ERROR"
    http_status = 500
    user_message = GENERIC_UNAVAILABLE

    def __init__(self, message: str, user_message: Optional[str] = None) -> None:
        self.message = message
        if user_message is not None:
            self.user_message = user_message
        super().__init__(message)


class ConfigurationError(IntegrationError):
    """必須設定の欠落（プロバイダー未設定など）"""

    code = "NOT_CONFIGURED"
    http_status = 503


class EncryptionError(IntegrationError):
    """暗号化キー不正、または暗号化失敗"""

    code = "ENCRYPTION_ERROR"


class DecryptionError(IntegrationError):
    """改ざん・不正形式・期限切れによる復号失敗"""

    code = "DECRYPTION_ERROR"


class DecryptFailed(DecryptionError):
    """保存済みトークンの復号失敗（トークン管理層）"""

    code = "DECRYPT_FAILED"


class NoIntegrationFound(IntegrationError):
    """連携レコードが存在しない、または切断済み"""

    code = "NOT_CONNECTED"
    http_status = 404
    user_message = "This calendar is not connected. Connect it again to continue."


class RefreshTokenMissing(IntegrationError):
    """リフレッシュトークンが保存されていない"""

    code = "REFRESH_TOKEN_MISSING"
    http_status = 409
    user_message = "The connection needs to be authorized again."


class RefreshFailed(IntegrationError):
    """トークンエンドポイントでの更新失敗

    Attributes:
        status: プロバイダーのHTTPステータス（通信失敗時は None）
        unrecoverable: 再認可しない限り回復しない失敗（invalid_grant 等）
    """

    code = "REFRESH_FAILED"
    http_status = 502

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        unrecoverable: bool = False,
    ) -> None:
        self.status = status
        self.unrecoverable = unrecoverable
        super().__init__(message)


class RateLimitExceeded(IntegrationError):
    """429 が再試行上限を超えて続いた"""

    code = "RATE_LIMITED"
    http_status = 429
    user_message = "The calendar provider is busy. Please try again in a few minutes."

    def __init__(self, message: str, attempts: int, retry_after: Optional[float] = None) -> None:
        self.attempts = attempts
        self.retry_after = retry_after
        super().__init__(message)


class AuthenticationFailed(IntegrationError):
    """強制リフレッシュ後も 401 が返った"""

    code = "AUTHENTICATION_FAILED"
    http_status = 401
    user_message = "The provider rejected our credentials. Please reconnect the integration."


class ProviderError(IntegrationError):
    """プロバイダーAPIが 2xx 以外を返した

    Attributes:
        status: HTTPステータス
        body: レスポンスボディ（マスク済み）
        attempts: 試行回数
    """

    code = "PROVIDER_ERROR"
    http_status = 502

    def __init__(self, status: int, body: Any, attempts: int = 1) -> None:
        self.status = status
        self.body = body
        self.attempts = attempts
        super().__init__(f"Provider API error: {status} - {body}")


class InvalidProviderPayload(IntegrationError):
    """プロバイダーの応答が想定した形式ではない（start/end 欠落など）"""

    code = "INVALID_PROVIDER_RESPONSE"
    http_status = 502


class NetworkError(IntegrationError):
    """DNS・接続・タイムアウトなどの通信失敗"""

    code = "NETWORK_ERROR"
    http_status = 504

    def __init__(self, message: str, attempts: int = 1) -> None:
        self.attempts = attempts
        super().__init__(message)


class InvalidState(IntegrationError):
    """OAuth state が復号できない、または署名が一致しない"""

    code = "INVALID_STATE"
    http_status = 400
    user_message = "The authorization link is invalid. Please start the connection again."


class ExpiredState(IntegrationError):
    """OAuth state の有効期限（5分）切れ"""

    code = "EXPIRED_STATE"
    http_status = 400
    user_message = "The authorization took too long. Please start the connection again."


class OAuthDenied(IntegrationError):
    """プロバイダー側で認可が拒否された"""

    code = "OAUTH_DENIED"
    http_status = 403
    user_message = "Access was not granted. Please approve the requested permissions to connect."


class PolicyViolation(IntegrationError):
    """業務ルール違反（開始15分前以降のキャンセルなど）"""

    code = "POLICY_VIOLATION"
    http_status = 409

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=message)


class PartialSyncFailure(IntegrationError):
    """一部イベントの同期失敗

    Attributes:
        errors: イベント単位のエラー詳細
        synced_count: 成功件数
    """

    code = "PARTIAL_SYNC_FAILURE"
    http_status = 207
    user_message = "Some calendar events could not be synchronized."

    def __init__(self, errors: list[dict[str, str]], synced_count: int) -> None:
        self.errors = errors
        self.synced_count = synced_count
        super().__init__(
            f"Sync finished with {len(errors)} failed event(s) ({synced_count} synced)"
        )
