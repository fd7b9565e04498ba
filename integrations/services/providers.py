"""プロバイダーごとのOAuth/APIエンドポイント定義"""

from dataclasses import dataclass, field
from typing import Optional

from integrations.services.models import Provider


MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPE = "https://graph.microsoft.com/Calendars.ReadWrite offline_access"
GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
SHEETS_API_BASE = "https://sheets.googleapis.com/v4"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"


@dataclass(frozen=True)
class ProviderEndpoints:
    provider: Provider
    display_name: str
    auth_url: str
    token_url: str
    api_base: str
    scopes: tuple[str, ...]
    revoke_url: Optional[str] = None
    # 認可URLに追加するパラメータ
    extra_auth_params: dict[str, str] = field(default_factory=dict)
    # リフレッシュ時にも scope を送るか（Microsoft identity platform は必須）
    scope_on_refresh: bool = False

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


PROVIDERS: dict[Provider, ProviderEndpoints] = {
    Provider.MS365: ProviderEndpoints(
        provider=Provider.MS365,
        display_name="Microsoft 365",
        auth_url=MICROSOFT_AUTH_URL,
        token_url=MICROSOFT_TOKEN_URL,
        api_base=GRAPH_API_BASE,
        scopes=tuple(MICROSOFT_SCOPE.split()),
        extra_auth_params={"response_mode": "query"},
        scope_on_refresh=True,
    ),
    Provider.GOOGLE_CALENDAR: ProviderEndpoints(
        provider=Provider.GOOGLE_CALENDAR,
        display_name="Google Calendar",
        auth_url=GOOGLE_AUTH_URL,
        token_url=GOOGLE_TOKEN_URL,
        api_base=CALENDAR_API_BASE,
        scopes=(
            "https://www.googleapis.com/auth/calendar",
            "https://www.googleapis.com/auth/calendar.events",
        ),
        revoke_url=GOOGLE_REVOKE_URL,
        extra_auth_params={"access_type": "offline"},
    ),
    Provider.GOOGLE_SHEETS: ProviderEndpoints(
        provider=Provider.GOOGLE_SHEETS,
        display_name="Google Sheets",
        auth_url=GOOGLE_AUTH_URL,
        token_url=GOOGLE_TOKEN_URL,
        api_base=SHEETS_API_BASE,
        scopes=(
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive.readonly",
        ),
        revoke_url=GOOGLE_REVOKE_URL,
        extra_auth_params={"access_type": "offline"},
    ),
}


def get_endpoints(provider: Provider) -> ProviderEndpoints:
    return PROVIDERS[provider]
