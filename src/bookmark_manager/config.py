# src/bookmark_manager/config.py

from pathlib import Path
from typing import Any, Dict, Union

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env is at the project root, two levels up from src/bookmark_manager/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    print(f"BookmarkManager: Successfully loaded .env file from: {ENV_FILE_PATH}")
else:
    print(
        f"BookmarkManager: Warning: .env file not found at {ENV_FILE_PATH}. Relying on environment variables."
    )


class Settings(BaseSettings):
    # === Supabase project ===
    SUPABASE_URL: AnyHttpUrl
    SUPABASE_ANON_KEY: str

    # === Public origin of this app (used to build the OAuth return target) ===
    SITE_URL: AnyHttpUrl = "http://localhost:8000"

    # === OAuth sign-in ===
    OAUTH_PROVIDER: str = "google"
    # Comma-separated k=v pairs forwarded to the provider, e.g.
    # "prompt=select_account,access_type=offline"
    OAUTH_QUERY_PARAMS: Union[str, Dict[str, str]] = {"prompt": "select_account", "access_type": "offline"}

    # === Storage / realtime ===
    BOOKMARKS_TABLE: str = "bookmarks"
    REALTIME_HEARTBEAT_SECONDS: float = 30.0
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # === Cookies ===
    COOKIE_SECURE: bool = False

    @property
    def BASE_URL(self) -> str:
        return str(self.SUPABASE_URL).rstrip("/")

    @property
    def AUTH_URL(self) -> str:
        return f"{self.BASE_URL}/auth/v1"

    @property
    def REST_URL(self) -> str:
        return f"{self.BASE_URL}/rest/v1"

    @property
    def REALTIME_URL(self) -> str:
        ws_base = self.BASE_URL.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{ws_base}/realtime/v1/websocket"

    @property
    def CALLBACK_URL(self) -> str:
        return f"{str(self.SITE_URL).rstrip('/')}/auth/callback"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("OAUTH_QUERY_PARAMS", mode='before')
    @classmethod
    def parse_comma_separated_params(cls, v: Any) -> Dict[str, str]:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        if isinstance(v, str):
            params: Dict[str, str] = {}
            for pair in v.split(','):
                if not pair.strip():
                    continue
                key, sep, value = pair.partition('=')
                if not sep or not key.strip():
                    raise ValueError(f"OAUTH_QUERY_PARAMS: expected k=v, got '{pair.strip()}'")
                params[key.strip()] = value.strip()
            return params
        raise TypeError('OAUTH_QUERY_PARAMS: Expected a comma-separated k=v string or a dict.')


try:
    settings = Settings()
    print(f"Supabase URL: {settings.BASE_URL}")
    print(f"OAuth callback URL: {settings.CALLBACK_URL}")
except Exception as e:
    print(f"BookmarkManager: Error instantiating Settings: {e}")
    raise
