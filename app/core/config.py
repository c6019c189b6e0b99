from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "fathom_api_url",
        "fathom_api_key",
        "fathom_api_timeout_seconds",
        "fathom_api_user_agent",
        "fathom_webhook_secret",
        "fathom_max_attempts",
        "fathom_retry_initial_delay_seconds",
        "fathom_retry_jitter_seconds",
        "fathom_app_base_url",
        "fathom_embed_base_url",
        "sync_page_size",
        "sync_safety_cap",
        "sync_data_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_integrations_collection",
        "mongodb_sync_states_collection",
        "mongodb_companies_collection",
        "mongodb_contacts_collection",
        "mongodb_meeting_contacts_collection",
        "mongodb_meetings_collection",
        "mongodb_meeting_attendees_collection",
        "mongodb_action_items_collection",
        "mongodb_connect_timeout_ms",
        "thumbnail_lookup_timeout_seconds",
        "thumbnail_cdn_base_urls",
        "thumbnail_service_url",
        "thumbnail_service_token",
        "enable_video_thumbnails",
        "thumbnail_placeholder_base_url",
        "gemini_api_key",
        "gemini_model",
        "gemini_api_timeout_seconds",
    },
)


class Settings(BaseSettings):
    app_name: str = "Meeting Sync API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    fathom_api_url: str = "https://api.fathom.ai/external/v1"
    fathom_api_key: str = ""
    fathom_api_timeout_seconds: float = 10.0
    fathom_api_user_agent: str = "MeetingSyncBackend/1.0"
    fathom_webhook_secret: str = ""
    fathom_max_attempts: int = 3
    fathom_retry_initial_delay_seconds: float = 1.0
    fathom_retry_jitter_seconds: float = 1.0
    fathom_app_base_url: str = "https://app.fathom.video"
    fathom_embed_base_url: str = "https://fathom.video/embed"
    sync_page_size: int = 100
    sync_safety_cap: int = 10_000
    sync_data_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "meeting_sync"
    mongodb_integrations_collection: str = "fathom_integrations"
    mongodb_sync_states_collection: str = "fathom_sync_state"
    mongodb_companies_collection: str = "companies"
    mongodb_contacts_collection: str = "contacts"
    mongodb_meeting_contacts_collection: str = "meeting_contacts"
    mongodb_meetings_collection: str = "meetings"
    mongodb_meeting_attendees_collection: str = "meeting_attendees"
    mongodb_action_items_collection: str = "meeting_action_items"
    mongodb_connect_timeout_ms: int = 2000
    thumbnail_lookup_timeout_seconds: float = 5.0
    thumbnail_cdn_base_urls: Annotated[list[str], NoDecode] = [
        "https://thumbnails.fathom.video",
        "https://cdn.fathom.video/thumbnails",
    ]
    thumbnail_service_url: str = ""
    thumbnail_service_token: str = ""
    enable_video_thumbnails: bool = False
    thumbnail_placeholder_base_url: str = "https://via.placeholder.com/640x360/1a1a1a/10b981"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-3-flash-preview"
    gemini_api_timeout_seconds: float = 20.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("allowed_origins", "thumbnail_cdn_base_urls", mode="before")
    @classmethod
    def parse_comma_separated_list(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("sync_data_store", mode="before")
    @classmethod
    def normalize_sync_data_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("fathom_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_fathom_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("thumbnail_lookup_timeout_seconds", mode="before")
    @classmethod
    def normalize_thumbnail_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 5.0
        return parsed_value

    @field_validator("gemini_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_gemini_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 20.0
        return parsed_value

    @field_validator("fathom_max_attempts", mode="before")
    @classmethod
    def normalize_max_attempts(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 3
        return parsed_value

    @field_validator("sync_page_size", mode="before")
    @classmethod
    def normalize_page_size(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 100
        return parsed_value

    @field_validator("sync_safety_cap", mode="before")
    @classmethod
    def normalize_safety_cap(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 10_000
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
