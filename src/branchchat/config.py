"""Settings consumed by the core. Read-only from the session's point of view."""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ImageOptions, WebSearchOptions

STREAM_TIMEOUT_SECONDS = 5 * 60


class WebSearchSettings(BaseModel):
    enabled: bool = False
    engine: Optional[Literal["native", "exa"]] = None
    max_results: int = 5
    context_size: Literal["low", "medium", "high"] = "medium"


class ImageSettings(BaseModel):
    aspect_ratio: Optional[str] = None
    image_size: Optional[str] = None


class Settings(BaseSettings):
    """Application settings, loaded from ``BRANCHCHAT_*`` variables or ``.env``.

    Nested values use a double underscore, e.g.
    ``BRANCHCHAT_WEB_SEARCH__ENABLED=true``.
    """

    api_key: Optional[SecretStr] = None
    endpoint_url: str = "http://localhost:5173/api/chat"

    chat_title_generation: bool = True
    auto_mode: bool = True
    default_models: List[str] = []
    system_prompt: Optional[str] = None

    web_search: WebSearchSettings = WebSearchSettings()
    image_options: ImageSettings = ImageSettings()

    stream_timeout: float = STREAM_TIMEOUT_SECONDS
    request_timeout: float = 30.0

    model_config = SettingsConfigDict(
        env_prefix="BRANCHCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    def get_api_key(self) -> Optional[str]:
        if self.api_key is None:
            return None
        return self.api_key.get_secret_value() or None

    def web_search_options(self) -> Optional[WebSearchOptions]:
        """The request-side web search block, or None when search is off."""
        if not self.web_search.enabled:
            return None
        return WebSearchOptions(
            enabled=True,
            engine=self.web_search.engine,
            max_results=self.web_search.max_results,
            search_context_size=self.web_search.context_size,
        )

    def default_image_options(self) -> ImageOptions:
        return ImageOptions.model_validate(self.image_options.model_dump())


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
