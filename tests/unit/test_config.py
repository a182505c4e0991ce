"""Tests for settings loading and the request-side views of them."""

import pytest
from branchchat.config import STREAM_TIMEOUT_SECONDS, Settings, get_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate every test from BRANCHCHAT_* variables in the real environment."""
    import os

    for key in list(os.environ):
        if key.startswith("BRANCHCHAT_"):
            monkeypatch.delenv(key)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.get_api_key() is None
        assert settings.chat_title_generation is True
        assert settings.auto_mode is True
        assert settings.stream_timeout == STREAM_TIMEOUT_SECONDS == 300
        assert settings.web_search_options() is None

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("BRANCHCHAT_API_KEY", "sk-env")
        monkeypatch.setenv("BRANCHCHAT_DEFAULT_MODELS", '["a", "b"]')
        monkeypatch.setenv("BRANCHCHAT_CHAT_TITLE_GENERATION", "false")

        settings = Settings(_env_file=None)

        assert settings.get_api_key() == "sk-env"
        assert settings.default_models == ["a", "b"]
        assert settings.chat_title_generation is False

    def test_nested_environment(self, monkeypatch):
        monkeypatch.setenv("BRANCHCHAT_WEB_SEARCH__ENABLED", "true")
        monkeypatch.setenv("BRANCHCHAT_WEB_SEARCH__MAX_RESULTS", "8")
        monkeypatch.setenv("BRANCHCHAT_IMAGE_OPTIONS__ASPECT_RATIO", "16:9")

        settings = Settings(_env_file=None)
        web_search = settings.web_search_options()

        assert web_search.enabled
        assert web_search.max_results == 8
        assert web_search.search_context_size == "medium"
        assert settings.default_image_options().aspect_ratio == "16:9"

    def test_env_file(self, temp_dir):
        env_file = temp_dir / ".env"
        env_file.write_text("BRANCHCHAT_API_KEY=sk-file\n", encoding="utf-8")

        assert Settings(_env_file=env_file).get_api_key() == "sk-file"

    def test_blank_api_key_is_missing(self):
        assert Settings(_env_file=None, api_key="").get_api_key() is None

    def test_api_key_hidden_from_repr(self):
        assert "sk-secret" not in repr(Settings(_env_file=None, api_key="sk-secret"))

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
