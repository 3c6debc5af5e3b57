"""Tests for environment-driven settings and runtime wiring."""

import pytest
from pydantic import ValidationError

from gateauth.config import Settings, TokenStoreKind, get_settings, reset_settings_cache
from gateauth.service.runtime import Runtime, _mask_url_password, get_runtime
from gateauth.storage.token_store import FileTokenStore, MemoryTokenStore


class TestSettings:
    """Settings parsing and validation."""

    def test_defaults(self):
        settings = Settings()
        assert settings.refresh_on_401_codes == ["TOKEN_EXPIRED"]
        assert settings.token_store is TokenStoreKind.FILE
        assert settings.auth_storage_key == "@entry_app_auth"

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("API_BASE_URL", "https://gate.example.com/")
        monkeypatch.setenv("TOKEN_STORE", "Redis")
        monkeypatch.setenv("REFRESH_ON_401_CODES", "TOKEN_EXPIRED, JWT_EXPIRED,")
        monkeypatch.setenv("APP_VERSION", "7")

        settings = Settings.from_env()

        assert settings.api_base_url == "https://gate.example.com"
        assert settings.token_store is TokenStoreKind.REDIS
        assert settings.refresh_on_401_codes == ["TOKEN_EXPIRED", "JWT_EXPIRED"]
        assert settings.app_version == 7

    @pytest.mark.parametrize("url", ["gate.example.com", "ftp://gate.example.com"])
    def test_base_url_must_be_http(self, url):
        with pytest.raises(ValidationError):
            Settings(api_base_url=url)

    def test_unknown_store_rejected(self):
        with pytest.raises(ValidationError):
            Settings(token_store="sqlite")

    def test_url_for(self):
        settings = Settings(api_base_url="http://gate.test")
        assert settings.url_for("/api/v1/identity") == "http://gate.test/api/v1/identity"
        assert settings.url_for("api/v1/x") == "http://gate.test/api/v1/x"
        assert settings.url_for("https://other.test/y") == "https://other.test/y"

    def test_auth_paths(self):
        assert Settings().auth_paths == {
            "/api/v1/identity",
            "/api/v1/users/login/otp",
            "/api/v1/users/login/otp/verify",
            "/api/v1/users/login/refresh",
        }

    def test_settings_cache_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("APP_TYPE", "exit_app")
        reset_settings_cache()
        assert get_settings().app_type == "exit_app"
        reset_settings_cache()


class TestRuntime:
    """Composition root."""

    def test_runtime_uses_memory_store_under_tests(self):
        runtime = get_runtime()
        assert isinstance(runtime.backend, MemoryTokenStore)
        assert runtime.session.store is runtime.store
        assert runtime.dispatcher.session is runtime.session

    def test_file_store_selected(self, tmp_path):
        settings = Settings(token_store="file", token_store_path=str(tmp_path / "s.json"))
        runtime = Runtime(settings)
        assert isinstance(runtime.backend, FileTokenStore)

    def test_unreachable_redis_falls_back_in_test_mode(self):
        settings = Settings(
            token_store="redis", redis_url="redis://127.0.0.1:1/0", test_mode=True
        )
        assert isinstance(Runtime(settings).backend, MemoryTokenStore)

    def test_unreachable_redis_is_fatal_outside_test_mode(self):
        settings = Settings(token_store="redis", redis_url="redis://127.0.0.1:1/0")
        with pytest.raises(RuntimeError):
            Runtime(settings)

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:secret@host:6379/0") == "redis://:***@host:6379/0"
        assert _mask_url_password("redis://host:6379") == "redis://host:6379"
        assert _mask_url_password(None) is None
