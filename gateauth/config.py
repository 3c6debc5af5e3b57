from __future__ import annotations

import os
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gateauth.logging import get_logger

logger = get_logger(__name__)


class TokenStoreKind(str, Enum):
    """Backends available for persisting the session record."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gate client session layer."""

    api_base_url: str = env_field("http://localhost:5000", "API_BASE_URL")
    identity_path: str = env_field("/api/v1/identity", "IDENTITY_PATH")
    send_otp_path: str = env_field("/api/v1/users/login/otp", "SEND_OTP_PATH")
    verify_otp_path: str = env_field(
        "/api/v1/users/login/otp/verify", "VERIFY_OTP_PATH"
    )
    refresh_path: str = env_field("/api/v1/users/login/refresh", "REFRESH_PATH")
    app_type: str = env_field("entry_app", "APP_TYPE")
    identity_app_type: str = env_field(
        "entry_app",
        "IDENTITY_APP_TYPE",
        description="appType sent in the identity request body",
    )
    app_version: int = env_field(1, "APP_VERSION")
    request_timeout_seconds: float = env_field(30.0, "REQUEST_TIMEOUT_SECONDS")
    connect_timeout_seconds: float = env_field(10.0, "CONNECT_TIMEOUT_SECONDS")
    token_store: TokenStoreKind = env_field(TokenStoreKind.FILE, "TOKEN_STORE")
    token_store_path: str = env_field(
        "~/.gateauth/session.json",
        "TOKEN_STORE_PATH",
        description="JSON file used when TOKEN_STORE=file",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    auth_storage_key: str = env_field("@entry_app_auth", "AUTH_STORAGE_KEY")
    device_id_key: str = env_field("@entry_app_device_id", "DEVICE_ID_KEY")
    refresh_on_401_codes: list[str] = env_field(
        ["TOKEN_EXPIRED"],
        "REFRESH_ON_401_CODES",
        description="401 error codes that mean the access token expired; comma separated",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("api_base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("API_BASE_URL must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator("token_store", mode="before")
    @classmethod
    def _validate_store(cls, value: Any) -> TokenStoreKind:
        if isinstance(value, str):
            value = value.strip().lower()
        return TokenStoreKind(value)

    @field_validator("refresh_on_401_codes", mode="before")
    @classmethod
    def _split_codes(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = value.split(",")
        codes = [str(code).strip() for code in value or [] if str(code).strip()]
        if not codes:
            logger.warning("refresh_on_401_codes_empty")
        return codes

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.api_base_url}/{path.lstrip('/')}"

    @property
    def auth_paths(self) -> frozenset[str]:
        """Endpoints that never go through refresh-and-retry."""
        return frozenset(
            {
                self.identity_path,
                self.send_otp_path,
                self.verify_otp_path,
                self.refresh_path,
            }
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
