"""
Configuration module for the OIDC AuthService.

This module uses Pydantic Settings to load and validate environment variables
for the OIDC provider, the OAuth2 client, identity header injection, session
management and the three HTTP listeners.

Environment variables are loaded from .env file or system environment.
"""

import os
import secrets
from functools import lru_cache
from typing import Dict, List
from urllib.parse import urlparse

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


TEMPLATE_CONTEXT_PREFIX = "TEMPLATE_CONTEXT_"


def _split_clean(value: str, sep: str) -> List[str]:
    return [item.strip() for item in value.split(sep) if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Read once at startup and never mutated afterwards.
    """

    # =========================================================================
    # OIDC Provider
    # =========================================================================

    OIDC_PROVIDER: str = Field(
        ...,
        description="OIDC issuer URL, used for discovery (e.g., https://accounts.example.com)",
    )

    OIDC_AUTH_URL: str = Field(
        default="",
        description="Explicit authorization endpoint, overrides the discovered one",
    )

    CA_BUNDLE: str = Field(
        default="",
        description="Path to a PEM CA bundle trusted for all outbound TLS connections",
    )

    # =========================================================================
    # OIDC Client
    # =========================================================================

    OIDC_SCOPES: str = Field(
        ...,
        description="Space-separated scopes to request ('openid' is always added)",
        min_length=1,
    )

    CLIENT_ID: str = Field(..., description="OAuth2 client id", min_length=1)

    CLIENT_SECRET: str = Field(..., description="OAuth2 client secret", min_length=1)

    REDIRECT_URL: str = Field(
        ...,
        description="Callback URL registered at the provider (e.g., https://host/login/oidc)",
    )

    AFTER_LOGIN_URL: str = Field(
        default="",
        validation_alias=AliasChoices("AFTER_LOGIN_URL", "STATIC_DESTINATION_URL"),
        description="Static destination after login, overrides the original URL",
    )

    # =========================================================================
    # Identity headers
    # =========================================================================

    SKIP_AUTH_URI: str = Field(
        default="",
        description="Space-separated path prefixes accepted without authentication",
    )

    USERID_HEADER: str = Field(default="kubeflow-userid", min_length=1)

    USERID_TOKEN_HEADER: str = Field(
        default="kubeflow-userid-token",
        description="Header carrying the raw token upstream (empty disables it)",
    )

    USERID_PREFIX: str = Field(default="")

    USERID_CLAIM: str = Field(default="email", min_length=1)

    AUTH_HEADER: str = Field(
        default="Authorization",
        description="Request header carrying bearer tokens",
    )

    # =========================================================================
    # Listeners
    # =========================================================================

    SERVER_HOSTNAME: str = Field(default="")

    SERVER_PORT: int = Field(default=8080, ge=1, le=65535)

    HEALTH_SERVER_PORT: int = Field(default=8081, ge=1, le=65535)

    WEB_SERVER_PORT: int = Field(default=8082, ge=1, le=65535)

    # =========================================================================
    # Web server (login / logout pages)
    # =========================================================================

    WEB_SERVER_TEMPLATE_PATH: str = Field(
        default="",
        description="Comma-separated template directories, searched before the defaults",
    )

    WEB_SERVER_CLIENT_NAME: str = Field(default="Kubeflow")

    WEB_SERVER_URL_PREFIX: str = Field(default="/authservice/")

    WEB_SERVER_PROTECT_URL_PREFIX: bool = Field(
        default=True,
        description="Add WEB_SERVER_URL_PREFIX to the authentication whitelist",
    )

    WEB_SERVER_THEMES_URL: str = Field(default="themes")

    WEB_SERVER_THEME: str = Field(default="kubeflow")

    # =========================================================================
    # Sessions & store
    # =========================================================================

    SESSION_MAX_AGE: int = Field(
        default=86400,
        description="Session lifetime in seconds",
        gt=0,
    )

    STATE_MAX_AGE: int = Field(
        default=600,
        description="Lifetime of a pending login (OAuth2 state) in seconds",
        gt=0,
        le=3600,
    )

    STORE_REAP_INTERVAL: int = Field(
        default=60,
        description="Seconds between sweeps of expired store records",
        gt=0,
    )

    SESSION_SECRET: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        description="Key used to sign session cookies",
        min_length=16,
    )

    LOG_LEVEL: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def scopes_list(self) -> List[str]:
        """Requested scopes, always including 'openid'."""
        scopes = _split_clean(self.OIDC_SCOPES, " ")
        if "openid" not in scopes:
            scopes.append("openid")
        return scopes

    @property
    def whitelist(self) -> List[str]:
        """
        Path prefixes exempted from authentication.

        Includes the web server prefix when WEB_SERVER_PROTECT_URL_PREFIX is set.
        """
        prefixes = _split_clean(self.SKIP_AUTH_URI, " ")
        if self.WEB_SERVER_PROTECT_URL_PREFIX and self.WEB_SERVER_URL_PREFIX:
            prefixes.append(self.WEB_SERVER_URL_PREFIX)
        return prefixes

    @property
    def template_paths_list(self) -> List[str]:
        return _split_clean(self.WEB_SERVER_TEMPLATE_PATH, ",")

    @property
    def template_context(self) -> Dict[str, str]:
        """All TEMPLATE_CONTEXT_* environment variables, prefix stripped."""
        return {
            key[len(TEMPLATE_CONTEXT_PREFIX):]: value
            for key, value in os.environ.items()
            if key.startswith(TEMPLATE_CONTEXT_PREFIX)
        }

    @property
    def theme_url(self) -> str:
        return self.WEB_SERVER_THEMES_URL.rstrip("/") + "/" + self.WEB_SERVER_THEME

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("OIDC_PROVIDER", "REDIRECT_URL")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Require an absolute http(s) URL.

        Raises:
            ValueError: If the value has no scheme or host
        """
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Expected an absolute http(s) URL, got: '{v}'")
        return v.strip()

    @field_validator("OIDC_AUTH_URL", "AFTER_LOGIN_URL", "CA_BUNDLE")
    @classmethod
    def strip_optional(cls, v: str) -> str:
        return v.strip()

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}, got: {v}")
        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
