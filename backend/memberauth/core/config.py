# /backend/memberauth/core/config.py

import json
import logging
from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False
    )

    # --- Environment & Debug ---
    ENVIRONMENT: Literal["development", "testing", "staging", "production"] = Field(
        default="development", validation_alias=AliasChoices("APP_ENV", "ENVIRONMENT")
    )
    DEBUG: bool = Field(default=False, validation_alias=AliasChoices("DEBUG_MODE", "DEBUG"))
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )

    # --- Server Configuration ---
    SERVER_HOST: str = Field(default="0.0.0.0", validation_alias="SERVER_HOST")
    SERVER_PORT: int = Field(default=8000, validation_alias="SERVER_PORT")

    # --- Core Application Settings ---
    APP_NAME: str = Field(default="Alpine Club Members", validation_alias="APP_NAME")
    APP_VERSION: str = Field(default="0.1.0", validation_alias="APP_VERSION")
    APP_DESCRIPTION: str = Field(
        default="Authentication and account lockout API for the association membership system.",
        validation_alias="APP_DESCRIPTION",
    )
    API_V1_STR: str = Field(default="/api/v1", validation_alias="API_V1_STR")

    # --- Database ---
    DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./memberauth.db",
        validation_alias=AliasChoices("DATABASE_URL", "ASYNC_SQLALCHEMY_DATABASE_URL"),
    )
    DB_ECHO: bool = Field(default=False, validation_alias="DB_ECHO")
    DB_CREATE_TABLES: bool = Field(
        default=True,
        description="Create missing tables on startup (schema migrations are managed externally)",
        validation_alias="DB_CREATE_TABLES",
    )

    # --- JWT & Authentication Settings ---
    # Secrets are optional at import time; the token issuer refuses to build without one.
    SECRET_KEY: str | None = Field(
        default=None, validation_alias=AliasChoices("JWT_SECRET_KEY", "SECRET_KEY")
    )
    JWT_REFRESH_SECRET_KEY: str | None = Field(
        default=None,
        validation_alias=AliasChoices("JWT_REFRESH_SECRET_KEY", "REFRESH_TOKEN_SECRET"),
    )
    ALGORITHM: str = Field(default="HS256", validation_alias="ALGORITHM")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(
        default=15, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES"
    )
    REFRESH_TOKEN_EXPIRE_DAYS: int = Field(default=7, validation_alias="REFRESH_TOKEN_EXPIRE_DAYS")
    REFRESH_TOKEN_ROTATION: bool = Field(default=True, validation_alias="REFRESH_TOKEN_ROTATION")
    REFRESH_TOKEN_COOKIE_NAME: str = Field(
        default="memberRefreshToken", validation_alias="REFRESH_TOKEN_COOKIE_NAME"
    )
    COOKIE_SECURE: bool = Field(default=True, validation_alias="COOKIE_SECURE")
    COOKIE_SAMESITE: Literal["lax", "strict", "none"] = Field(
        default="strict", validation_alias="COOKIE_SAMESITE"
    )

    # --- Two-factor (TOTP) Settings ---
    DATA_ENCRYPTION_KEYS_ENV_STR: str | None = Field(
        default=None,
        description="Keys for encrypting TOTP secrets at rest; first encrypts, all decrypt",
        validation_alias=AliasChoices("DATA_ENCRYPTION_KEYS", "DATA_ENCRYPTION_KEY", "TWOFA_ENC_KEY"),
    )
    TWO_FACTOR_ISSUER: str = Field(
        default="Alpine Club Members", validation_alias="TWO_FACTOR_ISSUER"
    )
    TWO_FACTOR_CHALLENGE_MINUTES: int = Field(
        default=5,
        ge=1,
        description="Lifetime of the challenge token handed out after a correct password",
        validation_alias="TWO_FACTOR_CHALLENGE_MINUTES",
    )
    TWO_FACTOR_RATE_LIMIT: str = Field(default="10/hour", validation_alias="TWO_FACTOR_RATE_LIMIT")

    # --- Account Lockout Settings ---
    MAX_FAILED_LOGIN_ATTEMPTS: int = Field(
        default=5,
        ge=1,
        description="Max failed login attempts before lockout",
        validation_alias=AliasChoices("MAX_FAILED_LOGIN_ATTEMPTS", "LOGIN_MAX_ATTEMPTS"),
    )
    ACCOUNT_LOCKOUT_DURATION_MINUTES: int = Field(
        default=30,
        ge=1,
        description="Lockout duration in minutes after max failed attempts",
        validation_alias=AliasChoices("ACCOUNT_LOCKOUT_DURATION_MINUTES", "LOGIN_LOCKOUT_MINUTES"),
    )
    FAILED_ATTEMPTS_RESET_MINUTES: int = Field(
        default=120,
        ge=1,
        description="Failures older than this many minutes no longer count towards a lockout",
        validation_alias="FAILED_ATTEMPTS_RESET_MINUTES",
    )
    LOGIN_DELAY_MS: int = Field(
        default=500,
        ge=0,
        description="Fixed delay applied to every failed login response",
        validation_alias="LOGIN_DELAY_MS",
    )
    LOCKOUT_EXEMPT_ADMINS: bool = Field(
        default=True,
        description="Administrators are never auto-locked (prevents accidental lockout)",
        validation_alias=AliasChoices("LOCKOUT_EXEMPT_ADMINS", "LOCKOUT_ADMINS_EXEMPT"),
    )

    # --- Rate limiting & security log ---
    RATE_LIMIT_ENABLED: bool = Field(default=True, validation_alias="RATE_LIMIT_ENABLED")
    TRUST_PROXY_HEADERS: bool = Field(
        default=False,
        description="Take the client address from X-Forwarded-For (only behind a trusted reverse proxy)",
        validation_alias=AliasChoices("TRUST_PROXY_HEADERS", "TRUST_PROXY"),
    )
    LOGIN_RATE_LIMIT: str = Field(default="10/minute", validation_alias="LOGIN_RATE_LIMIT")
    PASSWORD_CHANGE_RATE_LIMIT: str = Field(
        default="3/minute", validation_alias="PASSWORD_CHANGE_RATE_LIMIT"
    )
    SECURITY_LOG_FILE: str | None = Field(
        default=None,
        description="fail2ban-readable security log; unset keeps events in the regular log",
        validation_alias="SECURITY_LOG_FILE",
    )
    AUDIT_DETAILS_MAX_LEN: int = Field(default=2000, validation_alias="AUDIT_DETAILS_MAX_LEN")

    # --- Initial Superuser Settings ---
    FIRST_SUPERUSER_USERNAME: str | None = Field(
        default=None, validation_alias="FIRST_SUPERUSER_USERNAME"
    )
    FIRST_SUPERUSER_PASSWORD: str | None = Field(
        default=None, validation_alias="FIRST_SUPERUSER_PASSWORD"
    )
    FIRST_SUPERUSER_FULL_NAME: str = Field(
        default="Association Administrator", validation_alias="FIRST_SUPERUSER_FULL_NAME"
    )

    # --- Fields for complex parsing ---
    backend_cors_origins_env_str: str | None = Field(
        default='["http://localhost:5173","http://localhost:8000"]',
        validation_alias=AliasChoices("BACKEND_CORS_ORIGINS", "BACKEND_CORS_ORIGINS_ENV"),
    )

    _parsed_backend_cors_origins: list[str] = []
    _parsed_data_encryption_keys: list[str] = []

    def _parse_string_list_input_helper(
        self, input_str: str | None, field_name_for_log: str
    ) -> list[str]:
        if not input_str or not input_str.strip():
            return []
        try:
            loaded_items = json.loads(input_str)
            if isinstance(loaded_items, list):
                return [str(item).strip() for item in loaded_items if str(item).strip()]
            logger.debug(
                f"Input for {field_name_for_log} was valid JSON but not a list. Trying comma separation."
            )
        except json.JSONDecodeError:
            logger.debug(f"JSONDecodeError for {field_name_for_log}. Falling back to comma separation.")
        return [item.strip() for item in input_str.split(",") if item.strip()]

    @property
    def BACKEND_CORS_ORIGINS(self) -> list[str]:
        return self._parsed_backend_cors_origins

    @property
    def DATA_ENCRYPTION_KEYS(self) -> list[str]:
        return self._parsed_data_encryption_keys

    @field_validator("SECRET_KEY", "JWT_REFRESH_SECRET_KEY", mode="before")
    @classmethod
    def blank_secret_is_unset(cls, v: str | None) -> str | None:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode="after")
    def _process_complex_fields_and_debug_overrides(self) -> "Settings":
        self._parsed_backend_cors_origins = self._parse_string_list_input_helper(
            self.backend_cors_origins_env_str, "BACKEND_CORS_ORIGINS"
        )
        self._parsed_data_encryption_keys = self._parse_string_list_input_helper(
            self.DATA_ENCRYPTION_KEYS_ENV_STR, "DATA_ENCRYPTION_KEYS"
        )

        if self.DEBUG:
            if self.LOG_LEVEL != "DEBUG":
                logger.info("DEBUG mode is ON. Overriding LOG_LEVEL to DEBUG.")
                self.LOG_LEVEL = "DEBUG"
            if self.COOKIE_SECURE:
                logger.info("DEBUG mode is ON. Overriding COOKIE_SECURE to False.")
                self.COOKIE_SECURE = False
        elif self.ENVIRONMENT == "production" and not self.COOKIE_SECURE:
            logger.warning(
                "COOKIE_SECURE is disabled in production; the refresh cookie may travel over plain HTTP."
            )
        return self


settings = Settings()
