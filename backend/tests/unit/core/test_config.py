from datetime import timedelta

import pytest

from memberauth import main as main_module
from memberauth.core.config import Settings, settings
from memberauth.exceptions import ConfigurationError
from memberauth.services.account_lockout import LockoutConfig
from memberauth.services.auth_service import AuthService


def test_lockout_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MAX_FAILED_LOGIN_ATTEMPTS",
        "ACCOUNT_LOCKOUT_DURATION_MINUTES",
        "FAILED_ATTEMPTS_RESET_MINUTES",
        "LOCKOUT_EXEMPT_ADMINS",
    ):
        monkeypatch.delenv(name, raising=False)

    config = LockoutConfig.from_settings(Settings(_env_file=None))

    assert config.max_attempts == 5
    assert config.lockout_duration == timedelta(minutes=30)
    assert config.reset_window == timedelta(minutes=120)
    assert config.exempt_admins is True


def test_lockout_values_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("ACCOUNT_LOCKOUT_DURATION_MINUTES", "10")
    monkeypatch.setenv("LOCKOUT_EXEMPT_ADMINS", "false")

    config = LockoutConfig.from_settings(Settings(_env_file=None))

    assert config.max_attempts == 3
    assert config.lockout_duration == timedelta(minutes=10)
    assert config.exempt_admins is False


def test_blank_secret_counts_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JWT_SECRET_KEY", "   ")

    assert Settings(_env_file=None).SECRET_KEY is None


def test_cors_origins_accept_comma_separated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BACKEND_CORS_ORIGINS", "https://a.example, https://b.example")

    assert Settings(_env_file=None).BACKEND_CORS_ORIGINS == [
        "https://a.example",
        "https://b.example",
    ]


def test_startup_refuses_to_build_without_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    unconfigured = settings.model_copy(update={"SECRET_KEY": None, "JWT_REFRESH_SECRET_KEY": None})
    monkeypatch.setattr(main_module, "settings", unconfigured)

    with pytest.raises(ConfigurationError):
        main_module.build_auth_service()


def test_service_built_from_settings() -> None:
    configured = settings.model_copy(update={"SECRET_KEY": "s3cret", "LOGIN_DELAY_MS": 250})

    service = AuthService.from_settings(configured)

    assert service.login_delay_seconds == 0.25
    assert service.tokens.config.access_secret == "s3cret"
