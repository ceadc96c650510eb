# backend/tests/factories/__init__.py

from .account_factory import DEFAULT_PASSWORD, DEFAULT_TOTP_SECRET, AccountFactory, wrong_totp_code

__all__ = ["DEFAULT_PASSWORD", "DEFAULT_TOTP_SECRET", "AccountFactory", "wrong_totp_code"]
