# backend/memberauth/exceptions.py
"""
Error taxonomy for the authentication subsystem.

Expected outcomes of a login or token check (bad credentials, locked account,
expired token...) are reported as `AuthErrorKind` values on result objects and
are never raised. Exceptions are reserved for faults the caller cannot branch
on: missing configuration, an unreachable database, a registration conflict
or a refused two-factor setup step.
"""

import enum
from datetime import datetime


class AuthErrorKind(str, enum.Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    EXPIRED_TOKEN = "expired_token"
    INVALID_TOKEN = "invalid_token"
    TWO_FACTOR_INVALID_CODE = "two_factor_invalid_code"
    TWO_FACTOR_CHALLENGE_EXPIRED = "two_factor_challenge_expired"
    TWO_FACTOR_CHALLENGE_INVALID = "two_factor_challenge_invalid"


class MemberAuthError(Exception):
    """Base exception for the member authentication service."""

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class ConfigurationError(MemberAuthError):
    """A required setting (such as the token signing secret) is missing or invalid."""


class StorageUnavailable(MemberAuthError):
    """The account store could not be read or written."""


class DuplicateAccount(MemberAuthError):
    """An account with this username already exists."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(f"Account '{username}' already exists.")


class AccountNotFound(MemberAuthError):
    """The requested account does not exist."""

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found.")


class TwoFactorError(MemberAuthError):
    """A two-factor setup step was refused; `code` is the client-facing reason."""

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or code)


class AuthFailure:
    """Non-exceptional failure outcome returned by the auth handlers."""

    __slots__ = ("kind", "locked_until")

    def __init__(self, kind: AuthErrorKind, locked_until: datetime | None = None):
        self.kind = kind
        self.locked_until = locked_until

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthFailure):
            return NotImplemented
        return self.kind == other.kind and self.locked_until == other.locked_until

    def __repr__(self) -> str:
        return f"<AuthFailure(kind={self.kind.value!r}, locked_until={self.locked_until!r})>"
