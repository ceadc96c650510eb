# backend/memberauth/services/account_lockout.py
"""
Account lockout policy for brute force protection.

Implements:
- Hard lockout (MAX_FAILED_LOGIN_ATTEMPTS failures -> locked for the lockout duration)
- Reset window (failures older than FAILED_ATTEMPTS_RESET_MINUTES are forgotten)
- Optional exemption of admin roles from auto-locking

The policy is pure: it reads lockout columns from whatever account object it
is given and returns decisions or new state. Persisting that state (atomically)
is the job of crud.crud_account.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import NamedTuple, Protocol

from memberauth.core.config import Settings
from memberauth.db.models.account import ADMIN_ROLES


class LockoutSubject(Protocol):
    role: str
    failed_login_attempts: int
    last_failed_login: datetime | None
    locked_until: datetime | None


@dataclass(frozen=True)
class LockoutConfig:
    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=30)
    reset_window: timedelta = timedelta(minutes=120)
    exempt_admins: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutConfig":
        return cls(
            max_attempts=settings.MAX_FAILED_LOGIN_ATTEMPTS,
            lockout_duration=timedelta(minutes=settings.ACCOUNT_LOCKOUT_DURATION_MINUTES),
            reset_window=timedelta(minutes=settings.FAILED_ATTEMPTS_RESET_MINUTES),
            exempt_admins=settings.LOCKOUT_EXEMPT_ADMINS,
        )


class LockState(NamedTuple):
    """Lockout columns of an account after a login attempt."""

    failed_login_attempts: int
    last_failed_login: datetime | None
    locked_until: datetime | None

    @property
    def is_locked(self) -> bool:
        return self.locked_until is not None


class LockoutDecision(NamedTuple):
    """Result of evaluating an account before its password is checked."""

    allowed: bool
    locked_until: datetime | None = None
    failed_attempts: int = 0
    exempt: bool = False


UNLOCKED_STATE = LockState(failed_login_attempts=0, last_failed_login=None, locked_until=None)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps (SQLite hands those back) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AccountLockoutPolicy:
    def __init__(self, config: LockoutConfig | None = None):
        self.config = config or LockoutConfig()

    @property
    def exempt_roles(self) -> frozenset[str]:
        return ADMIN_ROLES if self.config.exempt_admins else frozenset()

    def is_exempt(self, role: str | None) -> bool:
        return role in self.exempt_roles

    def reset_cutoff(self, now: datetime) -> datetime:
        """Failures recorded before this instant no longer count."""
        return now - self.config.reset_window

    def lock_expiry(self, now: datetime) -> datetime:
        return now + self.config.lockout_duration

    def effective_failures(self, account: LockoutSubject, now: datetime) -> int:
        last_failed = as_utc(account.last_failed_login)
        if last_failed is None or now - last_failed > self.config.reset_window:
            return 0
        return account.failed_login_attempts or 0

    def evaluate(self, account: LockoutSubject, now: datetime) -> LockoutDecision:
        """Decide whether a login attempt may proceed to password verification."""
        failures = self.effective_failures(account, now)
        if self.is_exempt(account.role):
            return LockoutDecision(allowed=True, failed_attempts=failures, exempt=True)

        locked_until = as_utc(account.locked_until)
        if locked_until is not None and now < locked_until:
            return LockoutDecision(
                allowed=False, locked_until=locked_until, failed_attempts=failures
            )
        return LockoutDecision(allowed=True, failed_attempts=failures)

    def record_failure(self, account: LockoutSubject, now: datetime) -> LockState:
        failures = self.effective_failures(account, now) + 1

        locked_until = as_utc(account.locked_until)
        if locked_until is not None and locked_until <= now:
            locked_until = None
        if failures >= self.config.max_attempts and not self.is_exempt(account.role):
            locked_until = self.lock_expiry(now)

        return LockState(
            failed_login_attempts=failures, last_failed_login=now, locked_until=locked_until
        )

    def record_success(self, account: LockoutSubject | None = None) -> LockState:  # noqa: ARG002
        return UNLOCKED_STATE

    def reached_threshold(self, state: LockState) -> bool:
        return state.failed_login_attempts >= self.config.max_attempts
