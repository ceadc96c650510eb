# backend/memberauth/services/auth_service.py
"""
Authentication flows: login (with the optional TOTP second step), token
refresh, logout, registration, password change, admin password assignment
and admin unlock.

Every flow runs in the same order: lockout policy, then password check, then
the counter update and audit entry, and token issuance last. Expected
failures come back as `AuthFailure` values; only storage and configuration
faults raise.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from memberauth import crud
from memberauth.core.config import Settings
from memberauth.core.request_context import get_client_ip
from memberauth.core.security import (
    burn_password_check,
    hash_password_async,
    verify_password_async,
)
from memberauth.core.security_logger import security_log
from memberauth.core.tokens import TokenConfig, TokenIssuer, TokenKind, TokenPair, TokenStatus
from memberauth.db.models.account import Account, AccountStatus
from memberauth.db.models.audit_log import AuditStatus, PerformerType
from memberauth.exceptions import AccountNotFound, AuthErrorKind, AuthFailure, DuplicateAccount
from memberauth.schemas.account import AccountCreate, AccountRead, AccountSummary
from memberauth.services import audit_service, two_factor_service
from memberauth.services.account_lockout import (
    UNLOCKED_STATE,
    AccountLockoutPolicy,
    LockoutConfig,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginSuccess:
    tokens: TokenPair
    account: AccountSummary


@dataclass(frozen=True)
class TwoFactorChallenge:
    """Password accepted; the token pair waits for a TOTP or recovery code."""

    challenge_token: str
    expires_in: int


@dataclass(frozen=True)
class RefreshSuccess:
    access_token: str
    refresh_token: str | None
    account: AccountSummary


@dataclass(frozen=True)
class LogoutAck:
    account_id: int | None = None


class AuthService:
    def __init__(
        self,
        policy: AccountLockoutPolicy,
        tokens: TokenIssuer,
        *,
        login_delay_seconds: float = 0.5,
        rotate_refresh_tokens: bool = True,
    ):
        self.policy = policy
        self.tokens = tokens
        self.login_delay_seconds = login_delay_seconds
        self.rotate_refresh_tokens = rotate_refresh_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthService":
        """Raises ConfigurationError when no token signing secret is configured."""
        return cls(
            AccountLockoutPolicy(LockoutConfig.from_settings(settings)),
            TokenIssuer(TokenConfig.from_settings(settings)),
            login_delay_seconds=settings.LOGIN_DELAY_MS / 1000,
            rotate_refresh_tokens=settings.REFRESH_TOKEN_ROTATION,
        )

    async def _failure_delay(self) -> None:
        if self.login_delay_seconds > 0:
            await asyncio.sleep(self.login_delay_seconds)

    # --- Login ---

    async def login(
        self,
        db: AsyncSession,
        username: str,
        password: str,
        ip_address: str | None = None,
    ) -> LoginSuccess | TwoFactorChallenge | AuthFailure:
        ip = ip_address or get_client_ip()
        now = datetime.now(UTC)

        account = await crud.account.get_by_username(db, username=username)
        if account is None:
            # Same hashing cost and delay as a wrong password for an existing account
            await burn_password_check(password)
            logger.info(f"Login failed for unknown username from IP: {ip}")
            security_log.failed_login(ip, username, "BAD_CREDENTIALS")
            await audit_service.log_action(
                db,
                audit_service.LOGIN_FAILURE,
                f"Login attempt with unknown username '{username}'",
                status=AuditStatus.FAILED,
                performer_type=PerformerType.ANONYMOUS,
                ip_address=ip,
            )
            await self._failure_delay()
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS)

        # Captured up front: a failed audit write rolls the session back and expires the row.
        summary = AccountSummary.model_validate(account)
        account_id = summary.id

        decision = self.policy.evaluate(account, now)
        if not decision.allowed:
            logger.warning(f"Login attempt for locked account {account_id} until {decision.locked_until}")
            security_log.failed_login(ip, username, "ACCOUNT_LOCKED")
            await audit_service.log_action(
                db,
                audit_service.LOGIN_FAILED_LOCKED,
                f"Login attempt while locked until {decision.locked_until.isoformat()}",
                status=AuditStatus.BLOCKED,
                affected_member=account_id,
                performer_type=PerformerType.ANONYMOUS,
                ip_address=ip,
            )
            return AuthFailure(AuthErrorKind.ACCOUNT_LOCKED, locked_until=decision.locked_until)

        if not await verify_password_async(password, account.password_hash):
            await self._record_failed_attempt(db, account, summary, decision.exempt, now, ip)
            await self._failure_delay()
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS)

        if not account.can_login:
            logger.warning(f"Login attempt for inactive account {account_id} (status={account.status})")
            security_log.failed_login(ip, username, "ACCOUNT_INACTIVE")
            await audit_service.log_action(
                db,
                audit_service.LOGIN_FAILED_INACTIVE,
                f"Login refused for account with status '{account.status}'",
                status=AuditStatus.BLOCKED,
                affected_member=account_id,
                performer_type=PerformerType.ANONYMOUS,
                ip_address=ip,
            )
            return AuthFailure(AuthErrorKind.ACCOUNT_INACTIVE)

        if account.two_factor_enabled:
            # Counters stay untouched until the second factor passes too.
            return await self._issue_challenge(db, summary, ip)

        return await self._complete_login(db, account, summary, now, ip)

    async def _issue_challenge(
        self, db: AsyncSession, summary: AccountSummary, ip: str
    ) -> TwoFactorChallenge:
        challenge_token = self.tokens.issue_challenge_token(summary.id, summary.role.value)
        logger.info(f"Password accepted for {summary.username}; two-factor code required")
        await audit_service.log_action(
            db,
            audit_service.TWO_FACTOR_CHALLENGE_ISSUED,
            "Password accepted, waiting for two-factor code",
            status=AuditStatus.SUCCESS,
            affected_member=summary.id,
            performer_type=PerformerType.ANONYMOUS,
            ip_address=ip,
        )
        expires_in = int(self.tokens.config.challenge_lifetime.total_seconds())
        return TwoFactorChallenge(challenge_token=challenge_token, expires_in=expires_in)

    async def _complete_login(
        self,
        db: AsyncSession,
        account: Account,
        summary: AccountSummary,
        now: datetime,
        ip: str,
        second_factor: str | None = None,
    ) -> LoginSuccess:
        await crud.account.reset_failed_logins(
            db, account=account, state=self.policy.record_success(account), last_login=now
        )
        security_log.successful_login(ip, summary.username)
        details = f"Member {summary.username} logged in"
        if second_factor:
            details += f" (second factor: {second_factor})"
        await audit_service.log_action(
            db,
            audit_service.LOGIN_SUCCESS,
            details,
            status=AuditStatus.SUCCESS,
            performed_by=summary.id,
            affected_member=summary.id,
            ip_address=ip,
        )

        tokens = self.tokens.issue_pair(summary.id, summary.role.value)
        logger.info(f"Account logged in successfully: {summary.username} (ID: {summary.id})")
        return LoginSuccess(tokens=tokens, account=summary)

    async def _record_failed_attempt(
        self,
        db: AsyncSession,
        account: Account,
        summary: AccountSummary,
        exempt: bool,
        now: datetime,
        ip: str,
        *,
        action: str = audit_service.LOGIN_FAILURE,
        what: str = "Wrong password",
        reason: str = "BAD_CREDENTIALS",
    ) -> None:
        """Count a wrong password (or wrong two-factor code) against the lockout threshold."""
        state = await crud.account.register_failed_login(
            db, account=account, policy=self.policy, now=now
        )
        max_attempts = self.policy.config.max_attempts
        logger.warning(
            f"Login failed for account {summary.id}: "
            f"{state.failed_login_attempts}/{max_attempts} failed attempts"
        )
        security_log.failed_login(ip, summary.username, reason)
        await audit_service.log_action(
            db,
            action,
            f"{what}, attempt {state.failed_login_attempts} of {max_attempts}",
            status=AuditStatus.FAILED,
            affected_member=summary.id,
            performer_type=PerformerType.ANONYMOUS,
            ip_address=ip,
        )

        if exempt:
            if self.policy.reached_threshold(state):
                logger.warning(
                    f"Exempt account {summary.id} reached {state.failed_login_attempts} failed attempts"
                )
                await audit_service.log_action(
                    db,
                    audit_service.LOGIN_FAILED_ADMIN_MAX_ATTEMPTS,
                    f"Administrator exceeded {max_attempts} failed attempts; lockout exempt",
                    status=AuditStatus.WARNING,
                    affected_member=summary.id,
                    performer_type=PerformerType.SYSTEM,
                    ip_address=ip,
                )
        elif state.is_locked:
            minutes = int(self.policy.config.lockout_duration.total_seconds() // 60)
            logger.warning(f"ACCOUNT LOCKED: {summary.id} until {state.locked_until.isoformat()}")
            security_log.account_locked(ip, summary.username, minutes)
            await audit_service.log_action(
                db,
                audit_service.ACCOUNT_LOCKED,
                f"Locked for {minutes} minutes after {state.failed_login_attempts} failed attempts",
                status=AuditStatus.BLOCKED,
                affected_member=summary.id,
                performer_type=PerformerType.SYSTEM,
                ip_address=ip,
            )

    async def verify_two_factor(
        self,
        db: AsyncSession,
        challenge_token: str | None,
        code: str,
        ip_address: str | None = None,
    ) -> LoginSuccess | AuthFailure:
        """
        Second login step: trade a challenge token plus a TOTP (or recovery) code for a token pair.

        Wrong codes count against the same lockout threshold as wrong passwords.
        """
        ip = ip_address or get_client_ip()
        result = self.tokens.verify(challenge_token, TokenKind.TWO_FACTOR_CHALLENGE)
        if not result.ok:
            logger.info(f"Two-factor challenge rejected: {result.status.value} ({result.reason})")
            if result.status is TokenStatus.EXPIRED:
                return AuthFailure(AuthErrorKind.TWO_FACTOR_CHALLENGE_EXPIRED)
            security_log.bad_token(ip, result.reason or "invalid")
            return AuthFailure(AuthErrorKind.TWO_FACTOR_CHALLENGE_INVALID)

        account = await crud.account.get_by_id(db, account_id=result.account_id)
        if account is None or not account.can_login or not account.two_factor_enabled:
            logger.warning(f"Two-factor challenge for unusable account {result.account_id}")
            return AuthFailure(AuthErrorKind.TWO_FACTOR_CHALLENGE_INVALID)

        summary = AccountSummary.model_validate(account)
        now = datetime.now(UTC)
        decision = self.policy.evaluate(account, now)
        if not decision.allowed:
            security_log.failed_login(ip, summary.username, "ACCOUNT_LOCKED")
            await audit_service.log_action(
                db,
                audit_service.LOGIN_FAILED_LOCKED,
                f"Two-factor attempt while locked until {decision.locked_until.isoformat()}",
                status=AuditStatus.BLOCKED,
                affected_member=summary.id,
                performer_type=PerformerType.ANONYMOUS,
                ip_address=ip,
            )
            return AuthFailure(AuthErrorKind.ACCOUNT_LOCKED, locked_until=decision.locked_until)

        method = await two_factor_service.check_second_factor(db, account, code)
        if method is None:
            await self._record_failed_attempt(
                db,
                account,
                summary,
                decision.exempt,
                now,
                ip,
                action=audit_service.TWO_FACTOR_FAILED,
                what="Wrong two-factor code",
                reason="BAD_2FA_CODE",
            )
            await self._failure_delay()
            return AuthFailure(AuthErrorKind.TWO_FACTOR_INVALID_CODE)

        success = await self._complete_login(db, account, summary, now, ip, second_factor=method)
        if method == two_factor_service.METHOD_RECOVERY_CODE:
            await audit_service.log_action(
                db,
                audit_service.TWO_FACTOR_RECOVERY_CODE_USED,
                "Recovery code used for sign-in",
                status=AuditStatus.WARNING,
                performed_by=summary.id,
                affected_member=summary.id,
                ip_address=ip,
            )
        return success

    # --- Tokens ---

    async def refresh(
        self,
        db: AsyncSession,
        refresh_token: str | None,
        ip_address: str | None = None,
    ) -> RefreshSuccess | AuthFailure:
        ip = ip_address or get_client_ip()
        result = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        if not result.ok:
            if result.status is TokenStatus.INVALID:
                security_log.bad_token(ip, result.reason or "invalid")
            logger.info(f"Refresh rejected: {result.status.value} ({result.reason})")
            return AuthFailure(result.error_kind)

        account = await crud.account.get_by_id(db, account_id=result.account_id)
        if account is None or not account.can_login:
            logger.warning(f"Refresh token for missing or inactive account {result.account_id}")
            return AuthFailure(AuthErrorKind.INVALID_TOKEN)

        # Role comes from the current row, not the token, so demotions apply on refresh.
        summary = AccountSummary.model_validate(account)
        now = datetime.now(UTC)
        access_token = self.tokens.issue_access_token(summary.id, summary.role.value, now)
        new_refresh_token = None
        if self.rotate_refresh_tokens:
            new_refresh_token = self.tokens.issue_refresh_token(summary.id, summary.role.value, now)
        logger.info(f"Token refreshed for account: {summary.username} (ID: {summary.id})")
        return RefreshSuccess(
            access_token=access_token, refresh_token=new_refresh_token, account=summary
        )

    async def resolve_access_token(
        self, db: AsyncSession, access_token: str | None
    ) -> Account | AuthFailure:
        """Map a bearer token to the live account row behind it."""
        result = self.tokens.verify(access_token, TokenKind.ACCESS)
        if not result.ok:
            return AuthFailure(result.error_kind)
        account = await crud.account.get_by_id(db, account_id=result.account_id)
        if account is None or not account.can_login:
            return AuthFailure(AuthErrorKind.INVALID_TOKEN)
        return account

    async def logout(
        self,
        db: AsyncSession,
        access_token: str | None = None,
        ip_address: str | None = None,
    ) -> LogoutAck:
        """
        Tokens are stateless, so logout only records the event; discarding
        the tokens is up to the client.
        """
        account_id = None
        if access_token:
            result = self.tokens.verify(access_token, TokenKind.ACCESS)
            if result.ok:
                account_id = result.account_id
        await audit_service.log_action(
            db,
            audit_service.LOGOUT,
            "Logout",
            status=AuditStatus.SUCCESS,
            performed_by=account_id,
            affected_member=account_id,
            ip_address=ip_address,
        )
        return LogoutAck(account_id=account_id)

    # --- Account management ---

    async def register(
        self,
        db: AsyncSession,
        data: AccountCreate,
        performed_by: int | None = None,
    ) -> AccountRead:
        """
        Create an account, hashing the password with the same helper login verifies with.

        Raises:
            DuplicateAccount: the username is taken.
        """
        if await crud.account.get_by_username(db, username=data.username) is not None:
            raise DuplicateAccount(data.username)

        password_hash = await hash_password_async(data.password)
        account = await crud.account.create(
            db,
            username=data.username,
            full_name=data.full_name,
            password_hash=password_hash,
            role=data.role.value,
            status=data.status.value,
            email=data.email,
        )
        created = AccountRead.model_validate(account)
        logger.info(f"Account {created.id} ({created.username}) registered with role {created.role.value}")
        await audit_service.log_action(
            db,
            audit_service.ACCOUNT_REGISTERED,
            f"Account {created.username} registered with role {created.role.value}",
            status=AuditStatus.SUCCESS,
            performed_by=performed_by,
            affected_member=created.id,
            performer_type=PerformerType.MEMBER if performed_by else PerformerType.SYSTEM,
        )
        return created

    async def change_password(
        self,
        db: AsyncSession,
        account: Account,
        current_password: str,
        new_password: str,
    ) -> AccountSummary | AuthFailure:
        summary = AccountSummary.model_validate(account)
        if not await verify_password_async(current_password, account.password_hash):
            logger.warning(f"Password change failed for {summary.username}: incorrect current password")
            await audit_service.log_action(
                db,
                audit_service.PASSWORD_CHANGE_FAILED,
                "Current password did not match",
                status=AuditStatus.FAILED,
                performed_by=summary.id,
                affected_member=summary.id,
            )
            return AuthFailure(AuthErrorKind.INVALID_CREDENTIALS)

        password_hash = await hash_password_async(new_password)
        await crud.account.update_password(db, account=account, password_hash=password_hash)
        logger.info(f"Password changed successfully for {summary.username}.")
        await audit_service.log_action(
            db,
            audit_service.PASSWORD_CHANGED,
            "Password changed",
            status=AuditStatus.SUCCESS,
            performed_by=summary.id,
            affected_member=summary.id,
        )
        return summary

    async def assign_password(
        self,
        db: AsyncSession,
        account_id: int,
        password: str,
        performed_by: int | None = None,
    ) -> AccountRead:
        """
        Admin sets a member's password, e.g. for a pending member without one.

        Clears the lockout state. A pending account becomes registered, so it can sign in.

        Raises:
            AccountNotFound: no account with this id.
        """
        account = await crud.account.get_by_id(db, account_id=account_id)
        if account is None:
            raise AccountNotFound(account_id)

        new_status = None
        if account.status == AccountStatus.PENDING.value:
            new_status = AccountStatus.REGISTERED.value
        password_hash = await hash_password_async(password)
        await crud.account.update_password(
            db, account=account, password_hash=password_hash, status=new_status
        )
        updated = AccountRead.model_validate(account)
        logger.info(f"Password assigned to account {account_id} by {performed_by}")
        await audit_service.log_action(
            db,
            audit_service.PASSWORD_ASSIGNED,
            f"Password assigned to {updated.username}",
            status=AuditStatus.SUCCESS,
            performed_by=performed_by,
            affected_member=account_id,
            performer_type=PerformerType.MEMBER if performed_by else PerformerType.SYSTEM,
        )
        return updated

    async def unlock(
        self,
        db: AsyncSession,
        account_id: int,
        performed_by: int | None = None,
    ) -> AccountRead:
        """
        Clear the failure counter and any active lock.

        Raises:
            AccountNotFound: no account with this id.
        """
        account = await crud.account.get_by_id(db, account_id=account_id)
        if account is None:
            raise AccountNotFound(account_id)

        await crud.account.reset_failed_logins(db, account=account, state=UNLOCKED_STATE)
        unlocked = AccountRead.model_validate(account)
        logger.info(f"Account {account_id} unlocked by {performed_by}")
        await audit_service.log_action(
            db,
            audit_service.ACCOUNT_UNLOCKED,
            f"Account {unlocked.username} unlocked",
            status=AuditStatus.SUCCESS,
            performed_by=performed_by,
            affected_member=account_id,
            performer_type=PerformerType.MEMBER if performed_by else PerformerType.SYSTEM,
        )
        return unlocked

    async def ensure_first_superuser(
        self, db: AsyncSession, username: str, password: str, full_name: str
    ) -> None:
        existing = await crud.account.get_by_username(db, username=username)
        if existing is not None:
            logger.info(f"Initial superuser {username} (ID: {existing.id}) already exists.")
            return
        logger.info(f"Initial superuser {username} not found, creating...")
        await self.register(
            db,
            AccountCreate(
                username=username,
                full_name=full_name,
                password=password,
                role="superuser",
                status=AccountStatus.ACTIVE,
            ),
        )
