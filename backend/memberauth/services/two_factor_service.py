# backend/memberauth/services/two_factor_service.py
"""
Two-factor authentication (TOTP) for member accounts.

Provides functions for:
- Generating and verifying TOTP codes (authenticator apps)
- Setup in two steps: start (secret + otpauth URI), then confirm with a code
- Recovery codes, stored as encrypted sha256 hashes and consumed on use
- Disabling with a TOTP or recovery code

The second login step itself lives in AuthService.verify_two_factor, next to
the lockout handling it shares with the password step.
"""

import hashlib
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime

import pyotp
from cryptography.fernet import InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth import crud
from memberauth.core.config import settings
from memberauth.core.security import decrypt_value, encrypt_value
from memberauth.db.models.account import Account
from memberauth.db.models.audit_log import AuditStatus
from memberauth.exceptions import TwoFactorError
from memberauth.services import audit_service

logger = logging.getLogger(__name__)

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_LENGTH = 10

# Client-facing refusal codes
ALREADY_ENABLED = "TWOFA_ALREADY_ENABLED"
NOT_INITIALIZED = "TWOFA_NOT_INITIALIZED"
NOT_ENABLED = "TWOFA_NOT_ENABLED"
INVALID_CODE = "TWOFA_INVALID_CODE"
DISABLE_FAILED = "TWOFA_DISABLE_FAILED"

METHOD_TOTP = "totp"
METHOD_RECOVERY_CODE = "recovery_code"


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_uri: str


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending_setup: bool
    confirmed_at: datetime | None
    recovery_codes_remaining: int


def generate_totp_secret() -> str:
    """Generate a new TOTP secret."""
    return pyotp.random_base32()


def get_totp_uri(secret: str, label: str) -> str:
    """Provisioning URI for authenticator apps (the client renders it as a QR code)."""
    return pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=settings.TWO_FACTOR_ISSUER)


def verify_totp_code(secret: str, code: str) -> bool:
    """
    Verify a TOTP code against the secret.

    Allows for 1 window of tolerance (30 seconds before/after).
    """
    return pyotp.TOTP(secret).verify(code.strip().replace(" ", ""), valid_window=1)


def generate_recovery_codes() -> list[str]:
    return [
        secrets.token_hex(RECOVERY_CODE_LENGTH // 2).upper() for _ in range(RECOVERY_CODE_COUNT)
    ]


def hash_recovery_code(code: str) -> str:
    normalized = code.upper().replace("-", "").replace(" ", "")
    return hashlib.sha256(normalized.encode()).hexdigest()


def seal_recovery_codes(codes: list[str]) -> str | None:
    """Hash plain codes and encrypt the list for storage."""
    if not codes:
        return None
    return encrypt_value(json.dumps([hash_recovery_code(code) for code in codes]))


def _open_recovery_hashes(account: Account) -> list[str]:
    if not account.two_factor_recovery_codes:
        return []
    try:
        return json.loads(decrypt_value(account.two_factor_recovery_codes))
    except (InvalidToken, ValueError) as e:
        logger.error(f"Recovery codes for account {account.id} could not be read: {e}")
        return []


def _read_secret(account: Account) -> str | None:
    if not account.two_factor_secret:
        return None
    try:
        return decrypt_value(account.two_factor_secret)
    except InvalidToken:
        logger.error(f"TOTP secret for account {account.id} could not be decrypted.")
        return None


def get_status(account: Account) -> TwoFactorStatus:
    return TwoFactorStatus(
        enabled=account.two_factor_enabled,
        pending_setup=bool(account.two_factor_secret) and not account.two_factor_enabled,
        confirmed_at=account.two_factor_confirmed_at,
        recovery_codes_remaining=len(_open_recovery_hashes(account)),
    )


async def check_second_factor(db: AsyncSession, account: Account, code: str) -> str | None:
    """
    Match `code` as a TOTP code, then as an unused recovery code.

    Returns the method that matched, or None. A matching recovery code is
    removed from the account before returning.
    """
    secret = _read_secret(account)
    if secret and verify_totp_code(secret, code):
        return METHOD_TOTP

    hashes = _open_recovery_hashes(account)
    code_hash = hash_recovery_code(code)
    if code_hash not in hashes:
        return None

    hashes.remove(code_hash)
    await crud.account.update_two_factor(
        db,
        account=account,
        secret=account.two_factor_secret,
        enabled=account.two_factor_enabled,
        confirmed_at=account.two_factor_confirmed_at,
        recovery_codes=encrypt_value(json.dumps(hashes)) if hashes else None,
    )
    logger.info(f"Recovery code used for account {account.id}, {len(hashes)} remaining")
    return METHOD_RECOVERY_CODE


async def setup_two_factor(db: AsyncSession, account: Account) -> TwoFactorSetup:
    """
    Start setup: store a fresh encrypted secret (not yet enabled) and return it.

    Raises:
        TwoFactorError: two-factor is already enabled.
    """
    if account.two_factor_enabled:
        raise TwoFactorError(
            ALREADY_ENABLED, "Two-factor is already enabled. Disable it first to reconfigure."
        )

    account_id = account.id
    label = account.email or account.username
    secret = generate_totp_secret()
    await crud.account.update_two_factor(
        db,
        account=account,
        secret=encrypt_value(secret),
        enabled=False,
        confirmed_at=None,
        recovery_codes=None,
    )
    logger.info(f"Two-factor setup started for account {account_id}")
    await audit_service.log_action(
        db,
        audit_service.TWO_FACTOR_SETUP_STARTED,
        "Two-factor setup started",
        status=AuditStatus.SUCCESS,
        performed_by=account_id,
        affected_member=account_id,
    )
    return TwoFactorSetup(secret=secret, otpauth_uri=get_totp_uri(secret, label))


async def confirm_two_factor(db: AsyncSession, account: Account, code: str) -> list[str]:
    """
    Enable two-factor once the member proves their authenticator produces valid codes.

    Returns the plain recovery codes; only their hashes are kept.

    Raises:
        TwoFactorError: already enabled, setup not started, or the code is wrong.
    """
    account_id = account.id
    if account.two_factor_enabled:
        raise TwoFactorError(ALREADY_ENABLED)
    secret = _read_secret(account)
    if secret is None:
        raise TwoFactorError(NOT_INITIALIZED, "Two-factor setup has not been started.")
    if not verify_totp_code(secret, code):
        logger.warning(f"Invalid TOTP code during two-factor setup for account {account_id}")
        await audit_service.log_action(
            db,
            audit_service.TWO_FACTOR_FAILED,
            "Invalid code while confirming two-factor setup",
            status=AuditStatus.FAILED,
            performed_by=account_id,
            affected_member=account_id,
        )
        raise TwoFactorError(INVALID_CODE, "Invalid verification code.")

    recovery_codes = generate_recovery_codes()
    await crud.account.update_two_factor(
        db,
        account=account,
        secret=account.two_factor_secret,
        enabled=True,
        confirmed_at=datetime.now(UTC),
        recovery_codes=seal_recovery_codes(recovery_codes),
    )
    logger.info(f"Two-factor enabled for account {account_id}")
    await audit_service.log_action(
        db,
        audit_service.TWO_FACTOR_ENABLED,
        "Two-factor authentication enabled",
        status=AuditStatus.SUCCESS,
        performed_by=account_id,
        affected_member=account_id,
    )
    return recovery_codes


async def disable_two_factor(
    db: AsyncSession,
    account: Account,
    *,
    code: str | None = None,
    recovery_code: str | None = None,
) -> None:
    """
    Turn two-factor off after a valid TOTP code or recovery code.

    Raises:
        TwoFactorError: two-factor is not enabled, or neither code matches.
    """
    account_id = account.id
    if not account.two_factor_enabled:
        raise TwoFactorError(NOT_ENABLED, "Two-factor is not enabled.")

    verified = False
    if code:
        secret = _read_secret(account)
        verified = bool(secret) and verify_totp_code(secret, code)
    if not verified and recovery_code:
        verified = hash_recovery_code(recovery_code) in _open_recovery_hashes(account)

    if not verified:
        logger.warning(f"Two-factor disable refused for account {account_id}: no valid code")
        await audit_service.log_action(
            db,
            audit_service.TWO_FACTOR_DISABLE_FAILED,
            "Invalid code or recovery code",
            status=AuditStatus.FAILED,
            performed_by=account_id,
            affected_member=account_id,
        )
        raise TwoFactorError(DISABLE_FAILED, "Invalid code or recovery code.")

    await crud.account.update_two_factor(
        db, account=account, secret=None, enabled=False, confirmed_at=None, recovery_codes=None
    )
    logger.info(f"Two-factor disabled for account {account_id}")
    await audit_service.log_action(
        db,
        audit_service.TWO_FACTOR_DISABLED,
        "Two-factor authentication disabled",
        status=AuditStatus.SUCCESS,
        performed_by=account_id,
        affected_member=account_id,
    )
