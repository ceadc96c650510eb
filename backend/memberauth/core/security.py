# backend/memberauth/core/security.py

import base64
import hashlib
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, MultiFernet
from fastapi_users.password import PasswordHelper
from starlette.concurrency import run_in_threadpool

from memberauth.core.config import settings
from memberauth.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# --- Password Hashing ---
password_helper = PasswordHelper()

# Verified against when the username is unknown so both failure paths cost one hash check.
_DUMMY_PASSWORD_HASH = password_helper.hash("memberauth-dummy-password")


def get_password_hash(password: str) -> str:
    """Hashes a password using the configured password helper."""
    return password_helper.hash(password)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Verifies a plain password against a hashed password."""
    if not hashed_password:
        # Same hashing cost as a real check, so a missing hash is not observable by timing.
        password_helper.verify_and_update(plain_password, _DUMMY_PASSWORD_HASH)
        return False
    verified, _ = password_helper.verify_and_update(plain_password, hashed_password)
    return verified


async def hash_password_async(password: str) -> str:
    return await run_in_threadpool(get_password_hash, password)


async def verify_password_async(plain_password: str, hashed_password: str | None) -> bool:
    # Slow hashes are CPU bound; keep them off the event loop.
    return await run_in_threadpool(verify_password, plain_password, hashed_password)


async def burn_password_check(plain_password: str) -> None:
    """Spend the same hashing effort as a real verification and discard the result."""
    await run_in_threadpool(verify_password, plain_password, _DUMMY_PASSWORD_HASH)


# --- Encryption at rest (TOTP secrets, recovery codes) ---


def _derive_fernet_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


@lru_cache(maxsize=1)
def _get_fernet() -> MultiFernet:
    """
    Keyring built from DATA_ENCRYPTION_KEYS: the first key encrypts, every key decrypts.

    Without configured keys the JWT signing secret is used as key material.
    """
    keys = list(settings.DATA_ENCRYPTION_KEYS)
    if not keys:
        if not settings.SECRET_KEY:
            raise ConfigurationError("No DATA_ENCRYPTION_KEYS or JWT_SECRET_KEY to encrypt with.")
        logger.warning("DATA_ENCRYPTION_KEYS not set; deriving the encryption key from JWT_SECRET_KEY.")
        keys = [settings.SECRET_KEY]
    return MultiFernet([Fernet(_derive_fernet_key(key)) for key in keys])


def encrypt_value(value: str) -> str:
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt_value(token: str) -> str:
    """Raises cryptography.fernet.InvalidToken when no configured key opens the value."""
    return _get_fernet().decrypt(token.encode()).decode()
