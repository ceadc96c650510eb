# backend/memberauth/core/tokens.py
"""
Access / refresh token issuing and verification.

Tokens are HS256 JWTs signed with python-jose. Access and refresh tokens use
separate secrets; when no refresh secret is configured the access secret is
reused. Nothing is stored server side: validity is signature plus expiry.

Two-factor challenge tokens are a third kind, signed with the refresh secret
and valid for a few minutes between the password and the TOTP step.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt
from jose.utils import base64url_decode, base64url_encode

from memberauth.core.config import Settings
from memberauth.exceptions import AuthErrorKind, ConfigurationError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
TWO_FACTOR_CHALLENGE_TYPE = "2fa_challenge"


class TokenKind(str, enum.Enum):
    ACCESS = ACCESS_TOKEN_TYPE
    REFRESH = REFRESH_TOKEN_TYPE
    TWO_FACTOR_CHALLENGE = TWO_FACTOR_CHALLENGE_TYPE


class TokenStatus(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True)
class TokenConfig:
    access_secret: str
    refresh_secret: str
    algorithm: str = "HS256"
    access_lifetime: timedelta = timedelta(minutes=15)
    refresh_lifetime: timedelta = timedelta(days=7)
    challenge_lifetime: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        """
        Build the signing configuration, failing fast when no secret is set.

        Raises:
            ConfigurationError: neither JWT_SECRET_KEY nor a refresh secret is configured.
        """
        access_secret = settings.SECRET_KEY
        if not access_secret:
            raise ConfigurationError(
                "JWT_SECRET_KEY is not configured; refusing to issue unsigned sessions."
            )
        refresh_secret = settings.JWT_REFRESH_SECRET_KEY
        if not refresh_secret:
            logger.warning("JWT_REFRESH_SECRET_KEY not set; refresh tokens use the access secret.")
            refresh_secret = access_secret
        return cls(
            access_secret=access_secret,
            refresh_secret=refresh_secret,
            algorithm=settings.ALGORITHM,
            access_lifetime=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_lifetime=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            challenge_lifetime=timedelta(minutes=settings.TWO_FACTOR_CHALLENGE_MINUTES),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class TokenVerification:
    status: TokenStatus
    account_id: int | None = None
    role: str | None = None
    reason: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.VALID

    @property
    def error_kind(self) -> AuthErrorKind | None:
        if self.status is TokenStatus.EXPIRED:
            return AuthErrorKind.EXPIRED_TOKEN
        if self.status is TokenStatus.INVALID:
            return AuthErrorKind.INVALID_TOKEN
        return None


def _invalid(reason: str) -> TokenVerification:
    return TokenVerification(status=TokenStatus.INVALID, reason=reason)


def has_canonical_signature(token: str) -> bool:
    """
    True when the signature segment is the one and only base64url spelling of its bytes.

    The last character of an HS256 signature carries unused padding bits, so
    several spellings decode to the same MAC. Only the encoder's own output is
    accepted, which keeps a token byte-for-byte what was issued.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return False
    signature = parts[2].encode("ascii", errors="replace")
    try:
        return base64url_encode(base64url_decode(signature)) == signature
    except (ValueError, TypeError):
        return False


class TokenIssuer:
    def __init__(self, config: TokenConfig):
        self.config = config

    def _secret_for(self, kind: TokenKind) -> str:
        # Challenge tokens share the refresh secret; the type claim keeps the two apart.
        if kind in (TokenKind.REFRESH, TokenKind.TWO_FACTOR_CHALLENGE):
            return self.config.refresh_secret
        return self.config.access_secret

    def _encode(
        self,
        kind: TokenKind,
        account_id: int,
        role: str,
        lifetime: timedelta,
        now: datetime | None,
    ) -> str:
        issued_at = now or datetime.now(UTC)
        to_encode: dict[str, Any] = {
            "sub": str(account_id),
            "role": role,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + lifetime).timestamp()),
            "type": kind.value,
        }
        if kind is TokenKind.REFRESH:
            to_encode["jti"] = str(uuid.uuid4())
        return jwt.encode(to_encode, self._secret_for(kind), algorithm=self.config.algorithm)

    def issue_access_token(self, account_id: int, role: str, now: datetime | None = None) -> str:
        return self._encode(
            TokenKind.ACCESS, account_id, role, self.config.access_lifetime, now
        )

    def issue_refresh_token(self, account_id: int, role: str, now: datetime | None = None) -> str:
        return self._encode(
            TokenKind.REFRESH, account_id, role, self.config.refresh_lifetime, now
        )

    def issue_challenge_token(self, account_id: int, role: str, now: datetime | None = None) -> str:
        """Short-lived proof that the password step passed; exchanged for a pair with a TOTP code."""
        return self._encode(
            TokenKind.TWO_FACTOR_CHALLENGE, account_id, role, self.config.challenge_lifetime, now
        )

    def issue_pair(self, account_id: int, role: str) -> TokenPair:
        now = datetime.now(UTC)
        return TokenPair(
            access_token=self.issue_access_token(account_id, role, now),
            refresh_token=self.issue_refresh_token(account_id, role, now),
        )

    def verify(self, token: str | None, kind: TokenKind = TokenKind.ACCESS) -> TokenVerification:
        """
        Check signature, expiry and token type.

        Never raises for bad input; callers branch on the returned status.
        """
        if not token:
            return _invalid("missing")
        if not has_canonical_signature(token):
            return _invalid("malformed_or_bad_signature")
        try:
            payload = jwt.decode(
                token,
                self._secret_for(kind),
                algorithms=[self.config.algorithm],
                options={"require_exp": True, "require_sub": True},
            )
        except ExpiredSignatureError:
            return TokenVerification(status=TokenStatus.EXPIRED, reason="expired")
        except (JWTError, ValueError, TypeError) as e:
            logger.debug(f"Rejected {kind.value} token: {e}")
            return _invalid("malformed_or_bad_signature")

        if payload.get("type") != kind.value:
            return _invalid("wrong_type")
        role = payload.get("role")
        if not isinstance(role, str) or not role:
            return _invalid("missing_role")
        try:
            account_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return _invalid("bad_subject")

        return TokenVerification(
            status=TokenStatus.VALID, account_id=account_id, role=role, claims=payload
        )
