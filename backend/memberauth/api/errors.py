# backend/memberauth/api/errors.py
from datetime import UTC, datetime

from fastapi import HTTPException, status

from memberauth.exceptions import AuthErrorKind, AuthFailure

# Unknown username and wrong password must be indistinguishable to the client.
_INVALID_CREDENTIALS = (status.HTTP_401_UNAUTHORIZED, "LOGIN_BAD_CREDENTIALS")

_FAILURE_RESPONSES = {
    AuthErrorKind.INVALID_CREDENTIALS: _INVALID_CREDENTIALS,
    AuthErrorKind.ACCOUNT_LOCKED: (status.HTTP_403_FORBIDDEN, "LOGIN_ACCOUNT_LOCKED"),
    AuthErrorKind.ACCOUNT_INACTIVE: (status.HTTP_403_FORBIDDEN, "LOGIN_USER_INACTIVE"),
    # Expired and invalid tokens share one external response.
    AuthErrorKind.EXPIRED_TOKEN: (status.HTTP_401_UNAUTHORIZED, "REFRESH_TOKEN_INVALID"),
    AuthErrorKind.INVALID_TOKEN: (status.HTTP_401_UNAUTHORIZED, "REFRESH_TOKEN_INVALID"),
    AuthErrorKind.TWO_FACTOR_INVALID_CODE: (status.HTTP_401_UNAUTHORIZED, "TWOFA_INVALID_CODE"),
    AuthErrorKind.TWO_FACTOR_CHALLENGE_EXPIRED: (
        status.HTTP_401_UNAUTHORIZED,
        "TWOFA_CHALLENGE_EXPIRED",
    ),
    AuthErrorKind.TWO_FACTOR_CHALLENGE_INVALID: (status.HTTP_401_UNAUTHORIZED, "TWOFA_BAD_CHALLENGE"),
}


def auth_failure_to_http(failure: AuthFailure, now: datetime | None = None) -> HTTPException:
    status_code, detail = _FAILURE_RESPONSES[failure.kind]
    headers: dict[str, str] = {}
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    if failure.kind is AuthErrorKind.ACCOUNT_LOCKED and failure.locked_until is not None:
        now = now or datetime.now(UTC)
        retry_after = max(0, int((failure.locked_until - now).total_seconds()) + 1)
        headers["Retry-After"] = str(retry_after)
    return HTTPException(status_code=status_code, detail=detail, headers=headers or None)
