# backend/memberauth/api/routers/two_factor.py
"""
Two-factor (TOTP) endpoints.

Provides endpoints for:
- Reading the current account's two-factor status
- Setting up TOTP (start, then confirm with a code)
- Disabling TOTP with a code or recovery code
- The second login step, exchanging a challenge token and code for tokens
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth.api.deps import get_auth_service, get_current_account
from memberauth.api.errors import auth_failure_to_http
from memberauth.api.routers.auth import (
    TWO_FACTOR_CHALLENGE_COOKIE,
    _clear_challenge_cookie,
    _set_refresh_cookie,
)
from memberauth.core.config import settings
from memberauth.core.rate_limit import get_real_client_ip, limiter
from memberauth.db.models.account import Account
from memberauth.db.session import get_async_session
from memberauth.exceptions import AuthFailure
from memberauth.schemas.auth import LoginResponse, MessageResponse
from memberauth.schemas.two_factor import (
    TwoFactorConfirmRequest,
    TwoFactorConfirmResponse,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
)
from memberauth.services import two_factor_service
from memberauth.services.auth_service import AuthService

logger = logging.getLogger(__name__)

two_factor_router = APIRouter(
    tags=["Auth - Two-Factor"],
)


@two_factor_router.get(
    "/status", response_model=TwoFactorStatusResponse, summary="Get two-factor status"
)
async def get_two_factor_status(account: Account = Depends(get_current_account)):
    current = two_factor_service.get_status(account)
    return TwoFactorStatusResponse(
        enabled=current.enabled,
        pending_setup=current.pending_setup,
        confirmed_at=current.confirmed_at,
        recovery_codes_remaining=current.recovery_codes_remaining,
    )


@two_factor_router.post(
    "/setup", response_model=TwoFactorSetupResponse, summary="Start two-factor setup"
)
async def setup_two_factor(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Generate a TOTP secret for the current account.

    The member adds it to an authenticator app (manually or from the
    otpauth URI) and then confirms with a code. Two-factor stays off until then.
    """
    setup = await two_factor_service.setup_two_factor(db, account)
    return TwoFactorSetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri)


@two_factor_router.post(
    "/confirm", response_model=TwoFactorConfirmResponse, summary="Confirm and enable two-factor"
)
async def confirm_two_factor(
    body: TwoFactorConfirmRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_async_session),
):
    recovery_codes = await two_factor_service.confirm_two_factor(db, account, body.code)
    return TwoFactorConfirmResponse(recovery_codes=recovery_codes)


@two_factor_router.post("/disable", response_model=MessageResponse, summary="Disable two-factor")
async def disable_two_factor(
    body: TwoFactorDisableRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_async_session),
):
    await two_factor_service.disable_two_factor(
        db, account, code=body.code, recovery_code=body.recovery_code
    )
    return MessageResponse(message="TWOFA_DISABLED")


@two_factor_router.post(
    "/verify", response_model=LoginResponse, summary="Second login step: verify a two-factor code"
)
@limiter.limit(settings.TWO_FACTOR_RATE_LIMIT)
async def verify_two_factor_login(
    request: Request,
    response: Response,
    body: TwoFactorVerifyRequest,
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    """
    Called after /auth/login answered with a two-factor challenge.

    The challenge token comes from the body or the cookie set by the login endpoint.
    """
    challenge_token = body.challenge_token or request.cookies.get(TWO_FACTOR_CHALLENGE_COOKIE)
    if not challenge_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="TWOFA_NO_CHALLENGE"
        )

    outcome = await service.verify_two_factor(
        db, challenge_token, body.code, ip_address=get_real_client_ip(request)
    )
    if isinstance(outcome, AuthFailure):
        raise auth_failure_to_http(outcome)

    _set_refresh_cookie(response, outcome.tokens.refresh_token)
    _clear_challenge_cookie(response)
    return LoginResponse(
        access_token=outcome.tokens.access_token,
        refresh_token=outcome.tokens.refresh_token,
        account=outcome.account,
    )
