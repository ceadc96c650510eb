# backend/memberauth/api/routers/auth.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth.api.deps import get_auth_service, get_bearer_token, get_current_account
from memberauth.api.errors import auth_failure_to_http
from memberauth.core.config import settings
from memberauth.core.rate_limit import get_real_client_ip, limiter
from memberauth.db.models.account import Account
from memberauth.db.session import get_async_session
from memberauth.exceptions import AuthFailure
from memberauth.schemas.account import AccountSummary
from memberauth.schemas.auth import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    Token,
)
from memberauth.schemas.two_factor import TwoFactorChallengeResponse
from memberauth.services.auth_service import AuthService, TwoFactorChallenge

logger = logging.getLogger(__name__)

REFRESH_TOKEN_LIFETIME_SECONDS = settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60
REFRESH_COOKIE_PATH = f"{settings.API_V1_STR}/auth"
TWO_FACTOR_CHALLENGE_COOKIE = "memberTwoFaChallenge"


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    response.set_cookie(
        key=settings.REFRESH_TOKEN_COOKIE_NAME,
        value=refresh_token,
        max_age=REFRESH_TOKEN_LIFETIME_SECONDS,
        path=REFRESH_COOKIE_PATH,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite=settings.COOKIE_SAMESITE,
    )


def _set_challenge_cookie(response: Response, challenge_token: str, max_age: int) -> None:
    response.set_cookie(
        key=TWO_FACTOR_CHALLENGE_COOKIE,
        value=challenge_token,
        max_age=max_age,
        path=REFRESH_COOKIE_PATH,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite=settings.COOKIE_SAMESITE,
    )


def _clear_challenge_cookie(response: Response) -> None:
    response.delete_cookie(
        key=TWO_FACTOR_CHALLENGE_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite=settings.COOKIE_SAMESITE,
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.REFRESH_TOKEN_COOKIE_NAME,
        path=REFRESH_COOKIE_PATH,
        secure=settings.COOKIE_SECURE,
        httponly=True,
        samesite=settings.COOKIE_SAMESITE,
    )


auth_router = APIRouter(
    tags=["Auth - Authentication"],
)


# --- Login ---
@auth_router.post(
    "/login",
    response_model=LoginResponse | TwoFactorChallengeResponse,
    summary="Login for access and refresh tokens (or a two-factor challenge)",
)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(
    request: Request,
    response: Response,
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    client_ip = get_real_client_ip(request)
    logger.debug(f"Login attempt for user: {credentials.username} from IP: {client_ip}")

    outcome = await service.login(
        db, credentials.username, credentials.password, ip_address=client_ip
    )
    if isinstance(outcome, AuthFailure):
        raise auth_failure_to_http(outcome)
    if isinstance(outcome, TwoFactorChallenge):
        _set_challenge_cookie(response, outcome.challenge_token, outcome.expires_in)
        return TwoFactorChallengeResponse(
            challenge_token=outcome.challenge_token, expires_in=outcome.expires_in
        )

    _set_refresh_cookie(response, outcome.tokens.refresh_token)
    return LoginResponse(
        access_token=outcome.tokens.access_token,
        refresh_token=outcome.tokens.refresh_token,
        account=outcome.account,
    )


# --- Refresh ---
@auth_router.post("/refresh", response_model=Token, summary="Refresh access token")
async def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest | None = None,
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(
        settings.REFRESH_TOKEN_COOKIE_NAME
    )
    if not refresh_token:
        logger.debug("Refresh attempt without refresh token.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="REFRESH_TOKEN_MISSING"
        )

    outcome = await service.refresh(db, refresh_token, ip_address=get_real_client_ip(request))
    if isinstance(outcome, AuthFailure):
        error = auth_failure_to_http(outcome)
        # Raising would drop the cookie deletion, so build the response here.
        failure_response = JSONResponse(
            status_code=error.status_code, content={"detail": error.detail}, headers=error.headers
        )
        _clear_refresh_cookie(failure_response)
        return failure_response

    if outcome.refresh_token:
        _set_refresh_cookie(response, outcome.refresh_token)
    return Token(access_token=outcome.access_token, refresh_token=outcome.refresh_token)


# --- Logout ---
@auth_router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Logout (client discards its tokens)",
    status_code=status.HTTP_200_OK,
)
async def logout(
    request: Request,
    response: Response,
    token: str | None = Depends(get_bearer_token),
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    ack = await service.logout(db, token, ip_address=get_real_client_ip(request))
    logger.info(f"Logout for account {ack.account_id}. Deleting cookie.")
    _clear_refresh_cookie(response)
    return MessageResponse(message="LOGOUT_SUCCESSFUL")


@auth_router.get("/me", response_model=AccountSummary, summary="Current account")
async def read_current_account(account: Account = Depends(get_current_account)):
    return AccountSummary.model_validate(account)


# --- Change Password (for logged-in members) ---
@auth_router.patch("/password", response_model=MessageResponse, summary="Change own password")
@limiter.limit(settings.PASSWORD_CHANGE_RATE_LIMIT)
async def change_password(
    request: Request,  # noqa: ARG001 - Name 'request' required by rate limiter
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    outcome = await service.change_password(db, account, body.current_password, body.new_password)
    if isinstance(outcome, AuthFailure):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect."
        )
    return MessageResponse(message="Password changed successfully.")
