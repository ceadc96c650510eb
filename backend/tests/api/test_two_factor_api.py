import pyotp
import pytest
from fastapi import status
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth.api.routers.auth import TWO_FACTOR_CHALLENGE_COOKIE
from memberauth.core.config import settings
from memberauth.core.tokens import TokenIssuer
from tests.factories import DEFAULT_PASSWORD, DEFAULT_TOTP_SECRET, AccountFactory, wrong_totp_code

LOGIN_URL = f"{settings.API_V1_STR}/auth/login"
TWO_FACTOR_PREFIX = f"{settings.API_V1_STR}/auth/2fa"


@pytest.fixture
def bearer(token_issuer: TokenIssuer):
    def _headers(account_id: int, role: str = "member") -> dict[str, str]:
        return {"Authorization": f"Bearer {token_issuer.issue_access_token(account_id, role)}"}

    return _headers


def set_cookie_headers(response) -> str:
    return " ".join(response.headers.get_list("set-cookie"))


@pytest.mark.asyncio
async def test_login_then_verify_issues_tokens(test_client: AsyncClient, db_session: AsyncSession):
    account = await AccountFactory.create_with_two_factor(db_session, username="doublelock")

    login = await test_client.post(
        LOGIN_URL, json={"username": "doublelock", "password": DEFAULT_PASSWORD}
    )

    assert login.status_code == status.HTTP_200_OK
    challenge = login.json()
    assert challenge["requires_two_factor"] is True
    assert challenge["expires_in"] == 300
    assert "access_token" not in challenge
    assert TWO_FACTOR_CHALLENGE_COOKIE in set_cookie_headers(login)
    assert settings.REFRESH_TOKEN_COOKIE_NAME not in set_cookie_headers(login)

    verified = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/verify",
        json={
            "code": pyotp.TOTP(DEFAULT_TOTP_SECRET).now(),
            "challenge_token": challenge["challenge_token"],
        },
    )

    assert verified.status_code == status.HTTP_200_OK
    data = verified.json()
    assert data["token_type"] == "bearer"
    assert data["account"]["id"] == account.id
    cookies = set_cookie_headers(verified)
    assert settings.REFRESH_TOKEN_COOKIE_NAME in cookies
    assert TWO_FACTOR_CHALLENGE_COOKIE in cookies


@pytest.mark.asyncio
async def test_verify_reads_challenge_cookie(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_with_two_factor(db_session, username="cookiejar")
    test_client.cookies.set(
        TWO_FACTOR_CHALLENGE_COOKIE, token_issuer.issue_challenge_token(account.id, "member")
    )

    response = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/verify", json={"code": pyotp.TOTP(DEFAULT_TOTP_SECRET).now()}
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["account"]["username"] == "cookiejar"


@pytest.mark.asyncio
async def test_verify_without_challenge(test_client: AsyncClient):
    response = await test_client.post(f"{TWO_FACTOR_PREFIX}/verify", json={"code": "123456"})

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json() == {"detail": "TWOFA_NO_CHALLENGE"}


@pytest.mark.asyncio
async def test_verify_failures(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_with_two_factor(db_session, username="mistyped")
    challenge = token_issuer.issue_challenge_token(account.id, "member")

    wrong = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/verify",
        json={"code": wrong_totp_code(DEFAULT_TOTP_SECRET), "challenge_token": challenge},
    )
    forged = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/verify",
        json={
            "code": pyotp.TOTP(DEFAULT_TOTP_SECRET).now(),
            "challenge_token": token_issuer.issue_access_token(account.id, "member"),
        },
    )

    assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
    assert wrong.json() == {"detail": "TWOFA_INVALID_CODE"}
    assert forged.status_code == status.HTTP_401_UNAUTHORIZED
    assert forged.json() == {"detail": "TWOFA_BAD_CHALLENGE"}


@pytest.mark.asyncio
async def test_setup_confirm_and_disable(
    test_client: AsyncClient, db_session: AsyncSession, bearer
):
    account = await AccountFactory.create_account(db_session, username="careful")
    headers = bearer(account.id)

    before = await test_client.get(f"{TWO_FACTOR_PREFIX}/status", headers=headers)
    setup = await test_client.post(f"{TWO_FACTOR_PREFIX}/setup", headers=headers)
    pending = await test_client.get(f"{TWO_FACTOR_PREFIX}/status", headers=headers)

    assert before.json()["enabled"] is False
    assert before.json()["pending_setup"] is False
    assert setup.status_code == status.HTTP_200_OK
    secret = setup.json()["secret"]
    assert setup.json()["otpauth_uri"].startswith("otpauth://totp/")
    assert pending.json()["pending_setup"] is True

    rejected = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/confirm", json={"code": wrong_totp_code(secret)}, headers=headers
    )
    confirmed = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/confirm", json={"code": pyotp.TOTP(secret).now()}, headers=headers
    )
    again = await test_client.post(f"{TWO_FACTOR_PREFIX}/setup", headers=headers)
    enabled = await test_client.get(f"{TWO_FACTOR_PREFIX}/status", headers=headers)

    assert rejected.status_code == status.HTTP_400_BAD_REQUEST
    assert rejected.json() == {"detail": "TWOFA_INVALID_CODE"}
    assert confirmed.status_code == status.HTTP_200_OK
    recovery_codes = confirmed.json()["recovery_codes"]
    assert len(recovery_codes) == 10
    assert again.json() == {"detail": "TWOFA_ALREADY_ENABLED"}
    assert enabled.json()["enabled"] is True
    assert enabled.json()["recovery_codes_remaining"] == 10

    disabled = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/disable", json={"recovery_code": recovery_codes[0]}, headers=headers
    )
    after = await test_client.get(f"{TWO_FACTOR_PREFIX}/status", headers=headers)

    assert disabled.status_code == status.HTTP_200_OK
    assert disabled.json() == {"message": "TWOFA_DISABLED"}
    assert after.json()["enabled"] is False


@pytest.mark.asyncio
async def test_disable_needs_a_code(test_client: AsyncClient, db_session: AsyncSession, bearer):
    account = await AccountFactory.create_with_two_factor(db_session, username="stubborn")

    empty = await test_client.post(f"{TWO_FACTOR_PREFIX}/disable", json={}, headers=bearer(account.id))
    wrong = await test_client.post(
        f"{TWO_FACTOR_PREFIX}/disable",
        json={"code": wrong_totp_code(DEFAULT_TOTP_SECRET)},
        headers=bearer(account.id),
    )

    assert empty.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert wrong.status_code == status.HTTP_400_BAD_REQUEST
    assert wrong.json() == {"detail": "TWOFA_DISABLE_FAILED"}


@pytest.mark.asyncio
async def test_two_factor_management_requires_login(test_client: AsyncClient):
    response = await test_client.post(f"{TWO_FACTOR_PREFIX}/setup")

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
