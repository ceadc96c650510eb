from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import status
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth import crud
from memberauth.core.config import settings
from memberauth.core.tokens import TokenIssuer, TokenKind
from memberauth.db.models.audit_log import AuditLog
from memberauth.exceptions import StorageUnavailable
from tests.factories import DEFAULT_PASSWORD, AccountFactory

API_PREFIX = settings.API_V1_STR
LOGIN_URL = f"{API_PREFIX}/auth/login"
REFRESH_URL = f"{API_PREFIX}/auth/refresh"
LOGOUT_URL = f"{API_PREFIX}/auth/logout"
ME_URL = f"{API_PREFIX}/auth/me"
PASSWORD_URL = f"{API_PREFIX}/auth/password"
COOKIE_NAME = settings.REFRESH_TOKEN_COOKIE_NAME


async def login_as(client: AsyncClient, username: str, password: str = DEFAULT_PASSWORD):
    return await client.post(LOGIN_URL, json={"username": username, "password": password})


@pytest.mark.asyncio
async def test_login_success(test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer):
    account = await AccountFactory.create_account(db_session, username="summiteer")

    response = await login_as(test_client, "summiteer")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["account"] == {
        "id": account.id,
        "username": "summiteer",
        "full_name": account.full_name,
        "role": "member",
    }
    assert token_issuer.verify(data["access_token"], TokenKind.ACCESS).account_id == account.id
    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith(f"{COOKIE_NAME}=")
    assert "HttpOnly" in set_cookie
    assert f"Path={API_PREFIX}/auth" in set_cookie


@pytest.mark.asyncio
async def test_unknown_user_and_wrong_password_look_identical(
    test_client: AsyncClient, db_session: AsyncSession
):
    await AccountFactory.create_account(db_session, username="realperson")

    unknown = await login_as(test_client, "nobody-here", "some-password")
    wrong = await login_as(test_client, "realperson", "some-password")

    assert unknown.status_code == wrong.status_code == status.HTTP_401_UNAUTHORIZED
    assert unknown.json() == wrong.json() == {"detail": "LOGIN_BAD_CREDENTIALS"}
    assert unknown.headers["www-authenticate"] == wrong.headers["www-authenticate"] == "Bearer"
    assert "retry-after" not in unknown.headers
    assert "retry-after" not in wrong.headers


@pytest.mark.asyncio
async def test_locked_account_gets_403_with_retry_after(
    test_client: AsyncClient, db_session: AsyncSession
):
    await AccountFactory.create_account(
        db_session,
        username="lockedout",
        failed_login_attempts=5,
        last_failed_login=datetime.now(UTC),
        locked_until=datetime.now(UTC) + timedelta(minutes=20),
    )

    response = await login_as(test_client, "lockedout")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json() == {"detail": "LOGIN_ACCOUNT_LOCKED"}
    retry_after = int(response.headers["retry-after"])
    assert 19 * 60 <= retry_after <= 20 * 60 + 1


@pytest.mark.asyncio
async def test_fifth_wrong_password_locks_account(
    test_client: AsyncClient, db_session: AsyncSession
):
    await AccountFactory.create_account(db_session, username="fumbler")

    for _ in range(5):
        response = await login_as(test_client, "fumbler", "wrong-password")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    response = await login_as(test_client, "fumbler")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["detail"] == "LOGIN_ACCOUNT_LOCKED"


@pytest.mark.asyncio
async def test_inactive_account_login(test_client: AsyncClient, db_session: AsyncSession):
    await AccountFactory.create_account(db_session, username="dormant", status="inactive")

    response = await login_as(test_client, "dormant")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json() == {"detail": "LOGIN_USER_INACTIVE"}


@pytest.mark.asyncio
async def test_login_validation_error_does_not_echo_password(test_client: AsyncClient):
    response = await test_client.post(LOGIN_URL, json={"username": "", "password": "hunter2-secret"})

    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert "hunter2-secret" not in response.text


@pytest.mark.asyncio
async def test_storage_outage_returns_503(test_client: AsyncClient):
    with patch.object(
        crud.account,
        "get_by_username",
        new_callable=AsyncMock,
        side_effect=StorageUnavailable("Account lookup failed."),
    ):
        response = await login_as(test_client, "anyone")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json() == {"detail": "Service temporarily unavailable. Please try again later."}


@pytest.mark.asyncio
async def test_refresh_with_body_token(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_account(db_session)
    refresh_token = token_issuer.issue_refresh_token(account.id, "member")

    response = await test_client.post(REFRESH_URL, json={"refresh_token": refresh_token})

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert token_issuer.verify(data["access_token"], TokenKind.ACCESS).account_id == account.id
    assert token_issuer.verify(data["refresh_token"], TokenKind.REFRESH).ok


@pytest.mark.asyncio
async def test_refresh_with_cookie(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_account(db_session)
    test_client.cookies.set(COOKIE_NAME, token_issuer.issue_refresh_token(account.id, "member"))

    response = await test_client.post(REFRESH_URL)

    assert response.status_code == status.HTTP_200_OK
    assert token_issuer.verify(response.json()["access_token"], TokenKind.ACCESS).ok


@pytest.mark.asyncio
async def test_refresh_without_token(test_client: AsyncClient):
    response = await test_client.post(REFRESH_URL)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json() == {"detail": "REFRESH_TOKEN_MISSING"}


@pytest.mark.asyncio
async def test_refresh_with_bad_token_clears_cookie(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_account(db_session)
    expired = token_issuer.issue_refresh_token(
        account.id, "member", now=datetime.now(UTC) - timedelta(days=30)
    )

    expired_response = await test_client.post(REFRESH_URL, json={"refresh_token": expired})
    garbage_response = await test_client.post(REFRESH_URL, json={"refresh_token": "not-a-token"})

    for response in (expired_response, garbage_response):
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json() == {"detail": "REFRESH_TOKEN_INVALID"}
        assert "Max-Age=0" in response.headers["set-cookie"]


@pytest.mark.asyncio
async def test_me_requires_valid_access_token(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_account(db_session, username="whoami")
    access_token = token_issuer.issue_access_token(account.id, "member")

    anonymous = await test_client.get(ME_URL)
    refresh_as_access = await test_client.get(
        ME_URL,
        headers={"Authorization": f"Bearer {token_issuer.issue_refresh_token(account.id, 'member')}"},
    )
    response = await test_client.get(ME_URL, headers={"Authorization": f"Bearer {access_token}"})

    assert anonymous.status_code == status.HTTP_401_UNAUTHORIZED
    assert anonymous.json() == {"detail": "NOT_AUTHENTICATED"}
    assert refresh_as_access.status_code == status.HTTP_401_UNAUTHORIZED
    assert refresh_as_access.json() == {"detail": "INVALID_TOKEN"}
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["username"] == "whoami"
    assert "password_hash" not in response.json()


@pytest.mark.asyncio
async def test_logout_clears_cookie(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_account(db_session)

    response = await test_client.post(
        LOGOUT_URL,
        headers={"Authorization": f"Bearer {token_issuer.issue_access_token(account.id, 'member')}"},
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"message": "LOGOUT_SUCCESSFUL"}
    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith(f"{COOKIE_NAME}=")
    assert "Max-Age=0" in set_cookie


@pytest.mark.asyncio
async def test_change_password_flow(
    test_client: AsyncClient, db_session: AsyncSession, token_issuer: TokenIssuer
):
    account = await AccountFactory.create_account(db_session, username="changer")
    headers = {"Authorization": f"Bearer {token_issuer.issue_access_token(account.id, 'member')}"}

    wrong = await test_client.patch(
        PASSWORD_URL,
        json={"current_password": "not-it", "new_password": "a-better-password"},
        headers=headers,
    )
    right = await test_client.patch(
        PASSWORD_URL,
        json={"current_password": DEFAULT_PASSWORD, "new_password": "a-better-password"},
        headers=headers,
    )

    assert wrong.status_code == status.HTTP_400_BAD_REQUEST
    assert wrong.json() == {"detail": "Current password is incorrect."}
    assert right.status_code == status.HTTP_200_OK
    assert right.json() == {"message": "Password changed successfully."}
    assert (await login_as(test_client, "changer", "a-better-password")).status_code == 200


@pytest.mark.asyncio
async def test_health(test_client: AsyncClient):
    response = await test_client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "healthy"}
    assert "x-request-id" in response.headers


@pytest.mark.asyncio
async def test_spoofed_forwarded_for_is_not_recorded(
    test_client: AsyncClient, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch
):
    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", False)
    await AccountFactory.create_account(db_session, username="spoofer")

    response = await test_client.post(
        LOGIN_URL,
        json={"username": "spoofer", "password": DEFAULT_PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.23"},
    )

    assert response.status_code == status.HTTP_200_OK
    entries = (await db_session.execute(select(AuditLog))).scalars().all()
    assert entries
    assert {entry.ip_address for entry in entries} == {"127.0.0.1"}
