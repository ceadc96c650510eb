# backend/memberauth/api/deps.py
import logging

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth.db.models.account import Account
from memberauth.db.session import get_async_session
from memberauth.exceptions import AuthFailure
from memberauth.services.auth_service import AuthService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    """The service is built once at startup (see main.lifespan) and kept on app.state."""
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        raise RuntimeError("AuthService is not initialized. Ensure the app lifespan has run.")
    return service


def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str | None:
    return credentials.credentials if credentials else None


async def get_current_account(
    token: str | None = Depends(get_bearer_token),
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
) -> Account:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="NOT_AUTHENTICATED",
            headers={"WWW-Authenticate": "Bearer"},
        )
    result = await service.resolve_access_token(db, token)
    if isinstance(result, AuthFailure):
        logger.debug(f"Bearer token rejected: {result.kind.value}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="INVALID_TOKEN",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result


async def get_current_admin(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin:
        logger.warning(f"Account {account.id} attempted an admin-only action")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="NOT_ENOUGH_PERMISSIONS"
        )
    return account
