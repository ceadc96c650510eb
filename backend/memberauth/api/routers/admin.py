# backend/memberauth/api/routers/admin.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth import crud
from memberauth.api.deps import get_auth_service, get_current_admin
from memberauth.db.models.account import Account
from memberauth.db.session import get_async_session
from memberauth.schemas.account import AccountCreate, AccountRead, AssignPasswordRequest
from memberauth.schemas.audit import AuditLogPage, AuditLogRead
from memberauth.services import audit_service
from memberauth.services.auth_service import AuthService

logger = logging.getLogger(__name__)

admin_router = APIRouter(
    tags=["Admins - Account Management"],
)


@admin_router.post(
    "/accounts",
    response_model=AccountRead,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new member account",
)
async def register_account(
    account_in: AccountCreate,
    admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    admin_id = admin.id
    logger.info(f"Admin {admin_id} registering account {account_in.username}")
    return await service.register(db, account_in, performed_by=admin_id)


@admin_router.get("/accounts/{account_id}", response_model=AccountRead, summary="Get an account")
async def read_account(
    account_id: int,
    _admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_async_session),
):
    account = await crud.account.get_by_id(db, account_id=account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ACCOUNT_NOT_FOUND")
    return AccountRead.model_validate(account)


@admin_router.post(
    "/accounts/{account_id}/unlock",
    response_model=AccountRead,
    summary="Clear failed attempts and any active lock",
)
async def unlock_account(
    account_id: int,
    admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    return await service.unlock(db, account_id, performed_by=admin.id)


@admin_router.put(
    "/accounts/{account_id}/password",
    response_model=AccountRead,
    summary="Assign a password (activates pending accounts, clears any lock)",
)
async def assign_password(
    account_id: int,
    body: AssignPasswordRequest,
    admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_async_session),
    service: AuthService = Depends(get_auth_service),
):
    return await service.assign_password(db, account_id, body.password, performed_by=admin.id)


@admin_router.get("/audit-logs", response_model=AuditLogPage, summary="List audit entries")
async def list_audit_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    member_id: int | None = Query(None),
    action_type: str | None = Query(None, max_length=64),
    _admin: Account = Depends(get_current_admin),
    db: AsyncSession = Depends(get_async_session),
):
    entries = await audit_service.list_entries(
        db, limit=limit, offset=offset, member_id=member_id, action_type=action_type
    )
    return AuditLogPage(
        items=[AuditLogRead.model_validate(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )
