# backend/memberauth/services/audit_service.py
"""
Audit logging service.

Provides:
- log_action(): append one audit entry, best-effort (a failed write is logged, never raised)
- list_entries(): read-back for the admin reporting endpoint
- Details sanitizing and size caps
"""

import logging
import re
from collections.abc import Sequence

from sqlalchemy import desc, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from memberauth.core.config import settings
from memberauth.core.request_context import get_client_ip
from memberauth.db.models.audit_log import AuditLog, AuditStatus, PerformerType
from memberauth.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)

# Action types written by the authentication flows
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILURE = "LOGIN_FAILURE"
LOGIN_FAILED_LOCKED = "LOGIN_FAILED_LOCKED"
LOGIN_FAILED_INACTIVE = "LOGIN_FAILED_INACTIVE"
LOGIN_FAILED_ADMIN_MAX_ATTEMPTS = "LOGIN_FAILED_ADMIN_MAX_ATTEMPTS"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
ACCOUNT_REGISTERED = "ACCOUNT_REGISTERED"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"
LOGOUT = "LOGOUT"
PASSWORD_ASSIGNED = "PASSWORD_ASSIGNED"
TWO_FACTOR_CHALLENGE_ISSUED = "TWO_FACTOR_CHALLENGE_ISSUED"
TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
TWO_FACTOR_RECOVERY_CODE_USED = "TWO_FACTOR_RECOVERY_CODE_USED"
TWO_FACTOR_SETUP_STARTED = "TWO_FACTOR_SETUP_STARTED"
TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
TWO_FACTOR_DISABLE_FAILED = "TWO_FACTOR_DISABLE_FAILED"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_details(details: str | None, max_length: int | None = None) -> str | None:
    """Strip control characters and cap the length of free-text details."""
    if details is None:
        return None
    max_length = max_length or settings.AUDIT_DETAILS_MAX_LEN
    cleaned = _CONTROL_CHARS.sub("", str(details)).strip()
    if len(cleaned) > max_length:
        cleaned = cleaned[: max_length - 3] + "..."
    return cleaned


async def log_action(
    db: AsyncSession,
    action_type: str,
    details: str | None = None,
    *,
    status: AuditStatus | str = AuditStatus.SUCCESS,
    performed_by: int | None = None,
    affected_member: int | None = None,
    performer_type: PerformerType | str | None = None,
    ip_address: str | None = None,
) -> AuditLog | None:
    """
    Append an audit entry and commit it.

    Callers commit their own state first; an audit failure is rolled back,
    reported to the operational log and swallowed so it can never change the
    outcome of the request that produced it.
    """
    if performer_type is None:
        performer_type = PerformerType.MEMBER if performed_by is not None else PerformerType.ANONYMOUS

    try:
        entry = AuditLog(
            action_type=action_type,
            performed_by=performed_by,
            performer_type=getattr(performer_type, "value", performer_type),
            action_details=sanitize_details(details),
            ip_address=(ip_address or get_client_ip())[:64],
            status=getattr(status, "value", status),
            affected_member=affected_member,
        )
        db.add(entry)
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to write audit entry {action_type} (member={affected_member}): {e}")
        try:
            await db.rollback()
        except SQLAlchemyError as rollback_error:
            logger.error(f"Rollback after failed audit write also failed: {rollback_error}")
        return None

    logger.debug(f"Audit entry written: {action_type} status={entry.status}")
    return entry


async def list_entries(
    db: AsyncSession,
    *,
    limit: int = 50,
    offset: int = 0,
    member_id: int | None = None,
    action_type: str | None = None,
) -> Sequence[AuditLog]:
    """Newest first; `member_id` matches either the performer or the affected member."""
    stmt = select(AuditLog)
    if member_id is not None:
        stmt = stmt.where(
            or_(AuditLog.performed_by == member_id, AuditLog.affected_member == member_id)
        )
    if action_type:
        stmt = stmt.where(AuditLog.action_type == action_type)
    stmt = stmt.order_by(desc(AuditLog.created_at), desc(AuditLog.id)).offset(offset).limit(limit)
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"Failed to list audit entries: {e}")
        raise StorageUnavailable("Audit log could not be read.") from e
    return result.scalars().all()
