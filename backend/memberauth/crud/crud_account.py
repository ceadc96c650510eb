# backend/memberauth/crud/crud_account.py
import logging
from datetime import UTC, datetime

from sqlalchemy import and_, case, or_, select, true, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from memberauth.crud.base import CRUDBase
from memberauth.db.models.account import Account
from memberauth.exceptions import DuplicateAccount, StorageUnavailable
from memberauth.services.account_lockout import AccountLockoutPolicy, LockState, as_utc

logger = logging.getLogger(__name__)


class CRUDAccount(CRUDBase[Account]):
    async def get_by_username(self, db: AsyncSession, *, username: str) -> Account | None:
        """
        Get an account by its login name. Always hits the database.
        """
        logger.debug(f"Attempting to retrieve account by username: {username}")
        try:
            result = await db.execute(
                select(Account)
                .where(Account.username == username)
                .execution_options(populate_existing=True)
            )
        except SQLAlchemyError as e:
            logger.error(f"Account lookup failed for username {username!r}: {e}")
            raise StorageUnavailable("Account lookup failed.") from e
        return result.scalars().first()

    async def get_by_id(self, db: AsyncSession, *, account_id: int) -> Account | None:
        try:
            return await super().get(db, id=account_id)
        except SQLAlchemyError as e:
            logger.error(f"Account lookup failed for id {account_id}: {e}")
            raise StorageUnavailable("Account lookup failed.") from e

    async def create(
        self,
        db: AsyncSession,
        *,
        username: str,
        full_name: str,
        password_hash: str | None,
        role: str,
        status: str,
        email: str | None = None,
    ) -> Account:
        logger.info(f"Creating new account: {username}, role: {role}")
        db_obj = Account(
            username=username,
            full_name=full_name,
            email=email,
            password_hash=password_hash,
            role=role,
            status=status,
            failed_login_attempts=0,
        )
        db.add(db_obj)
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise DuplicateAccount(username) from e
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageUnavailable("Account could not be created.") from e
        await db.refresh(db_obj)
        return db_obj

    async def register_failed_login(
        self,
        db: AsyncSession,
        *,
        account: Account,
        policy: AccountLockoutPolicy,
        now: datetime | None = None,
    ) -> LockState:
        """
        Count one failed login in a single conditional UPDATE.

        The counter restarts at 1 when the previous failure is older than the
        reset window, and the lock is set or cleared in the same statement, so
        concurrent failures against one account cannot overwrite each other.
        """
        now = now or datetime.now(UTC)
        stale = or_(
            Account.last_failed_login.is_(None),
            Account.last_failed_login < policy.reset_cutoff(now),
        )
        new_count = case((stale, 1), else_=Account.failed_login_attempts + 1)
        lockable = (
            Account.role.not_in(sorted(policy.exempt_roles)) if policy.exempt_roles else true()
        )
        new_locked_until = case(
            (and_(new_count >= policy.config.max_attempts, lockable), policy.lock_expiry(now)),
            (Account.locked_until <= now, None),
            else_=Account.locked_until,
        )
        stmt = (
            update(Account)
            .where(Account.id == account.id)
            .values(
                failed_login_attempts=new_count,
                last_failed_login=now,
                locked_until=new_locked_until,
            )
            .returning(
                Account.failed_login_attempts, Account.last_failed_login, Account.locked_until
            )
            .execution_options(synchronize_session=False)
        )
        try:
            row = (await db.execute(stmt)).one()
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to record failed login for account {account.id}: {e}")
            raise StorageUnavailable("Failed login could not be recorded.") from e

        state = LockState(
            failed_login_attempts=row.failed_login_attempts,
            last_failed_login=as_utc(row.last_failed_login),
            locked_until=as_utc(row.locked_until),
        )
        self._apply_committed(account, state)
        return state

    async def reset_failed_logins(
        self,
        db: AsyncSession,
        *,
        account: Account,
        state: LockState,
        last_login: datetime | None = None,
    ) -> None:
        """Write the cleared lockout state (and the login time, on a successful sign-in)."""
        values = state._asdict()
        if last_login is not None:
            values["last_login"] = last_login
        try:
            await db.execute(
                update(Account)
                .where(Account.id == account.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to reset lockout state for account {account.id}: {e}")
            raise StorageUnavailable("Lockout state could not be reset.") from e

        for key, value in values.items():
            set_committed_value(account, key, value)

    async def update_password(
        self,
        db: AsyncSession,
        *,
        account: Account,
        password_hash: str,
        status: str | None = None,
    ) -> Account:
        account.password_hash = password_hash
        if status is not None:
            account.status = status
        account.password_changed_at = datetime.now(UTC)
        account.failed_login_attempts = 0
        account.last_failed_login = None
        account.locked_until = None
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageUnavailable("Password could not be updated.") from e
        return account

    async def update_two_factor(
        self,
        db: AsyncSession,
        *,
        account: Account,
        secret: str | None,
        enabled: bool,
        confirmed_at: datetime | None,
        recovery_codes: str | None,
    ) -> Account:
        """Write all two-factor columns at once; values arrive already encrypted."""
        account.two_factor_secret = secret
        account.two_factor_enabled = enabled
        account.two_factor_confirmed_at = confirmed_at
        account.two_factor_recovery_codes = recovery_codes
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to update two-factor state for account {account.id}: {e}")
            raise StorageUnavailable("Two-factor state could not be updated.") from e
        return account

    @staticmethod
    def _apply_committed(account: Account, state: LockState) -> None:
        # Keep the identity map in step with the row without another SELECT.
        for key, value in state._asdict().items():
            set_committed_value(account, key, value)


account = CRUDAccount(Account)
