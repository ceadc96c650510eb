# /backend/memberauth/db/models/account.py

import enum
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from memberauth.db.base_class import Base


class AccountRole(str, enum.Enum):
    MEMBER = "member"
    ADMIN = "admin"
    SUPERUSER = "superuser"


class AccountStatus(str, enum.Enum):
    PENDING = "pending"
    REGISTERED = "registered"
    ACTIVE = "active"
    INACTIVE = "inactive"


# Statuses allowed to sign in.
LOGIN_ALLOWED_STATUSES = frozenset({AccountStatus.REGISTERED.value, AccountStatus.ACTIVE.value})

ADMIN_ROLES = frozenset({AccountRole.ADMIN.value, AccountRole.SUPERUSER.value})


class Account(Base):
    """Association member record, limited to the columns authentication needs."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("failed_login_attempts >= 0", name="failed_login_attempts_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), default=AccountRole.MEMBER.value, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=AccountStatus.REGISTERED.value, nullable=False
    )

    # --- Lockout state ---
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failed_login: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Two-factor (TOTP) ---
    # Secret and recovery code hashes are stored Fernet-encrypted.
    two_factor_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    two_factor_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    two_factor_recovery_codes: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    password_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def can_login(self) -> bool:
        return self.status in LOGIN_ALLOWED_STATUSES

    def __repr__(self) -> str:
        return f"<Account(id={self.id!r}, username={self.username!r}, role={self.role!r})>"
