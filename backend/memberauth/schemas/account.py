# backend/memberauth/schemas/account.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from memberauth.db.models.account import AccountRole, AccountStatus


class AccountSummary(BaseModel):
    """
    The only account projection handed out by the auth endpoints.
    Never carries the password hash or lockout counters.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    full_name: str
    role: AccountRole


class AccountCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    full_name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=8, max_length=128)
    email: EmailStr | None = None
    role: AccountRole = AccountRole.MEMBER
    status: AccountStatus = AccountStatus.REGISTERED

    @field_validator("username")
    @classmethod
    def normalize_username(cls, v: str) -> str:
        v = v.strip()
        if any(ch.isspace() for ch in v):
            raise ValueError("Username must not contain whitespace.")
        return v


class AccountRead(AccountSummary):
    """Admin view of an account, lockout state included."""

    email: str | None = None
    status: AccountStatus
    failed_login_attempts: int
    locked_until: datetime | None = None
    last_login: datetime | None = None
    two_factor_enabled: bool = False
    created_at: datetime | None = None


class AssignPasswordRequest(BaseModel):
    password: str = Field(..., min_length=8, max_length=128)
