# backend/memberauth/schemas/auth.py
from pydantic import BaseModel, Field

from memberauth.schemas.account import AccountSummary


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=128)


class Token(BaseModel):
    """
    Represents the token response provided to the client upon successful authentication.
    """

    access_token: str
    token_type: str = "bearer"
    # Also set as an HttpOnly cookie; returned in the body for non-browser clients.
    refresh_token: str | None = None


class LoginResponse(Token):
    account: AccountSummary


class RefreshRequest(BaseModel):
    refresh_token: str | None = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)


class MessageResponse(BaseModel):
    message: str
