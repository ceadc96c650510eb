# backend/memberauth/schemas/two_factor.py
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class TwoFactorChallengeResponse(BaseModel):
    """Login answer when the password was right but a TOTP code is still needed."""

    requires_two_factor: Literal[True] = True
    challenge_token: str
    expires_in: int = Field(..., description="Seconds until the challenge token expires")


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=12, description="TOTP or recovery code")
    # Falls back to the challenge cookie set by /auth/login.
    challenge_token: str | None = None


class TwoFactorSetupResponse(BaseModel):
    secret: str = Field(..., description="TOTP secret for manual entry")
    otpauth_uri: str = Field(..., description="Provisioning URI; clients render it as a QR code")


class TwoFactorConfirmRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8, description="TOTP code from authenticator")


class TwoFactorConfirmResponse(BaseModel):
    recovery_codes: list[str] = Field(..., description="Shown once; store them somewhere safe")


class TwoFactorDisableRequest(BaseModel):
    code: str | None = Field(default=None, min_length=6, max_length=8)
    recovery_code: str | None = Field(default=None, min_length=1, max_length=32)

    @model_validator(mode="after")
    def require_one_code(self) -> "TwoFactorDisableRequest":
        if not self.code and not self.recovery_code:
            raise ValueError("Provide a TOTP code or a recovery code.")
        return self


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    pending_setup: bool
    confirmed_at: datetime | None = None
    recovery_codes_remaining: int
