# backend/memberauth/schemas/audit.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class AuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action_type: str
    performed_by: int | None = None
    performer_type: str
    action_details: str | None = None
    ip_address: str
    status: str
    affected_member: int | None = None
    created_at: datetime


class AuditLogPage(BaseModel):
    items: list[AuditLogRead]
    limit: int
    offset: int
