"""
Audit log model for security events raised by the authentication flows.

Rows are append-only: the application inserts them and reads them back for
the admin listing, but never updates or deletes them.
"""

import enum
from datetime import UTC, datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from memberauth.db.base_class import Base


class AuditStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    WARNING = "warning"
    ERROR = "error"


class PerformerType(str, enum.Enum):
    MEMBER = "member"
    SYSTEM = "system"
    ANONYMOUS = "anonymous"


class AuditLog(Base):
    """Immutable record of a security-relevant event."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    performed_by: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    performer_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PerformerType.MEMBER.value
    )
    action_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AuditStatus.SUCCESS.value
    )
    # Plain integer, not a foreign key: entries outlive the accounts they mention.
    affected_member: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )

    __table_args__ = (Index("ix_audit_logs_action_created", "action_type", "created_at"),)

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action_type='{self.action_type}', "
            f"status='{self.status}', affected_member={self.affected_member})>"
        )
