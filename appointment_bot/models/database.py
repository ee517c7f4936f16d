"""
Database Models

SQLAlchemy ORM models for the reminder ledger.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, Uuid, Enum as SQLEnum, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class ReminderStatus(str, Enum):
    """Outcome of one reminder send attempt."""
    SUCCESS = "success"
    ERROR = "error"


class ReminderRecord(Base):
    """
    Reminder ledger entry.

    Append-only: one row per send attempt. The partial unique index
    allows at most one success per (appointment_id, template_key);
    error rows may repeat.
    """

    __tablename__ = "reminder_records"
    __table_args__ = (
        Index("idx_reminder_lookup", "template_key", "appointment_id"),
        Index(
            "uq_reminder_success",
            "appointment_id",
            "template_key",
            unique=True,
            postgresql_where=text("status = 'success'"),
            sqlite_where=text("status = 'success'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    template_key: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[ReminderStatus] = mapped_column(
        SQLEnum(
            ReminderStatus,
            name="reminder_status",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReminderRecord(appointment_id={self.appointment_id}, "
            f"template_key={self.template_key}, status={self.status.value})>"
        )
