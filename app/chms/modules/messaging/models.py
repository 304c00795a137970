from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.chms.models import Base

if TYPE_CHECKING:
    from app.chms.modules.members.models import Member


class MessageTemplate(Base):
    __tablename__ = "message_templates"
    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_message_templates_org_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)


class SmsApiConfiguration(Base):
    """Gateway credentials. At most one active row per organization (enforced in service)."""

    __tablename__ = "sms_api_configurations"
    __table_args__ = (Index("idx_sms_api_configurations_org_active", "organization_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sender_id: Mapped[str] = mapped_column(String(11), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)

    @property
    def masked_api_key(self) -> str:
        key = self.api_key or ""
        if len(key) <= 4:
            return "****"
        return f"{key[:4]}…{'*' * 4}"


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_org_created", "organization_id", "created_at"),
        Index("idx_messages_status_scheduled", "status", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    message_name: Mapped[str] = mapped_column(String(255), nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False, default="individual")  # individual, group, department, all_members
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Draft, Scheduled, Sending, Sent, Failed, Cancelled
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Draft")

    scheduled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sent_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_frequency: Mapped[str | None] = mapped_column(String(16), nullable=True)  # Weekly, Monthly, Yearly
    recurrence_end_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)

    template_id: Mapped[int | None] = mapped_column(ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True)
    api_configuration_id: Mapped[int | None] = mapped_column(
        ForeignKey("sms_api_configurations.id", ondelete="SET NULL"), nullable=True
    )
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    recipients: Mapped[list["MessageRecipient"]] = relationship(
        "MessageRecipient",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageRecipient.id",
    )
    template: Mapped[MessageTemplate | None] = relationship("MessageTemplate", lazy="selectin")
    api_configuration: Mapped[SmsApiConfiguration | None] = relationship("SmsApiConfiguration", lazy="selectin")


class MessageRecipient(Base):
    __tablename__ = "message_recipients"
    __table_args__ = (
        Index("idx_message_recipients_message", "message_id"),
        Index("idx_message_recipients_member", "member_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(16), nullable=False, default="member")  # member, phone_number
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    personalized_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Pending")  # Pending, Sending, Sent, Failed
    sent_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)

    message: Mapped[Message] = relationship("Message", back_populates="recipients", lazy="selectin")
    member: Mapped["Member | None"] = relationship("Member", lazy="selectin")


class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    birthday_messages_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    birthday_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True
    )
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)

    birthday_template: Mapped[MessageTemplate | None] = relationship("MessageTemplate", lazy="selectin")
