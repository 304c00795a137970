from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.chms.models import Base

if TYPE_CHECKING:
    from app.chms.modules.attendance.models import MemberAttendance
    from app.chms.modules.groups.models import Department, Group, RolePosition


class Member(Base):
    __tablename__ = "members"
    __table_args__ = (
        Index("idx_members_org_status", "organization_id", "membership_status"),
        Index("idx_members_org_name", "organization_id", "last_name", "first_name"),
        Index("idx_members_phone", "phone_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    # Required
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    membership_status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")  # active, inactive, visitor

    middle_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    secondary_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    photo_storage_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    join_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)
    date_of_birth: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    marital_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    spouse_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    number_of_children: Mapped[int | None] = mapped_column(Integer, nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Address (Ghana Post digital address is a separate field)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    town: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    digital_address: Mapped[str | None] = mapped_column(String(32), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    groups: Mapped[list["Group"]] = relationship(
        "Group", secondary="member_groups", back_populates="members", lazy="selectin"
    )
    departments: Mapped[list["Department"]] = relationship(
        "Department", secondary="member_departments", back_populates="members", lazy="selectin"
    )
    role_positions: Mapped[list["RolePosition"]] = relationship(
        "RolePosition", secondary="member_role_positions", back_populates="members", lazy="selectin"
    )
    follow_ups: Mapped[list["MemberFollowUp"]] = relationship(
        "MemberFollowUp",
        back_populates="member",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MemberFollowUp.date.desc()",
    )
    attendance: Mapped[list["MemberAttendance"]] = relationship(
        "MemberAttendance",
        back_populates="member",
        cascade="all, delete-orphan",
        lazy="select",
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)


class MemberFollowUp(Base):
    __tablename__ = "member_follow_ups"
    __table_args__ = (
        Index("idx_member_follow_ups_org_date", "organization_id", "date"),
        Index("idx_member_follow_ups_member", "member_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id", ondelete="CASCADE"), nullable=False)

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False)  # Phone, Email, Visit, SMS, WhatsApp, Other
    notes: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    member: Mapped[Member] = relationship("Member", back_populates="follow_ups", lazy="selectin")
