from __future__ import annotations

import datetime as dt
from typing import TYPE_CHECKING

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.chms.models import Base

if TYPE_CHECKING:
    from app.chms.modules.members.models import Member


class AttendanceRecord(Base):
    """Headcount for one service on one day."""

    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("organization_id", "date", "service_type", name="uq_attendance_records_org_date_service"),
        Index("idx_attendance_records_org_date", "organization_id", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    total_attendance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    men: Mapped[int | None] = mapped_column(Integer, nullable=True)
    women: Mapped[int | None] = mapped_column(Integer, nullable=True)
    children: Mapped[int | None] = mapped_column(Integer, nullable=True)
    first_timers: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class MemberAttendance(Base):
    """Individual check-in. Linked to a service by (date, service_type), not by record id."""

    __tablename__ = "member_attendance"
    __table_args__ = (
        UniqueConstraint("member_id", "service_type", "date", name="uq_member_attendance_member_service_date"),
        Index("idx_member_attendance_org_date_service", "organization_id", "date", "service_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id", ondelete="CASCADE"), nullable=False)

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="present")  # present, absent
    checked_in_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=dt.datetime.utcnow)

    member: Mapped["Member"] = relationship("Member", back_populates="attendance", lazy="selectin")
