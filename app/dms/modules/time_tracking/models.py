from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import Base, TimestampMixin, User


def format_minutes(minutes: int | None) -> str:
    if minutes is None:
        return "N/A"
    return f"{minutes // 60}h {minutes % 60}m"


class UserSession(TimestampMixin, Base):
    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("idx_user_sessions_status", "status"),
        Index("idx_user_sessions_login_time", "login_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    login_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    logout_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    activity_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    idle_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    logout_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user: Mapped[User] = relationship(lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.status == "active" and self.logout_time is None

    def duration_at(self, now: datetime | None = None) -> int:
        end = self.logout_time or now or datetime.utcnow()
        return max(0, int((end - self.login_time).total_seconds() // 60))

    @property
    def duration_minutes(self) -> int:
        return self.duration_at()

    @property
    def formatted_duration(self) -> str:
        return format_minutes(self.duration_minutes)

    @property
    def formatted_idle_time(self) -> str:
        minutes = self.idle_time_minutes or 0
        if minutes < 60:
            return f"{minutes}m"
        return format_minutes(minutes)


class SessionSetting(TimestampMixin, Base):
    __tablename__ = "session_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="integer")
    default_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
