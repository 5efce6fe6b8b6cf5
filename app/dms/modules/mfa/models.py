from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.dms.models import Base, User


class UserOtpCode(Base):
    __tablename__ = "user_otp_codes"
    __table_args__ = (
        Index("idx_user_otp_codes_lookup", "user_id", "purpose", "is_used"),
        Index("idx_user_otp_codes_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    code: Mapped[str] = mapped_column(String(16), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="email")
    purpose: Mapped[str] = mapped_column(String(32), nullable=False, default="login")
    action: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    meta: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User] = relationship(User, lazy="selectin")

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.is_used and not self.is_expired(now)
