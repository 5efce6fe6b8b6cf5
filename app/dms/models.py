from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column, relationship

if TYPE_CHECKING:
    from app.dms.modules.branches.models import Branch


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class SoftDeleteMixin:
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True, index=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class AuthorMixin:
    @declared_attr
    def created_by_user_id(cls) -> Mapped[int | None]:
        return mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    @declared_attr
    def updated_by_user_id(cls) -> Mapped[int | None]:
        return mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


class BranchScopedMixin:
    @declared_attr
    def branch_id(cls) -> Mapped[int | None]:
        return mapped_column(ForeignKey("branches.id", ondelete="SET NULL"), nullable=True, index=True)


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[int] = mapped_column(ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)


class User(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    branch_id: Mapped[int | None] = mapped_column(ForeignKey("branches.id", ondelete="SET NULL"), nullable=True, index=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )
    branch: Mapped["Branch | None"] = relationship("Branch", foreign_keys=[branch_id], lazy="selectin")

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @property
    def role_keys(self) -> list[str]:
        return sorted(r.key for r in (self.roles or []))


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "sales_rep"
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # display name
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")
    permissions: Mapped[list["Permission"]] = relationship(
        secondary="role_permissions",
        back_populates="roles",
        lazy="selectin",
    )


class Permission(Base):
    __tablename__ = "permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "leads.view"
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list[Role]] = relationship(secondary="role_permissions", back_populates="permissions", lazy="selectin")


class ActivityLog(Base):
    """
    Append-only activity trail.
    `action` is "<module>.<event>" (e.g. "leads.create"); subject_* point at the touched row.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        Index("idx_activity_logs_module", "module"),
        Index("idx_activity_logs_action", "action"),
        Index("idx_activity_logs_created_at", "created_at"),
        Index("idx_activity_logs_subject", "subject_type", "subject_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    log_name: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event: Mapped[str | None] = mapped_column(String(64), nullable=True)

    causer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    causer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)
    module: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="success")
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    properties_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)

    @property
    def properties(self) -> dict[str, Any]:
        if not self.properties_json:
            return {}
        return json.loads(self.properties_json)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.dms.modules.branches.models import Branch  # noqa: E402,F401
from app.dms.modules.customers.models import Customer, CustomerSurvey  # noqa: E402,F401
from app.dms.modules.leads.models import Lead  # noqa: E402,F401
from app.dms.modules.pipelines.models import Pipeline, PipelineStageLog  # noqa: E402,F401
from app.dms.modules.test_drives.models import TestDrive  # noqa: E402,F401
from app.dms.modules.vehicles.models import (  # noqa: E402,F401
    VehicleMaster,
    VehicleModel,
    VehicleMovement,
    VehicleReservation,
    VehicleUnit,
)
from app.dms.modules.parts.models import PartInventory  # noqa: E402,F401
from app.dms.modules.service_catalog.models import CommonService, ServiceType, ServiceTypeCommonService  # noqa: E402,F401
from app.dms.modules.work_orders.models import WorkOrder, WorkOrderPhoto  # noqa: E402,F401
from app.dms.modules.warranty.models import (  # noqa: E402,F401
    WarrantyClaim,
    WarrantyClaimPart,
    WarrantyClaimPhoto,
    WarrantyClaimService,
)
from app.dms.modules.compliance.models import (  # noqa: E402,F401
    ComplianceChecklist,
    ComplianceChecklistAssignment,
    ComplianceChecklistAssignmentItem,
    ComplianceChecklistItem,
    ComplianceChecklistTrigger,
    ComplianceReminder,
    ComplianceReminderEvent,
)
from app.dms.modules.time_tracking.models import SessionSetting, UserSession  # noqa: E402,F401
from app.dms.modules.mfa.models import UserOtpCode  # noqa: E402,F401
