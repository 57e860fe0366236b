"""
Security account profile model.

One profile per account, created on first reference. Only the
risk scoring service and the unlock operation mutate it.

The profile row is the per-account lock: recomputation selects
it FOR UPDATE, and `version` makes a concurrent writer that
slipped past the lock fail on flush instead of overwriting.
"""

from datetime import datetime

from sqlalchemy import (
    String, Boolean, DateTime, Integer, ForeignKey,
    Enum as SAEnum, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from audit_engine.models.base import Base, utcnow
from audit_engine.models.enums import TwoFactorMethod


class SecurityAccountProfile(Base):
    __tablename__ = "security_profiles"
    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="ck_profile_score_range"),
    )

    account_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    two_factor_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    two_factor_method: Mapped[TwoFactorMethod | None] = mapped_column(
        SAEnum(TwoFactorMethod, name="two_factor_method_enum", create_constraint=True),
        nullable=True,
    )
    backup_codes_generated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    failed_login_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Highest audit sequence id already applied to this profile.
    # Replayed entries at or below it are skipped.
    last_sequence_id: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    scored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    devices: Mapped[list["TrustedDevice"]] = relationship(
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="TrustedDevice.id",
    )
    allowed_ips: Mapped[list["AllowedIP"]] = relationship(
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="AllowedIP.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def ip_allow_list(self) -> list[str]:
        return [ip.ip_address for ip in self.allowed_ips]

    def __repr__(self) -> str:
        return f"<SecurityAccountProfile {self.account_id} score={self.score}>"


class TrustedDevice(Base):
    __tablename__ = "trusted_devices"
    __table_args__ = (
        UniqueConstraint("account_id", "device_id", name="uq_device_per_account"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("security_profiles.account_id"), nullable=False, index=True
    )
    device_id: Mapped[str] = mapped_column(String(100), nullable=False)
    device_name: Mapped[str] = mapped_column(String(200), nullable=False)
    trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_used: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    profile: Mapped["SecurityAccountProfile"] = relationship(back_populates="devices")


class AllowedIP(Base):
    __tablename__ = "allowed_ips"
    __table_args__ = (
        UniqueConstraint("account_id", "ip_address", name="uq_ip_per_account"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("security_profiles.account_id"), nullable=False, index=True
    )
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    profile: Mapped["SecurityAccountProfile"] = relationship(back_populates="allowed_ips")
