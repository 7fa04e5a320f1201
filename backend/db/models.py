from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.database import Base
from schemas import VoteStatus


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), unique=True, nullable=True, index=True)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False, index=True)
    is_admin: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Pothole(Base):
    __tablename__ = "potholes"
    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_potholes_latitude"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_potholes_longitude"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_potholes_confidence"),
        CheckConstraint("detection_count >= 1", name="ck_potholes_detection_count"),
        Index("ix_potholes_lat_lng_detected", "latitude", "longitude", "detected_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # Location of the first detection; never recomputed on merge.
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    images: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    detection_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    verified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    # Weak reference: no foreign key, the reporter may be anonymous or deleted.
    reporter_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    confirmations: Mapped[list["PotholeConfirmation"]] = relationship(
        back_populates="pothole",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PotholeConfirmation(Base):
    __tablename__ = "pothole_confirmations"
    __table_args__ = (
        UniqueConstraint("pothole_id", "user_id", name="uq_confirmation_pothole_user"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    pothole_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("potholes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("app_users.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[VoteStatus] = mapped_column(
        Enum(
            VoteStatus,
            name="vote_status",
            native_enum=False,
            length=20,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    confirmed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    pothole: Mapped[Pothole] = relationship(back_populates="confirmations")


class DetectionSession(Base):
    __tablename__ = "detection_sessions"
    __table_args__ = (
        Index("ix_detection_sessions_active", "is_active", "started_at"),
        Index("ix_detection_sessions_user", "user_id", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    total_detections: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
