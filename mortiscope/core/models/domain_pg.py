"""SQLAlchemy models for the records workflows read and advance.

The web application owns these tables and creates their rows; the workflow
layer only updates status fields, deletes deletion tokens and deletes users.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLAlchemyEnum,
    Float,
    ForeignKey,
    String,
    Text,
    false as sa_false,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from mortiscope.core.models.run_pg import Base
from mortiscope.core.types.status import RecordStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_record_status = SQLAlchemyEnum(
    RecordStatus,
    native_enum=False,
    values_callable=lambda statuses: [s.value for s in statuses],
)


class UserModel(Base):
    __tablename__ = 'users'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Non-null and in the future: deletion pending and cancellable
    deletion_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class CaseModel(Base):
    __tablename__ = 'cases'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=True
    )
    case_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recalculation_needed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=sa_false()
    )


class AnalysisResultModel(Base):
    """One per case; caseId is both owning key and primary key."""

    __tablename__ = 'analysis_results'

    case_id: Mapped[str] = mapped_column(
        String(36), ForeignKey('cases.id', ondelete='CASCADE'), primary_key=True
    )
    status: Mapped[RecordStatus] = mapped_column(
        _record_status, nullable=False, default=RecordStatus.PENDING
    )
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    total_counts: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    oldest_stage_detected: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pmi_source_image_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pmi_days: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pmi_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pmi_minutes: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    stage_used_for_calculation: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    temperature_provided: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    calculated_adh: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ldt_used: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=text('NOW()'),
        onupdate=_utcnow,
    )


class ExportModel(Base):
    __tablename__ = 'exports'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # 'case' or 'image'; exactly one of case_id / upload_id is set accordingly
    scope: Mapped[str] = mapped_column(String(16), nullable=False, default='case')
    case_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey('cases.id', ondelete='CASCADE'), nullable=True
    )
    upload_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    format: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[RecordStatus] = mapped_column(
        _record_status, nullable=False, default=RecordStatus.PENDING
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=text('NOW()'),
    )


class AccountDeletionTokenModel(Base):
    __tablename__ = 'account_deletion_tokens'

    token: Mapped[str] = mapped_column(String(255), primary_key=True)
    identifier: Mapped[str] = mapped_column(String(320), nullable=False)
    expires: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
