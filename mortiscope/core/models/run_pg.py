from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Optional
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Index,
    ForeignKey,
    Enum as SQLAlchemyEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from mortiscope.core.models.runs import StepKind
from mortiscope.core.types.status import RunStatus


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRunModel(Base):
    """
    One execution of one workflow for one delivered event.

    - id: str # derived from (event_id, workflow_id), so redelivery is a no-op
    - workflow_id: str # id the workflow was registered under
    - event_id / event_name / event_data # the triggering event, data as sent
    - status: RunStatus # PENDING, RUNNING, SLEEPING, COMPLETED, FAILED
    - attempt: int # failed attempts so far
    - max_retries: int # retries allowed after the first attempt
    - next_run_at: datetime # when the run becomes claimable (delivery, retry, wake-up)
    - concurrency_key: str # entity key runs of the same workflow serialize on
    - claimed_by / claim_expires_at # worker lease; expired leases are reclaimable
    - output: JSON # handler return value
    - error: str # last error message
    """

    __tablename__ = 'mortiscope_runs'
    __table_args__ = (
        Index('idx_mortiscope_runs_claimable', 'status', 'next_run_at'),
        Index('idx_mortiscope_runs_concurrency', 'workflow_id', 'concurrency_key'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False)

    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    event_data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    event_ts: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    status: Mapped[RunStatus] = mapped_column(
        SQLAlchemyEnum(RunStatus, native_enum=False),
        nullable=False,
        default=RunStatus.PENDING,
    )
    attempt: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text('0'), nullable=False,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text('0'), nullable=False,
    )
    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    concurrency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    claimed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    claim_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    output: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=text('NOW()'),
        onupdate=_utcnow,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class StepModel(Base):
    """Memoized step outcome. A row here means the step never runs again for the run."""

    __tablename__ = 'mortiscope_steps'

    run_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('mortiscope_runs.id', ondelete='CASCADE'),
        primary_key=True,
    )
    step_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[StepKind] = mapped_column(
        SQLAlchemyEnum(
            StepKind,
            native_enum=False,
            values_callable=lambda kinds: [k.value for k in kinds],
        ),
        nullable=False,
    )
    output: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    wake_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=text('NOW()'),
    )
