# mortiscope/core/models/records.py
"""Plain views of datastore rows, as returned by Datastore implementations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from mortiscope.core.types.status import RecordStatus


@dataclass
class CaseRecord:
    id: str
    recalculation_needed: bool


@dataclass
class AnalysisResultRecord:
    case_id: str
    status: RecordStatus
    explanation: str | None = None
    total_counts: dict[str, Any] | None = None
    oldest_stage_detected: str | None = None
    pmi_source_image_key: str | None = None
    pmi_days: float | None = None
    pmi_hours: float | None = None
    pmi_minutes: float | None = None
    stage_used_for_calculation: str | None = None
    temperature_provided: float | None = None
    calculated_adh: float | None = None
    ldt_used: float | None = None
    updated_at: datetime | None = None


class ExportScope(str, Enum):
    CASE = 'case'
    IMAGE = 'image'


@dataclass
class ExportRecord:
    id: str
    scope: ExportScope
    format: str
    status: RecordStatus
    case_id: str | None = None
    upload_id: str | None = None
    failure_reason: str | None = None


@dataclass
class UserRecord:
    id: str
    email: str
    name: str | None = None
    deletion_scheduled_at: datetime | None = None


@dataclass
class DeletionTokenRecord:
    token: str
    identifier: str
    expires: datetime


@dataclass(frozen=True)
class AnalysisOutcome:
    """Fields persisted when a detection run found evidence."""

    total_counts: dict[str, Any]
    oldest_stage_detected: str
    explanation: str | None = None
    pmi_source_image_key: str | None = None
    pmi_days: float | None = None
    pmi_hours: float | None = None
    pmi_minutes: float | None = None
    stage_used_for_calculation: str | None = None
    temperature_provided: float | None = None
    calculated_adh: float | None = None
    ldt_used: float | None = None
