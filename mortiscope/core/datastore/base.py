"""Datastore contract used by the workflows.

Status writes are guarded by the record status transition table: an update
only applies when the row's current status is an allowed source for the
target, and each method reports whether a row changed. FAILED is only
reachable through the `mark_*_failed` methods.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Protocol

from mortiscope.core.models.records import (
    AnalysisOutcome,
    AnalysisResultRecord,
    CaseRecord,
    DeletionTokenRecord,
    ExportRecord,
    UserRecord,
)
from mortiscope.core.types.status import RecordStatus


class DatastoreTransaction(Protocol):
    async def get_user_for_update(self, user_id: str) -> UserRecord | None:
        """Read the user and lock the row until the transaction ends."""
        ...

    async def delete_user(self, user_id: str) -> bool: ...


class Datastore(Protocol):
    # ---- analysis results ----
    async def set_analysis_status(
        self, case_id: str, status: RecordStatus, *, recalculation: bool = False
    ) -> bool: ...

    async def save_analysis_result(self, case_id: str, outcome: AnalysisOutcome) -> bool:
        """Persist a detection outcome and mark the result completed."""
        ...

    async def complete_analysis(
        self, case_id: str, *, explanation: str | None = None
    ) -> bool: ...

    async def mark_analysis_failed(self, case_id: str, explanation: str) -> bool: ...

    async def analysis_result_exists(self, case_id: str) -> bool: ...

    async def get_analysis_result(self, case_id: str) -> AnalysisResultRecord | None: ...

    # ---- cases ----
    async def get_case(self, case_id: str) -> CaseRecord | None: ...

    async def clear_recalculation_flag(self, case_id: str) -> bool: ...

    # ---- exports ----
    async def set_export_status(self, export_id: str, status: RecordStatus) -> bool: ...

    async def mark_export_failed(self, export_id: str, reason: str) -> bool: ...

    async def get_export(self, export_id: str) -> ExportRecord | None: ...

    # ---- account deletion ----
    async def get_deletion_token(self, token: str) -> DeletionTokenRecord | None: ...

    async def delete_deletion_token(self, token: str) -> bool: ...

    async def get_user_by_email(self, email: str) -> UserRecord | None: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def schedule_user_deletion(self, user_id: str, when: datetime) -> bool: ...

    def transaction(self) -> AsyncContextManager[DatastoreTransaction]: ...


def ensure_not_failed(status: RecordStatus) -> None:
    """Reject FAILED on the success-path status setters."""
    if status is RecordStatus.FAILED:
        raise ValueError(
            'FAILED can only be written by failure compensation (mark_*_failed)'
        )
