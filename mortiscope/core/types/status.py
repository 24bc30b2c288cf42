# core/types/status.py
"""
Core status enums and the record status transition table.
This module should not import from other application modules.
"""

from enum import Enum


class RunStatus(Enum):
    """Workflow run execution status"""

    PENDING = 'PENDING'  # Waiting for its delivery / retry time to arrive.

    RUNNING = 'RUNNING'  # Claimed by a worker under a lease.

    SLEEPING = 'SLEEPING'  # Suspended in step.sleep() until next_run_at.

    COMPLETED = 'COMPLETED'  # Handler returned.
    FAILED = 'FAILED'  # Retries exhausted, failure hook invoked.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in RUN_TERMINAL_STATES


RUN_TERMINAL_STATES: frozenset[RunStatus] = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
})


class RecordStatus(Enum):
    """Status of an AnalysisResult or Export record, as polled by the UI."""

    PENDING = 'pending'  # Created by the request action, no workflow step ran yet.
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'  # Only written by failure compensation.

    def can_transition_to(
        self, target: 'RecordStatus', *, recalculation: bool = False
    ) -> bool:
        """Whether a workflow step may move a record from this status to `target`.

        Repeating the current status is allowed for PROCESSING and COMPLETED so a
        step replayed after a crash stays idempotent. COMPLETED re-enters
        PROCESSING only for an explicit recalculation, which also reopens FAILED.
        """
        return self in allowed_sources(target, recalculation=recalculation)


_TRANSITION_SOURCES: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.PENDING: frozenset(),
    RecordStatus.PROCESSING: frozenset({
        RecordStatus.PENDING,
        RecordStatus.PROCESSING,
    }),
    RecordStatus.COMPLETED: frozenset({
        RecordStatus.PROCESSING,
        RecordStatus.COMPLETED,
    }),
    RecordStatus.FAILED: frozenset({
        RecordStatus.PENDING,
        RecordStatus.PROCESSING,
    }),
}


def allowed_sources(
    target: RecordStatus, *, recalculation: bool = False
) -> frozenset[RecordStatus]:
    """Statuses from which `target` may be written."""
    sources = _TRANSITION_SOURCES[target]
    if recalculation and target is RecordStatus.PROCESSING:
        return sources | {RecordStatus.COMPLETED, RecordStatus.FAILED}
    return sources
