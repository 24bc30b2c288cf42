from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from mortiscope.core.datastore.base import Datastore
from mortiscope.core.services.analysis import AnalysisServiceClient
from mortiscope.core.services.mailer import LogMailer, Mailer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkflowDeps:
    """Collaborators shared by every workflow handler and failure hook."""

    datastore: Datastore
    client: AnalysisServiceClient
    mailer: Mailer = field(default_factory=LogMailer)
    clock: Callable[[], datetime] = _utcnow
