# mortiscope/core/app.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mortiscope.core.datastore.base import Datastore
from mortiscope.core.datastore.postgres import PostgresDatastore
from mortiscope.core.engine.definition import WorkflowDefinition
from mortiscope.core.engine.executor import Executor, utcnow
from mortiscope.core.logging import get_logger
from mortiscope.core.models.app import AppConfig
from mortiscope.core.models.events import TriggerEvent
from mortiscope.core.services.analysis import AnalysisServiceClient
from mortiscope.core.services.mailer import LogMailer, Mailer, SmtpMailer
from mortiscope.core.store.base import StepStore
from mortiscope.core.store.postgres import PostgresStepStore


class Mortiscope:
    """
    Wires configuration, stores, the analysis client and the mailer into an
    Executor with every MortiScope workflow registered.

    Collaborators default to the PostgreSQL / httpx / SMTP implementations
    built from `config`; any of them can be passed in (tests pass in-memory
    doubles). Both PostgreSQL stores share one engine.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        datastore: Optional[Datastore] = None,
        step_store: Optional[StepStore] = None,
        client: Optional[AnalysisServiceClient] = None,
        mailer: Optional[Mailer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.logger = get_logger('app')
        self.clock = clock

        self._engine: AsyncEngine | None = None
        if datastore is None or step_store is None:
            self._engine = create_async_engine(
                config.broker.database_url, **config.broker.engine_kwargs()
            )

        self.step_store: StepStore = step_store or PostgresStepStore(
            config.broker, engine=self._engine
        )
        self.datastore: Datastore = datastore or PostgresDatastore(
            config.broker, engine=self._engine
        )
        self.client = client or AnalysisServiceClient(config.analysis)
        if mailer is not None:
            self.mailer: Mailer = mailer
        elif config.mail is not None:
            self.mailer = SmtpMailer(config.mail)
        else:
            self.mailer = LogMailer()

        self.executor = Executor(self.step_store, config.executor, clock=clock)
        self._registered = False

    def register_workflows(self) -> list[WorkflowDefinition[Any]]:
        """Register every workflow once; later calls return the same definitions."""
        from mortiscope.workflows import WorkflowDeps, register_workflows

        if self._registered:
            return [self.executor.registry[wid] for wid in self.executor.registry]
        deps = WorkflowDeps(
            datastore=self.datastore,
            client=self.client,
            mailer=self.mailer,
            clock=self.clock,
        )
        definitions = register_workflows(self.executor, deps)
        self._registered = True
        self.logger.info(
            f"Registered {len(definitions)} workflow(s): "
            f"{', '.join(d.id for d in definitions)}"
        )
        return definitions

    def list_workflows(self) -> list[str]:
        return self.executor.registry.ids()

    async def ensure_schema_initialized(self) -> None:
        await self.step_store.ensure_schema_initialized()

    async def send_event(
        self,
        event: TriggerEvent,
        *,
        ts: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> list[str]:
        return await self.executor.send(event, ts=ts, event_id=event_id)

    async def send_named_event(
        self,
        name: str,
        data: Mapping[str, Any],
        *,
        ts: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> list[str]:
        return await self.executor.send_named(name, data, ts=ts, event_id=event_id)

    def send_event_sync(
        self,
        event: TriggerEvent,
        *,
        ts: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> list[str]:
        return self.executor.send_sync(event, ts=ts, event_id=event_id)

    async def close_async(self) -> None:
        self.executor.close()
        await self.step_store.close_async()
        close_datastore = getattr(self.datastore, 'close_async', None)
        if close_datastore is not None:
            await close_datastore()
        if self._engine is not None:
            await self._engine.dispose()
