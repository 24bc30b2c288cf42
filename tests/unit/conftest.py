"""Fixtures wiring the real Executor and workflows to in-memory doubles."""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from mortiscope.core.engine.executor import Executor
from mortiscope.core.models.app import ExecutorConfig
from mortiscope.core.services.analysis import AnalysisServiceClient
from mortiscope.workflows import WorkflowDeps, register_workflows

from tests.unit.fakes import (
    FakeClock,
    FakeMailer,
    InMemoryDatastore,
    InMemoryStepStore,
    RecordingService,
    make_client,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStepStore:
    return InMemoryStepStore()


@pytest.fixture
def datastore() -> InMemoryDatastore:
    return InMemoryDatastore()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def service() -> RecordingService:
    return RecordingService()


@pytest.fixture
def client(service: RecordingService) -> AnalysisServiceClient:
    return make_client(service)


@pytest.fixture
def deps(
    datastore: InMemoryDatastore,
    client: AnalysisServiceClient,
    mailer: FakeMailer,
    clock: FakeClock,
) -> WorkflowDeps:
    return WorkflowDeps(datastore=datastore, client=client, mailer=mailer, clock=clock)


@pytest_asyncio.fixture
async def executor(
    store: InMemoryStepStore, clock: FakeClock
) -> AsyncGenerator[Executor, None]:
    """Bare executor, no workflows registered."""
    ex = Executor(
        store,
        ExecutorConfig(batch_size=10, default_retries=2),
        clock=clock,
        worker_id='worker-test',
    )
    yield ex
    ex.close()


@pytest.fixture
def app_executor(executor: Executor, deps: WorkflowDeps) -> Executor:
    """Executor with every MortiScope workflow registered."""
    register_workflows(executor, deps)
    return executor
