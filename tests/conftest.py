"""Shared fixtures: a clock that advances instantly and in-memory entity stores."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from apps.ingestor.chain import RecordChainBuilder
from apps.ingestor.cooldown import CooldownGuard
from apps.ingestor.executor import RateLimitedExecutor
from apps.ingestor.extraction import ExtractionStage
from apps.ingestor.orchestrator import BatchOrchestrator
from apps.ingestor.retry import RetryingCaller
from utils.db import open_stores
from utils.schemas import AgencyContext
from utils.sftp import LocalUploader
from utils.workflow import UnconfiguredWorkflow

START = 1_700_000_000.0


class FakeClock:
    """Clock whose sleep() advances time immediately and records the duration."""

    def __init__(self, start: float = START) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.current += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += seconds


def make_executor(clock: FakeClock, **kwargs) -> RateLimitedExecutor:
    caller = RetryingCaller(clock, rng=random.Random(7))
    return RateLimitedExecutor(caller, clock, **kwargs)


def extraction_result(*tickets: dict) -> dict:
    return {"tickets": list(tickets)}


class Pipeline:
    """Orchestrator wired to fakes, with handles on every collaborator."""

    def __init__(self, clock, stores, extraction_client, workflow=None, uploader=None, **kwargs):
        self.clock = clock
        self.stores = stores
        self.extraction_client = extraction_client
        self.executor = make_executor(clock)
        self.cooldown = CooldownGuard(clock)
        self.builder = RecordChainBuilder(stores, workflow or UnconfiguredWorkflow(), clock)
        self.orchestrator = BatchOrchestrator(
            ExtractionStage(self.executor, extraction_client),
            self.builder,
            self.cooldown,
            stores,
            uploader or LocalUploader(),
            clock,
            **kwargs,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores():
    return open_stores("memory")


@pytest.fixture
def agency() -> AgencyContext:
    return AgencyContext(agency_id="agency-1", agent_email="agent@example.com")


@pytest.fixture
def extraction_client() -> AsyncMock:
    client = AsyncMock()
    client.invoke.return_value = extraction_result(
        {"passenger_name": "John Doe", "total_amount": 450}
    )
    return client


@pytest.fixture
def pipeline(clock, stores, extraction_client) -> Pipeline:
    return Pipeline(clock, stores, extraction_client)
