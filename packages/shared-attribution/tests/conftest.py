"""Pytest fixtures for shared-attribution tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from touchtrail.attribution.memory import (
    InMemoryConversionRecorder,
    InMemoryEventStore,
    InMemoryIdentityResolver,
    InMemoryModelConfigStore,
    InMemoryResultSink,
)
from touchtrail.attribution.orchestrator import AttributionOrchestrator
from touchtrail.attribution.schema import Touchpoint

BASE_TIME = datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def make_touchpoints() -> Callable[..., list[Touchpoint]]:
    """Build touchpoints placed ``days_before`` days before BASE_TIME.

    Example:
        make_touchpoints(2, 1, 0) -> three touchpoints, one day apart
    """

    def _make(*days_before: float, sources: list[str] | None = None) -> list[Touchpoint]:
        sources = sources or ["google"] * len(days_before)
        return [
            Touchpoint(
                id=f"tp-{i}",
                timestamp=BASE_TIME - timedelta(days=days),
                source=source,
            )
            for i, (days, source) in enumerate(zip(days_before, sources))
        ]

    return _make


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def identity_resolver() -> InMemoryIdentityResolver:
    return InMemoryIdentityResolver()


@pytest.fixture
def config_store() -> InMemoryModelConfigStore:
    return InMemoryModelConfigStore()


@pytest.fixture
def result_sink() -> InMemoryResultSink:
    return InMemoryResultSink()


@pytest.fixture
def conversion_recorder() -> InMemoryConversionRecorder:
    return InMemoryConversionRecorder()


@pytest.fixture
def orchestrator(
    event_store,
    identity_resolver,
    config_store,
    result_sink,
    conversion_recorder,
) -> AttributionOrchestrator:
    """Orchestrator wired to in-memory stores."""
    return AttributionOrchestrator(
        event_store=event_store,
        identity_resolver=identity_resolver,
        config_store=config_store,
        result_sink=result_sink,
        conversion_recorder=conversion_recorder,
    )
