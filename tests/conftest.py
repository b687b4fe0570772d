"""Shared test fixtures for the Toolgate test suite."""

import pytest

from toolgate.settings import (
    AuditSettings,
    CircuitBreakerSettings,
    DependencySettings,
    GovernanceSettings,
    RateLimitSettings,
    StoreSettings,
)
from toolgate.storage.db import connect
from toolgate.storage.kv import InMemoryStore


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock)


@pytest.fixture
def store_settings():
    return StoreSettings(lock_ttl=5, lock_wait=0.5)


@pytest.fixture
def conn():
    db = connect(":memory:")
    yield db
    db.close()


@pytest.fixture
def breaker_settings():
    return CircuitBreakerSettings(default_threshold=3, default_reset_timeout=60, default_failure_window=120)


@pytest.fixture
def rate_settings():
    return RateLimitSettings(calls_per_minute=5, window_seconds=60)


@pytest.fixture
def audit_settings():
    return AuditSettings(chunk_size=2)


@pytest.fixture
def dependency_settings():
    return DependencySettings(register_defaults=False)


@pytest.fixture
def settings(breaker_settings, rate_settings, audit_settings, store_settings):
    return GovernanceSettings(
        circuit_breaker=breaker_settings,
        rate_limit=rate_settings,
        audit=audit_settings,
        dependencies=DependencySettings(register_defaults=False),
        store=store_settings,
    )
