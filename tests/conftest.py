"""Shared test fixtures for the batch operation engine."""

from __future__ import annotations

import pytest

from src.models.batch_config import BatchConfig
from src.models.circuit_breaker import CircuitBreakerConfig
from src.services.bulk_reconciler import BulkReconciler
from src.services.circuit_breaker import CircuitBreakerRegistry
from src.utils.retry import RetryExecutor, auth_only_should_retry
from tests.fakes import FakeTaskApi, fast_policy


@pytest.fixture
def api() -> FakeTaskApi:
    """Fake API holding tasks 1-5."""
    fake = FakeTaskApi()
    for task_id in range(1, 6):
        fake.add_task(task_id)
    return fake


@pytest.fixture
def registry() -> CircuitBreakerRegistry:
    """Registry whose breakers need plenty of volume before opening."""
    return CircuitBreakerRegistry(default_config=CircuitBreakerConfig(volume_threshold=50))


@pytest.fixture
def no_sleep_executor() -> RetryExecutor:
    """RetryExecutor that never actually sleeps."""
    return RetryExecutor(sleep=lambda _seconds: None, rng=lambda: 0.0)


@pytest.fixture
def reconciler(
    api: FakeTaskApi,
    registry: CircuitBreakerRegistry,
    no_sleep_executor: RetryExecutor,
) -> BulkReconciler:
    """Reconciler over the fake API with instant retries and no chunk delays."""
    return BulkReconciler(
        api,
        registry,
        update_config=BatchConfig(batch_size=10, max_concurrency=5),
        delete_config=BatchConfig(batch_size=5, max_concurrency=3),
        create_config=BatchConfig(batch_size=15, max_concurrency=8),
        task_policy=fast_policy(),
        bulk_policy=fast_policy(max_retries=0),
        relation_policy=fast_policy(should_retry=auth_only_should_retry),
        retry_executor=no_sleep_executor,
    )
