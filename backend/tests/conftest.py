"""
Test Configuration — settings isolation, event bus, seeded engines and
synthetic KPI observations.
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from core import config as config_module
from core.config import Settings
from core.events import EventBus
from core.security import SecurityWrapper
from prescriptive.engine import build_engines

TEST_SALT = "test-redaction-salt"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    config_module.get_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Small, seeded configuration so engine runs stay fast and reproducible."""
    return Settings(
        app_env="test",
        random_seed=11,
        redaction_salt=TEST_SALT,
        optimizer_max_iterations=12,
        optimizer_batch_size=4,
        optimizer_max_workers=2,
        scenario_default_samples=30,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def security() -> SecurityWrapper:
    return SecurityWrapper(salt=TEST_SALT)


@pytest.fixture
def engines(settings):
    """Both orchestrators wired on one bus and initialized."""
    return build_engines(settings)


@pytest.fixture
def make_records():
    """Factory for raw KPI observations evenly spread over the last ``days`` days."""

    def _make(
        count: int = 100,
        days: int = 7,
        base: float = 1000.0,
        noise: float = 50.0,
        kpi: str = "revenue",
        seed: int = 0,
    ) -> list[dict]:
        rng = np.random.default_rng(seed)
        end = datetime.now(timezone.utc) - timedelta(minutes=5)
        start = end - timedelta(days=days)
        step = (end - start) / count
        return [
            {
                "timestamp": (start + step * i).isoformat(),
                "kpi": kpi,
                "value": round(float(base + rng.normal(0.0, noise)), 2),
                "source_id": "test:feed",
            }
            for i in range(count)
        ]

    return _make
