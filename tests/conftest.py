from typing import Any, AsyncGenerator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from telecare.core.config import Settings
from telecare.main import create_app
from telecare.modules.alerts.aggregator import AlertAggregator
from telecare.modules.alerts.classifier import ThresholdClassifier
from telecare.modules.alerts.policy import AlertPolicy
from telecare.modules.alerts.service import AlertRuntime, build_runtime
from telecare.modules.alerts.thresholds import DEFAULT_THRESHOLDS
from telecare.shared.constants import Role
from tests.helpers import FakeClock, FakeWallClock, auth_headers


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        MONGODB_URL="",
        INGEST_API_KEY="",
        AUTH_TIMEOUT_SECONDS=0.5,
        ALERT_THRESHOLDS_PATH=None,
        ALERT_UPDATE_INTERVAL_SECONDS=5.0,
        ALERT_CLEAR_AFTER_NORMAL_READINGS=2,
        ALERT_LIST_CAP=10,
        ALERT_RETENTION_SECONDS=None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def classifier() -> ThresholdClassifier:
    return ThresholdClassifier(DEFAULT_THRESHOLDS)


@pytest.fixture
def published() -> list[Any]:
    return []


@pytest.fixture
def aggregator(
    classifier: ThresholdClassifier,
    clock: FakeClock,
    wall_clock: FakeWallClock,
    published: list[Any],
) -> AlertAggregator:
    aggregator = AlertAggregator(classifier, policy=AlertPolicy(), clock=clock, now=wall_clock)
    aggregator.add_publisher(published.append)
    return aggregator


@pytest.fixture
def runtime(test_settings: Settings, clock: FakeClock) -> AlertRuntime:
    return build_runtime(test_settings, clock=clock)


@pytest.fixture
def app(runtime: AlertRuntime) -> FastAPI:
    return create_app(runtime)


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def doctor_headers() -> dict[str, str]:
    return auth_headers("doc-1", Role.DOCTOR, name="Dr. Lee")


@pytest.fixture
def family_headers() -> dict[str, str]:
    return auth_headers("fam-1", Role.FAMILY, name="Ana", patient_ids=["patient-1"])


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers("admin-1", Role.ADMIN)
