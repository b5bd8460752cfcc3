import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from fastapi.requests import HTTPConnection

from telecare.core.config import Settings
from telecare.core.security import CredentialVerifier, JWTCredentialVerifier
from telecare.modules.alerts.aggregator import AlertAggregator, AlertHistorySink
from telecare.modules.alerts.classifier import ThresholdClassifier
from telecare.modules.alerts.hub import ConnectionHub
from telecare.modules.alerts.policy import AlertPolicy
from telecare.modules.alerts.registry import SubscriptionRegistry
from telecare.modules.alerts.thresholds import load_thresholds
from telecare.shared.schemas import utc_now


@dataclass
class AlertRuntime:
    """Everything one process needs to run the alert pipeline."""

    classifier: ThresholdClassifier
    aggregator: AlertAggregator
    registry: SubscriptionRegistry
    hub: ConnectionHub
    verifier: CredentialVerifier
    policy: AlertPolicy
    auth_timeout_seconds: float = 10.0
    ingest_api_key: str = ""


def build_runtime(
    settings: Settings,
    verifier: CredentialVerifier | None = None,
    history_sink: AlertHistorySink | None = None,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = utc_now,
) -> AlertRuntime:
    thresholds_path = Path(settings.ALERT_THRESHOLDS_PATH) if settings.ALERT_THRESHOLDS_PATH else None
    policy = AlertPolicy.from_settings(settings)
    classifier = ThresholdClassifier(load_thresholds(thresholds_path))
    registry = SubscriptionRegistry()
    hub = ConnectionHub(registry, queue_size=settings.CLIENT_OUTBOUND_QUEUE_SIZE)
    aggregator = AlertAggregator(
        classifier,
        policy=policy,
        history_sink=history_sink,
        clock=clock,
        now=now,
    )
    aggregator.add_publisher(hub.publish)
    return AlertRuntime(
        classifier=classifier,
        aggregator=aggregator,
        registry=registry,
        hub=hub,
        verifier=verifier or JWTCredentialVerifier(),
        policy=policy,
        auth_timeout_seconds=settings.AUTH_TIMEOUT_SECONDS,
        ingest_api_key=settings.INGEST_API_KEY,
    )


def get_runtime(conn: HTTPConnection) -> AlertRuntime:
    return conn.app.state.alert_runtime
