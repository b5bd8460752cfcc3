from telecare.client.backoff import Backoff
from telecare.client.channels import EventChannel, ReconciliationSnapshot
from telecare.client.http import fetch_active_alerts
from telecare.client.stream import AlertStreamClient

__all__ = [
    "AlertStreamClient",
    "Backoff",
    "EventChannel",
    "ReconciliationSnapshot",
    "fetch_active_alerts",
]
