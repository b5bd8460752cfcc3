"""Who may see or act on which patient's alerts."""

from typing import Iterable, assert_never

from telecare.core.errors import PermissionDeniedError
from telecare.core.security import Identity
from telecare.modules.alerts.schemas import Alert
from telecare.shared.constants import ALL_CRITICAL, Role, Tier


def ensure_patient_access(identity: Identity, patient_id: str) -> None:
    if patient_id == ALL_CRITICAL:
        return
    if not identity.may_access(patient_id):
        raise PermissionDeniedError(
            "patient is not assigned to this user",
            user_id=identity.user_id,
            patient_id=patient_id,
        )


def can_view(identity: Identity, alert: Alert, subscribed: Iterable[str] = ()) -> bool:
    role = identity.role
    if role is Role.ADMIN:
        return True
    if role is Role.DOCTOR:
        return alert.level is Tier.CRITICAL or identity.may_access(alert.patient_id)
    if role is Role.FAMILY:
        # Family members never see patients they are not explicitly tied to
        if identity.patient_ids is not None:
            return alert.patient_id in identity.patient_ids
        return alert.patient_id in set(subscribed)
    assert_never(role)


def visible_alerts(
    identity: Identity, alerts: list[Alert], subscribed: Iterable[str] = ()
) -> list[Alert]:
    targets = set(subscribed)
    return [alert for alert in alerts if can_view(identity, alert, targets)]


def ensure_can_view(identity: Identity, alert: Alert, subscribed: Iterable[str] = ()) -> None:
    if not can_view(identity, alert, subscribed):
        raise PermissionDeniedError(
            "alert is not visible to this user",
            user_id=identity.user_id,
            alert_id=alert.id,
            patient_id=alert.patient_id,
        )
