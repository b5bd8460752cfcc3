from typing import assert_never

import structlog

from telecare.core.errors import PermissionDeniedError, ValidationError
from telecare.modules.alerts.models import Subscription
from telecare.modules.alerts.schemas import Alert
from telecare.shared.constants import ALL_CRITICAL, Role, Tier

log = structlog.get_logger()


def normalize_target(target: str) -> str:
    """Strip the target; only the exact ALL_CRITICAL key is the wildcard, anything else is a patient id."""
    normalized = target.strip()
    if not normalized:
        raise ValidationError("subscription target is empty")
    return normalized


class SubscriptionRegistry:
    """
    Client -> interest relation used to resolve alert recipients.

    Mutations never await, so each one is atomic on the event loop; resolution
    iterates over a snapshot so concurrent connect/disconnect cannot disturb it.
    """

    def __init__(self) -> None:
        self._roles: dict[str, Role] = {}
        self._by_client: dict[str, set[str]] = {}
        self._by_target: dict[str, set[str]] = {}

    def register(self, client_id: str, role: Role) -> None:
        self._roles[client_id] = role
        self._by_client.setdefault(client_id, set())

    def subscribe(self, client_id: str, target: str) -> Subscription:
        role = self._role_of(client_id)
        target_key = normalize_target(target)
        if target_key == ALL_CRITICAL and not self._may_hold_wildcard(role):
            raise PermissionDeniedError(
                "role may not subscribe to all critical alerts",
                client_id=client_id,
                role=role.value,
            )

        self._by_client[client_id].add(target_key)
        self._by_target.setdefault(target_key, set()).add(client_id)
        log.info("client subscribed", client_id=client_id, target=target_key, role=role.value)
        return Subscription(client_id=client_id, target=target_key, role=role)

    def unsubscribe(self, client_id: str, target: str) -> None:
        target_key = normalize_target(target)
        targets = self._by_client.get(client_id)
        if targets is not None:
            targets.discard(target_key)
        self._discard_from_target(target_key, client_id)
        log.info("client unsubscribed", client_id=client_id, target=target_key)

    def on_disconnect(self, client_id: str) -> None:
        """Drop every subscription the client held; alerts themselves are untouched."""
        targets = self._by_client.pop(client_id, set())
        self._roles.pop(client_id, None)
        for target_key in targets:
            self._discard_from_target(target_key, client_id)

    def subscriptions_for(self, client_id: str) -> list[Subscription]:
        role = self._roles.get(client_id)
        if role is None:
            return []
        return [
            Subscription(client_id=client_id, target=target, role=role)
            for target in sorted(self._by_client.get(client_id, ()))
        ]

    def clients_with_role(self, role: Role) -> set[str]:
        return {client_id for client_id, client_role in list(self._roles.items()) if client_role is role}

    def resolve_interested_clients(self, patient_id: str, level: Tier) -> set[str]:
        interested = set(self._by_target.get(patient_id, ()))
        if level is not Tier.CRITICAL:
            return interested

        interested.update(self._by_target.get(ALL_CRITICAL, ()))
        for client_id, role in list(self._roles.items()):
            if self._receives_all_critical(role):
                interested.add(client_id)
        return interested

    def subscribers_of(self, patient_id: str) -> set[str]:
        """Clients holding an explicit subscription to the patient."""
        return set(self._by_target.get(patient_id, ()))

    def resolve_for_alert(self, alert: Alert) -> set[str]:
        return self.resolve_interested_clients(alert.patient_id, alert.level)

    # ========== Role Rules ==========

    @staticmethod
    def _receives_all_critical(role: Role) -> bool:
        if role is Role.DOCTOR:
            return True
        if role is Role.FAMILY or role is Role.ADMIN:
            return False
        assert_never(role)

    @staticmethod
    def _may_hold_wildcard(role: Role) -> bool:
        if role is Role.DOCTOR or role is Role.ADMIN:
            return True
        if role is Role.FAMILY:
            return False
        assert_never(role)

    # ========== Helpers ==========

    def _role_of(self, client_id: str) -> Role:
        role = self._roles.get(client_id)
        if role is None:
            raise ValidationError("client is not registered", client_id=client_id)
        return role

    def _discard_from_target(self, target_key: str, client_id: str) -> None:
        clients = self._by_target.get(target_key)
        if clients is None:
            return
        clients.discard(client_id)
        if not clients:
            self._by_target.pop(target_key, None)
