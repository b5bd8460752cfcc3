import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from telecare.core.security import Identity
from telecare.shared.constants import ConnectionPhase, Role, Tier


@dataclass
class ReadingClassification:
    tiers: dict[str, Tier]
    overall: Tier
    invalid: dict[str, str] = field(default_factory=dict)


@dataclass
class PatientAlertState:
    open_alert_id: str | None = None
    last_tier: Tier | None = None
    consecutive_normals: int = 0
    # Monotonic timestamp of the last emitted event for the open alert
    last_emitted_at: float | None = None
    suppressed_updates: int = 0


@dataclass(frozen=True)
class Subscription:
    client_id: str
    target: str
    role: Role


@dataclass
class ConnectionState:
    client_id: str
    connected_at: datetime
    last_seen: datetime
    phase: ConnectionPhase = ConnectionPhase.CONNECTING
    identity: Identity | None = None
    outbound: asyncio.Queue[dict] | None = None
    writer: asyncio.Task | None = None

    @property
    def role(self) -> Role | None:
        return self.identity.role if self.identity else None

    @property
    def is_connected(self) -> bool:
        return self.phase is ConnectionPhase.CONNECTED
