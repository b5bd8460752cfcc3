from enum import Enum


class Role(str, Enum):
    DOCTOR = "doctor"
    FAMILY = "family"
    ADMIN = "admin"


class Tier(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def severity(self) -> int:
        return _TIER_SEVERITY[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.severity < other.severity

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.severity <= other.severity

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.severity > other.severity

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.severity >= other.severity


_TIER_SEVERITY = {Tier.NORMAL: 0, Tier.WARNING: 1, Tier.CRITICAL: 2}

# Evaluation order for threshold bands: least to most severe
TIERS_BY_SEVERITY = (Tier.NORMAL, Tier.WARNING, Tier.CRITICAL)


class AlertStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    SUPERSEDED = "superseded"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectionPhase(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class NotificationAudience(str, Enum):
    ALL = "all"
    DOCTORS = "doctors"
    FAMILIES = "families"


# Subscription target meaning "every critical alert for any patient"
ALL_CRITICAL = "all-critical"

VITAL_NAMES = ("heart_rate", "spo2", "temperature")
