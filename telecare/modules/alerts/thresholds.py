import json
from pathlib import Path

import structlog
from pydantic import Field, model_validator

from telecare.shared.constants import Tier
from telecare.shared.schemas import CamelModel

log = structlog.get_logger()


class ThresholdBand(CamelModel):
    """Inclusive [min, max] range of values."""

    min: float
    max: float

    @model_validator(mode="after")
    def check_order(self) -> "ThresholdBand":
        if self.min > self.max:
            raise ValueError(f"band min {self.min} exceeds max {self.max}")
        return self

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


class VitalThresholds(CamelModel):
    unit: str | None = None
    normal: list[ThresholdBand] = Field(default_factory=list)
    warning: list[ThresholdBand] = Field(default_factory=list)
    critical: list[ThresholdBand] = Field(default_factory=list)

    def bands_for(self, tier: Tier) -> list[ThresholdBand]:
        return getattr(self, tier.value)


class ThresholdTable(CamelModel):
    version: str = "reference-v1"
    vitals: dict[str, VitalThresholds] = Field(default_factory=dict)


def _bands(*ranges: tuple[float, float]) -> list[ThresholdBand]:
    return [ThresholdBand(min=low, max=high) for low, high in ranges]


# Shared edges resolve to the more severe tier
DEFAULT_THRESHOLDS = ThresholdTable(
    vitals={
        "heart_rate": VitalThresholds(
            unit="bpm",
            normal=_bands((60, 100)),
            warning=_bands((50, 60), (100, 120)),
            critical=_bands((0, 50), (120, 300)),
        ),
        "spo2": VitalThresholds(
            unit="%",
            normal=_bands((95, 100)),
            warning=_bands((90, 95)),
            critical=_bands((0, 90)),
        ),
        "temperature": VitalThresholds(
            unit="C",
            normal=_bands((36.0, 37.5)),
            warning=_bands((35.0, 36.0), (37.5, 39.0)),
            critical=_bands((20.0, 35.0), (39.0, 45.0)),
        ),
    },
)


def load_thresholds(path: Path | None) -> ThresholdTable:
    if path is None:
        return DEFAULT_THRESHOLDS
    try:
        payload = json.loads(path.read_text())
        return ThresholdTable.model_validate(payload)
    except FileNotFoundError:
        log.info("threshold table not found, using defaults", path=str(path))
        return DEFAULT_THRESHOLDS
    except Exception as exc:
        log.warning("threshold table load failed, using defaults", path=str(path), error=str(exc))
        return DEFAULT_THRESHOLDS
