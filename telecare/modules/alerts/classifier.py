from __future__ import annotations

import math
from numbers import Real

from telecare.core.errors import ValidationError
from telecare.modules.alerts.models import ReadingClassification
from telecare.modules.alerts.schemas import VitalReading
from telecare.modules.alerts.thresholds import ThresholdTable
from telecare.shared.constants import TIERS_BY_SEVERITY, Tier, VITAL_NAMES


class ThresholdClassifier:
    """Map raw vital values onto severity tiers using a threshold table."""

    def __init__(self, table: ThresholdTable) -> None:
        self._table = table

    @property
    def table(self) -> ThresholdTable:
        return self._table

    def classify(self, vital_name: str, value: object) -> Tier:
        thresholds = self._table.vitals.get(vital_name)
        if thresholds is None:
            raise ValidationError(f"unknown vital {vital_name!r}", vital_name=vital_name)
        numeric_value = self._as_finite(vital_name, value)

        matched: Tier | None = None
        for tier in TIERS_BY_SEVERITY:
            if any(band.contains(numeric_value) for band in thresholds.bands_for(tier)):
                matched = tier
        # Outside every band is treated as the worst case
        return matched if matched is not None else Tier.CRITICAL

    def classify_reading(self, reading: VitalReading) -> ReadingClassification:
        tiers: dict[str, Tier] = {}
        invalid: dict[str, str] = {}
        for vital_name in VITAL_NAMES:
            value = getattr(reading, vital_name)
            if value is None:
                continue
            try:
                tiers[vital_name] = self.classify(vital_name, value)
            except ValidationError as exc:
                invalid[vital_name] = exc.message

        if not tiers:
            raise ValidationError(
                "reading has no classifiable vitals",
                patient_id=reading.patient_id,
                device_id=reading.device_id,
                invalid=invalid or None,
            )
        return ReadingClassification(tiers=tiers, overall=max(tiers.values()), invalid=invalid)

    @staticmethod
    def _as_finite(vital_name: str, value: object) -> float:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise ValidationError(
                f"{vital_name} must be numeric", vital_name=vital_name, value=repr(value)
            )
        numeric_value = float(value)
        if not math.isfinite(numeric_value):
            raise ValidationError(
                f"{vital_name} must be finite", vital_name=vital_name, value=repr(value)
            )
        return numeric_value
