"""Vital sign plausibility checks and critical-band classification.

Validation and critical classification are independent: a value can be
plausible (accepted and stored) and still fall in a critical band (alert
the physician). Implausible values reject the whole reading.
"""

from dataclasses import dataclass
from typing import Any

from .errors import InvalidVitals


@dataclass(frozen=True)
class VitalRange:
    """Plausible bounds plus the normal band. Outside normal is critical."""
    min: float
    max: float
    unit: str
    critical_min: float | None = None
    critical_max: float | None = None

    def is_plausible(self, value: float) -> bool:
        return self.min <= value <= self.max

    def is_critical(self, value: float) -> bool:
        if self.critical_min is not None and value < self.critical_min:
            return True
        if self.critical_max is not None and value > self.critical_max:
            return True
        return False


VITAL_RANGES: dict[str, VitalRange] = {
    "temperature_F": VitalRange(86, 113, "°F", critical_min=96, critical_max=103),
    "temperature_C": VitalRange(30, 45, "°C", critical_min=36, critical_max=40),
    "heart_rate": VitalRange(20, 250, "bpm", critical_min=50, critical_max=120),
    "blood_pressure_systolic": VitalRange(50, 300, "mmHg", critical_min=90, critical_max=180),
    "blood_pressure_diastolic": VitalRange(20, 200, "mmHg", critical_min=60, critical_max=110),
    "respiratory_rate": VitalRange(4, 70, "breaths/min", critical_min=12, critical_max=25),
    "oxygen_saturation": VitalRange(50, 100, "%", critical_min=90),
    "weight_kg": VitalRange(0.5, 300, "kg"),
    "weight_lbs": VitalRange(1, 660, "lbs"),
    "height_cm": VitalRange(30, 250, "cm"),
    "height_in": VitalRange(12, 100, "in"),
}

# Measured field -> (unit field, allowed units, default unit)
UNIT_FIELDS: dict[str, tuple[str, tuple[str, ...], str]] = {
    "temperature": ("temperature_unit", ("F", "C"), "F"),
    "weight": ("weight_unit", ("kg", "lbs"), "kg"),
    "height": ("height_unit", ("cm", "in"), "cm"),
}

PLAIN_FIELDS = (
    "heart_rate",
    "blood_pressure_systolic",
    "blood_pressure_diastolic",
    "respiratory_rate",
    "oxygen_saturation",
)

ALLOWED_FIELDS = frozenset(
    list(PLAIN_FIELDS)
    + list(UNIT_FIELDS)
    + [unit_field for unit_field, _, _ in UNIT_FIELDS.values()]
    + ["blood_pressure", "pain_score", "notes"]
)


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _split_blood_pressure(value: Any) -> tuple[float, float] | None:
    """Parse a "120/80" reading into (systolic, diastolic)."""
    if not isinstance(value, str) or value.count("/") != 1:
        return None
    systolic, diastolic = (_to_number(part) for part in value.split("/"))
    if systolic is None or diastolic is None:
        return None
    return systolic, diastolic


def validate_vitals(vitals: dict[str, Any]) -> dict[str, Any]:
    """Validate a vitals reading.

    Args:
        vitals: Raw field -> value mapping. Units default to F, kg and cm.
            Blood pressure may be given as "blood_pressure": "120/80" in
            place of the separate systolic and diastolic fields.

    Returns:
        Dict with normalized "values", "critical" (field -> value for every
        plausible value in a critical band) and "warnings" (field -> message).

    Raises:
        InvalidVitals: with a field-level errors dict
    """
    if not isinstance(vitals, dict) or not vitals:
        raise InvalidVitals("No vital signs provided", {"vitals": "At least one value is required"})

    errors: dict[str, str] = {}
    values: dict[str, Any] = {}
    critical: dict[str, float] = {}
    warnings: dict[str, str] = {}

    for name in vitals:
        if name not in ALLOWED_FIELDS:
            errors[name] = "Unknown vital sign"

    vitals = dict(vitals)
    combined = vitals.pop("blood_pressure", None)
    if combined is not None:
        if (vitals.get("blood_pressure_systolic") is not None
                or vitals.get("blood_pressure_diastolic") is not None):
            errors["blood_pressure"] = "Give blood_pressure or systolic/diastolic, not both"
        else:
            parsed = _split_blood_pressure(combined)
            if parsed is None:
                errors["blood_pressure"] = "Must look like 120/80"
            else:
                vitals["blood_pressure_systolic"], vitals["blood_pressure_diastolic"] = parsed

    def check(name: str, range_key: str) -> None:
        raw = vitals.get(name)
        if raw is None:
            return
        number = _to_number(raw)
        if number is None:
            errors[name] = "Must be a number"
            return
        bounds = VITAL_RANGES[range_key]
        if not bounds.is_plausible(number):
            errors[name] = f"Value must be between {bounds.min:g} and {bounds.max:g} {bounds.unit}"
            return
        values[name] = number
        if bounds.is_critical(number):
            critical[name] = number
            low = f"{bounds.critical_min:g}" if bounds.critical_min is not None else ""
            high = f"{bounds.critical_max:g}" if bounds.critical_max is not None else ""
            warnings[name] = f"Outside normal range ({low}-{high} {bounds.unit})"

    for name, (unit_field, allowed, default) in UNIT_FIELDS.items():
        unit = vitals.get(unit_field, default)
        if unit not in allowed:
            errors[unit_field] = f"Unit must be one of {', '.join(allowed)}"
            continue
        if vitals.get(name) is not None:
            values[unit_field] = unit
        check(name, f"{name}_{unit}")

    for name in PLAIN_FIELDS:
        check(name, name)

    pain = vitals.get("pain_score")
    if pain is not None:
        number = _to_number(pain)
        if number is None or not 0 <= number <= 10:
            errors["pain_score"] = "Pain score must be between 0 and 10"
        else:
            values["pain_score"] = number

    if vitals.get("notes"):
        values["notes"] = str(vitals["notes"])

    systolic = values.get("blood_pressure_systolic")
    diastolic = values.get("blood_pressure_diastolic")
    if systolic is not None and diastolic is not None and diastolic >= systolic:
        errors["blood_pressure_diastolic"] = "Diastolic must be lower than systolic"

    if errors:
        raise InvalidVitals("Invalid vital signs", errors)

    return {"values": values, "critical": critical, "warnings": warnings}
