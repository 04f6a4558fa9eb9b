"""Configuration for the clinic encounter orchestration module."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Find and load .env file
_env_candidates = [
    Path(__file__).parent.parent / ".env",
    Path(__file__).parent.parent / ".env.template",
]

for env_path in _env_candidates:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Config:
    """Encounter orchestration configuration."""

    # --- Storage ---
    CLINIC_DB_PATH: str = os.path.expanduser(
        os.getenv("CLINIC_DB_PATH", "~/.aegis/clinic.db")
    )
    DEFAULT_CLINIC: str = os.getenv("DEFAULT_CLINIC", "main")

    # --- Triage bands ---
    # Minutes since triage before a waiting patient turns yellow / red
    TRIAGE_YELLOW_MINUTES: int = int(os.getenv("TRIAGE_YELLOW_MINUTES", "15"))
    TRIAGE_RED_MINUTES: int = int(os.getenv("TRIAGE_RED_MINUTES", "30"))

    # --- Check-in ---
    APPOINTMENT_SLOT_MINUTES: int = int(os.getenv("APPOINTMENT_SLOT_MINUTES", "30"))

    # --- Outbox ---
    OUTBOX_MAX_ATTEMPTS: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
    OUTBOX_POLL_SECONDS: int = int(os.getenv("OUTBOX_POLL_SECONDS", "10"))
    # A claimed effect not finished within this many seconds is claimable again
    OUTBOX_CLAIM_TIMEOUT_SECONDS: int = int(os.getenv("OUTBOX_CLAIM_TIMEOUT_SECONDS", "300"))

    # --- Live push ---
    PUSH_QUEUE_SIZE: int = int(os.getenv("PUSH_QUEUE_SIZE", "100"))
    SSE_HEARTBEAT_SECONDS: int = int(os.getenv("SSE_HEARTBEAT_SECONDS", "15"))

    # --- Pricing ---
    CHARGE_MASTER_URL: str | None = os.getenv("CHARGE_MASTER_URL") or None
    CHARGE_MASTER_TIMEOUT: float = float(os.getenv("CHARGE_MASTER_TIMEOUT", "5"))

    @classmethod
    def use_remote_charge_master(cls) -> bool:
        """Check if a remote charge master service is configured."""
        return bool(cls.CHARGE_MASTER_URL)


# Consultation fee keyed by encounter type
CONSULTATION_FEES: dict[str, float] = {
    "walk-in": 75.0,
    "appointment": 50.0,
    "follow-up": 40.0,
    "emergency": 150.0,
}
DEFAULT_CONSULTATION_FEE = 75.0

# Fallback prices when the charge master has no match
DEFAULT_LAB_PRICE = 25.0
DEFAULT_PHARMACY_UNIT_PRICE = 10.0
DEFAULT_IMAGING_PRICE = 75.0
IMAGING_PRICES: dict[str, float] = {
    "X-Ray": 50.0,
    "CT Scan": 250.0,
    "MRI": 500.0,
    "Ultrasound": 100.0,
    "Mammogram": 150.0,
}

# Default lab reference ranges, seeded into lab_reference_ranges
# name: (min_normal, max_normal, critical_low, critical_high, unit)
DEFAULT_REFERENCE_RANGES: dict[str, tuple[float, float, float | None, float | None, str]] = {
    "potassium": (3.5, 5.1, 2.5, 6.5, "mmol/L"),
    "sodium": (135.0, 145.0, 120.0, 160.0, "mmol/L"),
    "glucose": (70.0, 110.0, 40.0, 450.0, "mg/dL"),
    "hemoglobin": (12.0, 17.5, 7.0, 20.0, "g/dL"),
    "platelets": (150.0, 400.0, 50.0, 1000.0, "x10^3/uL"),
    "wbc": (4.0, 11.0, 2.0, 30.0, "x10^3/uL"),
    "creatinine": (0.6, 1.3, None, 10.0, "mg/dL"),
    "calcium": (8.5, 10.5, 6.0, 13.0, "mg/dL"),
    "troponin": (0.0, 0.04, None, 0.4, "ng/mL"),
}


config = Config()
