"""
Core data models for the hemogram generator.

A LabRecord is one synthetic complete blood count (CBC) for one subject,
collected at one location. All generation, persistence, encoding and
delivery operations work with these models.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field


def generate_id() -> str:
    """Generate a unique record identifier."""
    return str(uuid4())


def generate_subject_id(prefix: str = "PAT") -> str:
    """Generate a short subject identifier such as PAT-1a2b3c4d."""
    return f"{prefix}-{str(uuid4())[:8]}"


# =============================================================================
# ENUMS
# =============================================================================


class AnomalyCategory(str, Enum):
    NORMAL = "normal"
    LEUCOCYTOSIS = "leucocytosis"  # Isolated elevated WBC
    SUSPECTED_OUTBREAK_SIGNAL = "suspected-outbreak-signal"  # WBC + neutrophils
    SEVERE_OUTBREAK_SIGNAL = "severe-outbreak-signal"  # Neutrophils + band forms, weighted 2x downstream

    @property
    def is_anomalous(self) -> bool:
        return self is not AnomalyCategory.NORMAL


# Measurement field names in panel order.
ERYTHROCYTE_FIELDS = (
    "red_blood_cells",
    "hemoglobin",
    "hematocrit",
    "mcv",
    "mch",
    "mchc",
    "rdw",
)
LEUKOCYTE_FIELDS = (
    "white_blood_cells",
    "neutrophils",
    "neutrophils_band_form",
    "lymphocytes",
    "monocytes",
    "eosinophils",
    "basophils",
)
PLATELET_FIELDS = ("platelets", "mpv")
MEASUREMENT_FIELDS = ERYTHROCYTE_FIELDS + LEUKOCYTE_FIELDS + PLATELET_FIELDS


# =============================================================================
# LOCATION
# =============================================================================


class Location(BaseModel):
    """A (city, region) origin, encoded as "city|region" in configuration."""
    city: str
    region: str | None = None

    @classmethod
    def parse(cls, value: str) -> "Location":
        """Split a "city|region" string. A bare city has no region."""
        city, sep, region = value.partition("|")
        city = city.strip()
        if not city:
            raise ValueError(f"Location has no city: {value!r}")
        return cls(city=city, region=(region.strip() or None) if sep else None)

    @property
    def key(self) -> str:
        return f"{self.city}|{self.region}" if self.region else self.city

    def __str__(self) -> str:
        return self.key


# =============================================================================
# MEASUREMENTS
# =============================================================================


class Measurements(BaseModel):
    """
    CBC values for one sample.

    Units: red_blood_cells 10^6/uL, hemoglobin g/dL, hematocrit %, mcv fL,
    mch pg, mchc g/dL, rdw %, white_blood_cells / neutrophils /
    neutrophils_band_form cells/uL, lymphocytes / monocytes / eosinophils /
    basophils % of differential, platelets 10^3/uL, mpv fL.

    A value of None means the measurement was not taken.
    """
    # Erythrocyte indices
    red_blood_cells: float | None = None
    hemoglobin: float | None = None
    hematocrit: float | None = None
    mcv: float | None = None
    mch: float | None = None
    mchc: float | None = None
    rdw: float | None = None

    # Leukocyte differential
    white_blood_cells: float | None = None
    neutrophils: float | None = None
    neutrophils_band_form: float | None = None
    lymphocytes: float | None = None
    monocytes: float | None = None
    eosinophils: float | None = None
    basophils: float | None = None

    # Platelet indices
    platelets: float | None = None
    mpv: float | None = None


# =============================================================================
# LAB RECORD
# =============================================================================


class LabRecord(Measurements):
    """
    One synthetic lab result.

    Created by the batch composer, persisted once, and updated once by the
    delivery pipeline when the sink accepts it.
    """
    id: str = Field(default_factory=generate_id)
    subject_id: str = Field(default_factory=generate_subject_id)
    subject_name: str = ""
    city: str
    region: str | None = None
    collected_at: datetime = Field(default_factory=datetime.now)
    category: AnomalyCategory = AnomalyCategory.NORMAL

    # Delivery status
    sent_to_api: bool = False
    sent_at: datetime | None = None
    api_response_status: int | None = None

    created_at: datetime = Field(default_factory=datetime.now)

    def model_post_init(self, __context) -> None:
        if not self.subject_name:
            self.subject_name = f"Patient {self.subject_id}"

    @computed_field
    @property
    def location(self) -> str:
        return Location(city=self.city, region=self.region).key


# =============================================================================
# DELIVERY RESULTS
# =============================================================================


class DeliveryOutcome(BaseModel):
    """Result of one send attempt for one record."""
    record_id: str
    success: bool
    status_code: int | None = None
    error: str | None = None


class DeliveryReport(BaseModel):
    """Aggregate result of one delivery run."""
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0  # In flight elsewhere or already delivered
    batch_sizes: list[int] = Field(default_factory=list)
    duration_seconds: float = 0.0
    outcomes: list[DeliveryOutcome] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed
