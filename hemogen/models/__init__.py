"""
Data models for hemogen.
"""

from .record import (
    AnomalyCategory,
    DeliveryOutcome,
    DeliveryReport,
    ERYTHROCYTE_FIELDS,
    LEUKOCYTE_FIELDS,
    LabRecord,
    Location,
    MEASUREMENT_FIELDS,
    Measurements,
    PLATELET_FIELDS,
    generate_id,
    generate_subject_id,
)

__all__ = [
    "AnomalyCategory",
    "DeliveryOutcome",
    "DeliveryReport",
    "ERYTHROCYTE_FIELDS",
    "LEUKOCYTE_FIELDS",
    "LabRecord",
    "Location",
    "MEASUREMENT_FIELDS",
    "Measurements",
    "PLATELET_FIELDS",
    "generate_id",
    "generate_subject_id",
]
