"""
Clinical value sampling.

Draws CBC values for a given anomaly category. Only the leukocyte count,
neutrophil count and band-form count depend on the category; everything
else always comes from the adult reference range.
"""

from __future__ import annotations

import random

from hemogen.config import ClinicalThresholds
from hemogen.models import AnomalyCategory, MEASUREMENT_FIELDS, Measurements


# Reference ranges for measurements that never carry an anomaly.
NORMAL_RANGES: dict[str, tuple[float, float]] = {
    # Erythrocyte indices
    "red_blood_cells": (4.5, 5.5),
    "hemoglobin": (13.0, 17.0),
    "hematocrit": (40.0, 50.0),
    "mcv": (80.0, 100.0),
    "mch": (27.0, 32.0),
    "mchc": (32.0, 36.0),
    "rdw": (11.5, 14.5),
    # Differential percentages
    "lymphocytes": (20.0, 45.0),
    "monocytes": (2.0, 10.0),
    "eosinophils": (1.0, 6.0),
    "basophils": (0.0, 2.0),
    # Platelet indices
    "platelets": (150.0, 400.0),
    "mpv": (7.5, 11.5),
}

# Floors of the sub-threshold ranges, cells/uL
WBC_FLOOR = 4000.0
NEUTROPHIL_FLOOR = 1800.0
BAND_FLOOR = 0.0

# Margins kept below each threshold so normal values never touch it
NORMAL_WBC_MARGIN = 500.0
NORMAL_NEUTROPHIL_MARGIN = 500.0
LEUCOCYTOSIS_NEUTROPHIL_MARGIN = 100.0
BAND_MARGIN = 50.0


def normal_differential_ranges(thresholds: ClinicalThresholds) -> dict[str, tuple[float, float]]:
    """Normal ranges for the three category-driven measurements."""
    return {
        "white_blood_cells": (WBC_FLOOR, thresholds.leucocytosis - NORMAL_WBC_MARGIN),
        "neutrophils": (NEUTROPHIL_FLOOR, thresholds.neutrophilia - NORMAL_NEUTROPHIL_MARGIN),
        "neutrophils_band_form": (BAND_FLOOR, thresholds.left_shift - BAND_MARGIN),
    }


class ClinicalValueSampler:
    """
    Samples measurement values for one record.

    The random source is injectable so tests can reproduce exact values.
    """

    def __init__(self, thresholds: ClinicalThresholds, rng: random.Random | None = None):
        self.thresholds = thresholds
        self.rng = rng or random.Random()

    def uniform(self, low: float, high: float) -> float:
        """Uniform draw in [low, high], rounded to two decimals."""
        return round(low + self.rng.random() * (high - low), 2)

    def normal_ranges(self) -> dict[str, tuple[float, float]]:
        """Every measurement's normal range under the current thresholds."""
        return {**NORMAL_RANGES, **normal_differential_ranges(self.thresholds)}

    def sample(self, category: AnomalyCategory) -> Measurements:
        """Draw a full set of measurements shaped by the category."""
        drawn = {name: self.uniform(low, high) for name, (low, high) in NORMAL_RANGES.items()}
        drawn.update(self._differential(category))
        return Measurements(**{name: drawn[name] for name in MEASUREMENT_FIELDS})

    def _differential(self, category: AnomalyCategory) -> dict[str, float]:
        t = self.thresholds

        if category == AnomalyCategory.SEVERE_OUTBREAK_SIGNAL:
            # Neutrophilia + left shift; leucocytosis rides along
            return {
                "white_blood_cells": self.uniform(*t.leucocytosis_range),
                "neutrophils": self.uniform(*t.neutrophilia_range),
                "neutrophils_band_form": self.uniform(*t.left_shift_range),
            }
        if category == AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL:
            return {
                "white_blood_cells": self.uniform(*t.leucocytosis_range),
                "neutrophils": self.uniform(*t.neutrophilia_range),
                "neutrophils_band_form": self.uniform(BAND_FLOOR, t.left_shift - BAND_MARGIN),
            }
        if category == AnomalyCategory.LEUCOCYTOSIS:
            return {
                "white_blood_cells": self.uniform(*t.leucocytosis_range),
                "neutrophils": self.uniform(NEUTROPHIL_FLOOR, t.neutrophilia - LEUCOCYTOSIS_NEUTROPHIL_MARGIN),
                "neutrophils_band_form": self.uniform(BAND_FLOOR, t.left_shift - BAND_MARGIN),
            }

        normal = normal_differential_ranges(t)
        return {name: self.uniform(low, high) for name, (low, high) in normal.items()}
