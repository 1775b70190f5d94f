"""
Anomaly classification.

Decides whether a record is anomalous and, if so, which outbreak signal
it carries.
"""

from __future__ import annotations

import random

from hemogen.config import AnomalyConfig
from hemogen.models import AnomalyCategory


class AnomalyClassifier:
    """
    Assigns an AnomalyCategory to a candidate record.

    The severe category is checked first: it is weighted double by the
    downstream detector, so it is favoured without raising total volume.
    With ``leucocytosis_ratio`` left at zero the classifier only ever
    returns NORMAL, SEVERE_OUTBREAK_SIGNAL or SUSPECTED_OUTBREAK_SIGNAL.
    """

    def __init__(self, config: AnomalyConfig, rng: random.Random | None = None):
        self.config = config
        self.rng = rng or random.Random()

    def is_anomalous(self, rate: float) -> bool:
        """Bernoulli draw at the given anomaly rate."""
        return self.rng.random() < rate

    def classify(self, anomalous: bool) -> AnomalyCategory:
        """Map the anomalous flag to a category using the severity split."""
        if not anomalous:
            return AnomalyCategory.NORMAL

        roll = self.rng.random()
        if roll < self.config.severe_ratio:
            return AnomalyCategory.SEVERE_OUTBREAK_SIGNAL
        if roll < self.config.severe_ratio + self.config.leucocytosis_ratio:
            return AnomalyCategory.LEUCOCYTOSIS
        return AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL
