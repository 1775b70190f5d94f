"""
Record generation engines.
"""

from .sampler import ClinicalValueSampler, NORMAL_RANGES, normal_differential_ranges
from .classifier import AnomalyClassifier
from .locations import LocationSelector
from .composer import BatchComposer, GenerationMode, split_evenly
from .backfill import BackfillResult, HistoricalBackfill

__all__ = [
    "ClinicalValueSampler",
    "NORMAL_RANGES",
    "normal_differential_ranges",
    "AnomalyClassifier",
    "LocationSelector",
    "BatchComposer",
    "GenerationMode",
    "split_evenly",
    "BackfillResult",
    "HistoricalBackfill",
]
