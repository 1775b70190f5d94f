"""
Batch composition.

One generation cycle either spreads records across every location at the
baseline anomaly rate (uniform mode) or, with the configured burst
probability, floods the outbreak locations with a larger, mostly anomalous
batch dated at the detection lag (burst mode).
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from hemogen.config import AnomalyConfig
from hemogen.db import RecordStore
from hemogen.engines.classifier import AnomalyClassifier
from hemogen.engines.locations import LocationSelector
from hemogen.engines.sampler import ClinicalValueSampler
from hemogen.models import AnomalyCategory, LabRecord, Location, generate_subject_id

logger = logging.getLogger(__name__)


class GenerationMode(str, Enum):
    UNIFORM = "uniform"
    BURST = "burst"


def split_evenly(count: int, buckets: int) -> list[int]:
    """Split count into buckets differing by at most one, remainder first."""
    per_bucket, remainder = divmod(count, buckets)
    return [per_bucket + (1 if i < remainder else 0) for i in range(buckets)]


class BatchComposer:
    """
    Builds and persists the records for one generation cycle.

    The composer never talks to the delivery pipeline; it returns what it
    stored and leaves forwarding to the caller.
    """

    def __init__(
        self,
        config: AnomalyConfig,
        store: RecordStore,
        rng: random.Random | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.store = store
        self.rng = rng or random.Random()
        self.now = now or datetime.now
        self.classifier = AnomalyClassifier(config, self.rng)
        self.selector = LocationSelector(config, self.rng)
        self.sampler = ClinicalValueSampler(config.thresholds, self.rng)
        self.last_mode: GenerationMode | None = None

    @property
    def baseline_rate(self) -> float:
        return self.config.probability if self.config.enabled else 0.0

    def burst_target_time(self) -> datetime:
        """The moment the downstream detector analyses: now minus the lag."""
        return self.now() - timedelta(days=self.config.detection_lag_days)

    def decide_mode(self) -> GenerationMode:
        roll = self.rng.random()
        if self.config.enabled and roll < self.config.burst_probability:
            return GenerationMode.BURST
        return GenerationMode.UNIFORM

    def compose(self, count: int) -> list[LabRecord]:
        """Run one generation cycle of nominal size ``count``."""
        mode = self.decide_mode()
        self.last_mode = mode

        if mode == GenerationMode.BURST:
            burst_size = int(count * self.config.burst_size_multiplier)
            target = self.burst_target_time()
            logger.warning(
                "Burst triggered: %d records for outbreak locations at %s",
                burst_size, target.date(),
            )
            records = self.generate_outbreak_batch(burst_size, target)
            logger.info("Burst complete: %d records at %s", len(records), target.date())
            return records

        return self.generate_distributed_batch(count, self.now())

    # -------------------------------------------------------------------------
    # Uniform mode
    # -------------------------------------------------------------------------

    def generate_distributed_batch(self, count: int, at: datetime) -> list[LabRecord]:
        """Spread records over all locations, biasing anomalies to outbreaks."""
        records = []
        for _ in range(count):
            anomalous = self.classifier.is_anomalous(self.baseline_rate)
            location = self.selector.select(anomalous)
            record = self._persist(self.build_record(self.classifier.classify(anomalous), location, at))
            if record is not None:
                records.append(record)

        anomalies = sum(1 for r in records if r.category.is_anomalous)
        logger.info(
            "Generated %d records (%d anomalies, %d%%)",
            len(records), anomalies, anomalies * 100 // max(1, len(records)),
        )
        return records

    # -------------------------------------------------------------------------
    # Burst mode
    # -------------------------------------------------------------------------

    def generate_outbreak_batch(self, count: int, at: datetime) -> list[LabRecord]:
        """Distribute ``count`` records evenly over the outbreak locations."""
        locations = self.selector.outbreak_locations
        records = []
        for location, location_count in zip(locations, split_evenly(count, len(locations))):
            logger.info(
                "Generating %d outbreak records for %s (anomaly rate %d%%)",
                location_count, location, int(self.config.burst_anomaly_rate * 100),
            )
            records.extend(self.generate_batch(location_count, location, self.config.burst_anomaly_rate, at))
        return records

    # -------------------------------------------------------------------------
    # Fixed-location generation
    # -------------------------------------------------------------------------

    def generate_batch(
        self,
        count: int,
        location: Location | str,
        anomaly_rate: float,
        at: datetime,
        prefix: str = "PAT",
    ) -> list[LabRecord]:
        """Generate ``count`` records at one location with an explicit rate."""
        location = self.selector.select(False, forced=location)
        logger.debug("Generating %d records for %s (anomaly rate %s)", count, location, anomaly_rate)

        records = []
        for _ in range(count):
            category = self.classifier.classify(self.classifier.is_anomalous(anomaly_rate))
            record = self._persist(self.build_record(category, location, at, prefix))
            if record is not None:
                records.append(record)
        return records

    def generate_outbreak(
        self,
        location: Location | str,
        count: int,
        anomaly_rate: float,
        at: datetime | None = None,
    ) -> list[LabRecord]:
        """Inject an outbreak at one location, dated at the lag by default."""
        at = at or self.burst_target_time()
        logger.warning(
            "Injecting %d outbreak records for %s at %s (anomaly rate %d%%)",
            count, location, at.date(), int(anomaly_rate * 100),
        )
        return self.generate_batch(count, location, anomaly_rate, at, prefix="OUT")

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def build_record(
        self,
        category: AnomalyCategory,
        location: Location,
        at: datetime,
        prefix: str = "PAT",
    ) -> LabRecord:
        """Sample a record without persisting it."""
        measurements = self.sampler.sample(category)
        return LabRecord(
            subject_id=generate_subject_id(prefix),
            city=location.city,
            region=location.region,
            collected_at=at,
            category=category,
            created_at=self.now(),
            **measurements.model_dump(),
        )

    def _persist(self, record: LabRecord) -> LabRecord | None:
        """Save one record; a failure drops that record only."""
        try:
            return self.store.save(record)
        except Exception:
            logger.exception("Failed to persist record %s for %s", record.id, record.subject_id)
            return None
