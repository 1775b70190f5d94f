"""
Historical backfill.

Builds the statistical baseline the downstream control chart needs (mean
and standard deviation per location over a past window) and then drops a
concentrated outbreak on the detector's target date so the first analysis
after startup has something to find.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable

from hemogen.config import AnomalyConfig, HistoricalConfig
from hemogen.db import RecordStore
from hemogen.engines.composer import BatchComposer
from hemogen.models import DeliveryReport, LabRecord, Location

if TYPE_CHECKING:
    from hemogen.delivery import DeliveryPipeline

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    """What a backfill run produced."""
    baseline_records: int = 0
    outbreak_records: int = 0
    days: list[date] = field(default_factory=list)
    per_location_daily: int = 0
    delivery: DeliveryReport | None = None

    @property
    def total(self) -> int:
        return self.baseline_records + self.outbreak_records


class HistoricalBackfill:
    """Replays the uniform generation path day by day over a past window."""

    def __init__(
        self,
        anomaly: AnomalyConfig,
        historical: HistoricalConfig,
        composer: BatchComposer,
        store: RecordStore,
        pipeline: "DeliveryPipeline | None" = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.anomaly = anomaly
        self.historical = historical
        self.composer = composer
        self.store = store
        self.pipeline = pipeline
        self.now = now or composer.now

    def is_needed(self) -> bool:
        """True when the store holds less than half of the expected window."""
        return self.store.count() < self.historical.min_existing_records

    def run_if_needed(self) -> BackfillResult | None:
        """Startup gate: backfill and deliver only when data is insufficient."""
        if not self.is_needed():
            logger.info("Sufficient data detected (count: %d). Skipping historical generation.", self.store.count())
            return None

        logger.info(
            "Insufficient data detected (threshold: %d). Starting historical generation.",
            self.historical.min_existing_records,
        )
        result = self.run()
        result.delivery = self.deliver_pending()
        return result

    def run(
        self,
        locations: list[Location | str] | None = None,
        days: int | None = None,
        daily_count: int | None = None,
        anomaly_rate: float | None = None,
    ) -> BackfillResult:
        """
        Generate the baseline window, then the outbreak on the lag date.

        Each location gets ``daily_count / len(locations)`` records per day
        (never fewer than ``min_per_location``) for ``days`` days ending
        yesterday.
        """
        locations = locations or self.composer.selector.all_locations
        days = self.historical.days if days is None else days
        daily_count = self.historical.daily_count if daily_count is None else daily_count
        anomaly_rate = self.historical.anomaly_rate if anomaly_rate is None else anomaly_rate
        if days < 1 or daily_count < 1:
            raise ValueError(f"days and daily_count must be positive, got {days} and {daily_count}")

        per_location = max(self.historical.min_per_location, daily_count // len(locations))
        result = BackfillResult(per_location_daily=per_location)

        logger.info(
            "Phase 1: generating %d days of baseline data (%d records/day, %d%% anomaly rate)",
            days, daily_count, int(anomaly_rate * 100),
        )
        for location in locations:
            records = self.generate_historical(location, days, per_location, anomaly_rate)
            result.baseline_records += len(records)
        result.days = self.window_days(days)

        if self.historical.inject_outbreak and self.anomaly.enabled:
            logger.info("Phase 2: generating concentrated outbreak at the detection lag")
            target = self.composer.burst_target_time()
            for location in self.composer.selector.outbreak_locations:
                records = self.composer.generate_outbreak(
                    location, self.historical.outbreak_count, self.anomaly.burst_anomaly_rate, target,
                )
                result.outbreak_records += len(records)

        logger.info("Historical data generation completed: %d records", result.total)
        return result

    def window_days(self, days: int) -> list[date]:
        """Calendar dates of the backfill window, oldest first."""
        now = self.now()
        return [(now - timedelta(days=offset)).date() for offset in range(days, 0, -1)]

    def generate_historical(
        self,
        location: Location | str,
        days: int,
        daily_count: int,
        anomaly_rate: float,
    ) -> list[LabRecord]:
        """``daily_count`` records per day at one location, ending yesterday."""
        logger.info(
            "Generating historical data for %s over %d days (%d per day, anomaly rate %s)",
            location, days, daily_count, anomaly_rate,
        )
        now = self.now()
        records = []
        for offset in range(days, 0, -1):
            day = now - timedelta(days=offset)
            records.extend(self.composer.generate_batch(daily_count, location, anomaly_rate, day, prefix="HIST"))
        return records

    def run_anomaly_scenario(
        self,
        location: Location | str,
        days: int,
        daily_count: int,
        anomaly_rate: float,
        outbreak_count: int,
        outbreak_rate: float = 0.9,
    ) -> BackfillResult:
        """Baseline for one location, outbreak on the lag date, then deliver."""
        logger.info("Triggering anomaly scenario for %s", location)
        result = BackfillResult(per_location_daily=daily_count, days=self.window_days(days))
        result.baseline_records = len(self.generate_historical(location, days, daily_count, anomaly_rate))
        result.outbreak_records = len(
            self.composer.generate_outbreak(location, outbreak_count, outbreak_rate, self.composer.burst_target_time())
        )
        result.delivery = self.deliver_pending()
        return result

    def deliver_pending(self) -> DeliveryReport | None:
        """Forward every undelivered record, if a pipeline is attached."""
        if self.pipeline is None:
            return None
        pending = self.store.find_undelivered()
        logger.info("Sending %d pending records to the sink", len(pending))
        return self.pipeline.deliver(pending)
