"""
Application wiring.

Builds every component once from an AppConfig and exposes the manual
trigger operations shared by the CLI and the HTTP server.
"""

from __future__ import annotations

import logging
import random
from datetime import date, datetime, time
from typing import Any, Callable, Optional

import requests

from hemogen.config import AppConfig
from hemogen.db import RecordStore, create_record_store
from hemogen.delivery import DeliveryPipeline
from hemogen.engines import BackfillResult, BatchComposer, HistoricalBackfill
from hemogen.exporters import FHIRExporter
from hemogen.models import AnomalyCategory, DeliveryReport, LabRecord, Location
from hemogen.scheduler import CycleController, RetrySweep, Scheduler

logger = logging.getLogger(__name__)


class Services:
    """Container for the configured components."""

    def __init__(
        self,
        config: AppConfig,
        store: Optional[RecordStore] = None,
        rng: Optional[random.Random] = None,
        session: Optional[requests.Session] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.rng = rng or random.Random()
        self.now = now
        self.store = store or create_record_store(config.storage)
        self.exporter = FHIRExporter()

        self.composer = BatchComposer(config.anomaly, self.store, self.rng, now)
        self.pipeline = DeliveryPipeline(config.sink, self.store, self.exporter, session=session, now=now)
        self.backfill = HistoricalBackfill(
            config.anomaly, config.historical, self.composer, self.store, self.pipeline, now,
        )
        self.controller = CycleController(config.scheduler, self.composer, self.pipeline, self.rng)
        self.sweep = RetrySweep(self.store, self.pipeline)
        self.scheduler = Scheduler(config.scheduler, self.controller, self.sweep)

    # -------------------------------------------------------------------------
    # Manual triggers
    # -------------------------------------------------------------------------

    def generate(self, count: int, deliver: bool = True) -> tuple[list[LabRecord], Optional[DeliveryReport]]:
        """One composer cycle of nominal size ``count``, optionally delivered."""
        records = self.composer.compose(count)
        report = self.pipeline.deliver(records) if deliver else None
        return records, report

    def run_backfill(
        self,
        days: Optional[int] = None,
        daily_count: Optional[int] = None,
        anomaly_rate: Optional[float] = None,
        deliver: bool = True,
    ) -> BackfillResult:
        """Force a historical backfill regardless of the startup gate."""
        result = self.backfill.run(days=days, daily_count=daily_count, anomaly_rate=anomaly_rate)
        if deliver:
            result.delivery = self.backfill.deliver_pending()
        return result

    def inject_outbreak(
        self,
        location: str,
        count: int,
        anomaly_rate: Optional[float] = None,
        target_date: Optional[date] = None,
        deliver: bool = True,
    ) -> tuple[list[LabRecord], Optional[DeliveryReport]]:
        """
        Inject an outbreak at one location.

        Dated at the detection lag unless ``target_date`` is given, in which
        case records are stamped at noon on that date.

        Raises:
            ValueError: if ``location`` has no city.
        """
        parsed = Location.parse(location)
        rate = self.config.anomaly.burst_anomaly_rate if anomaly_rate is None else anomaly_rate
        at = datetime.combine(target_date, time(12, 0)) if target_date else None
        records = self.composer.generate_outbreak(parsed, count, rate, at)
        report = self.pipeline.deliver(records) if deliver else None
        return records, report

    def anomaly_scenario(
        self,
        location: str,
        days: int = 30,
        daily_count: int = 20,
        anomaly_rate: float = 0.05,
        outbreak_count: int = 100,
        outbreak_rate: float = 0.9,
    ) -> BackfillResult:
        """Baseline for one location, an outbreak at the lag, then delivery."""
        return self.backfill.run_anomaly_scenario(
            Location.parse(location), days, daily_count, anomaly_rate, outbreak_count, outbreak_rate,
        )

    def deliver_pending(self) -> DeliveryReport:
        """Immediate retry sweep over everything not yet sent."""
        return self.pipeline.deliver(self.store.find_undelivered())

    def stats(self) -> dict[str, Any]:
        counts = self.store.stats()
        counts["in_flight"] = self.pipeline.in_flight()
        return counts

    def debug_bundle(self) -> str:
        """Pretty FHIR bundle for a severe sample at an outbreak location. Not persisted."""
        location = self.composer.selector.outbreak_locations[0]
        record = self.composer.build_record(AnomalyCategory.SEVERE_OUTBREAK_SIGNAL, location, self.now())
        return self.exporter.export_json(record, pretty=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def startup(self, start_scheduler: bool = True) -> Optional[BackfillResult]:
        """Run the backfill gate, then start the background threads."""
        try:
            result = self.backfill.run_if_needed()
        except Exception:
            logger.exception("Startup backfill failed; continuing with live generation")
            result = None
        if start_scheduler:
            self.scheduler.start()
        logger.info("=== Startup complete. Scheduler will handle ongoing generation. ===")
        return result

    def shutdown(self) -> None:
        grace = self.config.sink.shutdown_grace_seconds
        if self.scheduler.running:
            self.scheduler.stop(grace)
        else:
            self.pipeline.shutdown(grace)


# =============================================================================
# Process-wide instance
# =============================================================================

_services: Optional[Services] = None


def get_services() -> Services:
    """Get or create the shared Services built from the loaded config."""
    global _services
    if _services is None:
        from hemogen.config import load_config
        _services = Services(load_config())
    return _services


def set_services(services: Services) -> None:
    global _services
    _services = services


def reset_services() -> None:
    """Drop the shared instance (shutting its pool down)."""
    global _services
    if _services is not None:
        _services.shutdown()
    _services = None
