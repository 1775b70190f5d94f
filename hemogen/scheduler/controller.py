"""
Generation cycle pacing and delivery retries.

The CycleController is ticked by an outside timer that fires more often
than real work should happen; it keeps its own next-run timestamp and
ignores ticks that arrive early. The RetrySweep is the only retry path for
failed deliveries and runs on its own, independent period.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from hemogen.config import AnomalyConfig, SchedulerConfig
from hemogen.db import RecordStore
from hemogen.delivery import DeliveryPipeline
from hemogen.engines import BatchComposer, GenerationMode
from hemogen.models import DeliveryReport

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
  """Outcome of one real generation cycle."""
  success: bool
  batch_size: int
  next_delay_seconds: float
  generated: int = 0
  mode: Optional[GenerationMode] = None
  delivery: Optional[DeliveryReport] = None
  error: Optional[str] = None


class CycleController:
  """
  IDLE -> WAIT(initial delay) -> RUN -> WAIT(random interval | backoff).

  All time comes from ``clock`` (monotonic seconds) so tests can drive the
  state machine without sleeping.
  """

  def __init__(
    self,
    config: SchedulerConfig,
    composer: BatchComposer,
    pipeline: DeliveryPipeline,
    rng: Optional[random.Random] = None,
    clock: Callable[[], float] = time.monotonic,
    anomaly: Optional[AnomalyConfig] = None,
  ):
    self.config = config
    self.composer = composer
    self.pipeline = pipeline
    self.rng = rng or random.Random()
    self.clock = clock
    self.anomaly = anomaly or composer.config

    self.current_delay: float = config.initial_delay_seconds
    self.next_run_at: float = clock() + config.initial_delay_seconds
    self.last_success_at: Optional[float] = None
    self.last_result: Optional[CycleResult] = None

  def is_due(self) -> bool:
    return self.clock() >= self.next_run_at

  def seconds_until_due(self) -> float:
    return max(0.0, self.next_run_at - self.clock())

  def tick(self) -> Optional[CycleResult]:
    """Run a cycle if enabled and due; otherwise do nothing."""
    if not self.config.enabled:
      return None
    if not self.is_due():
      return None
    return self.run_cycle()

  def run_cycle(self) -> CycleResult:
    """Generate, persist and deliver one batch, then schedule the next run."""
    batch_size = self.rng.randint(self.config.min_batch_size, self.config.max_batch_size)

    try:
      logger.info("===== Starting generation cycle =====")
      logger.info(
        "Anomaly config: enabled=%s, rate=%d%%, severe=%d%%, burst=%d%%",
        self.anomaly.enabled,
        int(self.anomaly.probability * 100),
        int(self.anomaly.severe_ratio * 100),
        int(self.anomaly.burst_probability * 100),
      )

      records = self.composer.compose(batch_size)
      logger.info("Generated and saved %d records", len(records))

      report = self.pipeline.deliver(records)
      logger.info("Delivered %d/%d records", report.succeeded, len(records))

      minutes = self.rng.randint(self.config.min_interval_minutes, self.config.max_interval_minutes)
      result = CycleResult(
        success=True,
        batch_size=batch_size,
        next_delay_seconds=minutes * 60.0,
        generated=len(records),
        mode=self.composer.last_mode,
        delivery=report,
      )
      self.last_success_at = self.clock()
      logger.info("Next cycle in %d minutes", minutes)
      logger.info("===== Cycle completed successfully =====")

    except Exception as e:
      logger.exception("Error in generation/delivery cycle")
      result = CycleResult(
        success=False,
        batch_size=batch_size,
        next_delay_seconds=self.config.failure_backoff_seconds,
        error=str(e),
      )

    self.current_delay = result.next_delay_seconds
    self.next_run_at = self.clock() + result.next_delay_seconds
    self.last_result = result
    return result


class RetrySweep:
  """Re-delivers everything still marked as not sent."""

  def __init__(self, store: RecordStore, pipeline: DeliveryPipeline):
    self.store = store
    self.pipeline = pipeline

  def sweep(self) -> Optional[DeliveryReport]:
    try:
      pending = self.store.find_undelivered()
      if not pending:
        logger.debug("Retry sweep: nothing pending")
        return None
      logger.info("Retrying %d unsent records", len(pending))
      return self.pipeline.deliver(pending)
    except Exception:
      logger.exception("Error retrying unsent records")
      return None


class Scheduler:
  """
  Runs the cycle controller and the retry sweep on two daemon threads.

  Usage:
    scheduler = Scheduler(config.scheduler, controller, sweep)
    scheduler.start()
    ...
    scheduler.stop()
  """

  def __init__(self, config: SchedulerConfig, controller: CycleController, sweep: RetrySweep):
    self.config = config
    self.controller = controller
    self.sweep = sweep
    self._stop = threading.Event()
    self._threads: list[threading.Thread] = []

  @property
  def running(self) -> bool:
    return any(t.is_alive() for t in self._threads)

  def start(self) -> None:
    if self.running:
      return
    self._stop.clear()
    self._threads = [
      threading.Thread(target=self._cycle_loop, name="hemogen-cycle", daemon=True),
      threading.Thread(target=self._sweep_loop, name="hemogen-sweep", daemon=True),
    ]
    for thread in self._threads:
      thread.start()
    logger.info(
      "Scheduler started (enabled=%s, first cycle in %ds, retry sweep every %s min)",
      self.config.enabled, int(self.controller.seconds_until_due()), self.config.retry_sweep_minutes,
    )

  def _cycle_loop(self) -> None:
    while not self._stop.is_set():
      try:
        self.controller.tick()
      except Exception:
        logger.exception("Unexpected error in cycle loop")
      wait = self.config.max_tick_seconds
      if self.config.enabled:
        wait = min(self.controller.seconds_until_due(), wait)
      self._stop.wait(max(wait, 0.1))

  def _sweep_loop(self) -> None:
    period = self.config.retry_sweep_minutes * 60
    while not self._stop.wait(period):
      self.sweep.sweep()

  def stop(self, grace_seconds: Optional[float] = None) -> None:
    """Signal both loops, wait for them, then drain the delivery pool."""
    self._stop.set()
    for thread in self._threads:
      thread.join(timeout=grace_seconds)
    self.controller.pipeline.shutdown(grace_seconds)
    logger.info("Scheduler stopped")
