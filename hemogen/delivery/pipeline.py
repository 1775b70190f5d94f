"""
Delivery pipeline.

Forwards stored records to the external ingestion endpoint, one HTTP POST
per record. Records go out in fixed-size batches; inside a batch every send
runs concurrently, bounded by a single slot pool shared by every caller of
the pipeline (the generation cycle and the retry sweep included).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Optional, Sequence, TypeVar

import requests

from hemogen.config import SinkConfig
from hemogen.db import RecordStore
from hemogen.exporters import FHIRExporter
from hemogen.models import DeliveryOutcome, DeliveryReport, LabRecord

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}

T = TypeVar("T")


class DeliveryError(RuntimeError):
    """Raised when the pipeline cannot accept work (e.g. after shutdown)."""


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive chunks of ``size``; the last may be short."""
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class DeliveryPipeline:
    """
    Sends records to the sink and marks the accepted ones as delivered.

    Failed sends leave the record untouched, so it stays eligible for the
    next retry sweep. ``deliver`` never raises on partial failure.

    Usage:
        pipeline = DeliveryPipeline(config.sink, store)
        report = pipeline.deliver(store.find_undelivered())
        pipeline.shutdown()
    """

    def __init__(
        self,
        config: SinkConfig,
        store: RecordStore,
        exporter: Optional[FHIRExporter] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.store = store
        self.exporter = exporter or FHIRExporter()
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.sleep = sleep
        self.now = now

        # Pipeline-wide ceiling on simultaneous sends
        self._slots = threading.BoundedSemaphore(config.pool_size)
        self._executor = ThreadPoolExecutor(
            max_workers=config.pool_size,
            thread_name_prefix="hemogen-send",
        )

        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._pending: set[Future] = set()
        self._closed = False

        logger.info("Delivery pipeline initialized with pool size: %d", config.pool_size)

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, records: Sequence[LabRecord]) -> DeliveryReport:
        """
        Send ``records`` batch by batch and wait for every send to resolve.

        A record that is already being sent by an overlapping call, or
        that the store already shows as delivered, is skipped rather than
        dispatched a second time.

        Raises:
            DeliveryError: if the pipeline has been shut down.
        """
        if self._closed:
            raise DeliveryError("Delivery pipeline is shut down")

        report = DeliveryReport(total=len(records))
        if not records:
            logger.info("No records to send")
            return report

        started = time.monotonic()
        batches = partition(records, self.config.batch_size)
        logger.info(
            "Sending %d records to %s in batches of %d (pool size: %d)",
            len(records), self.config.url, self.config.batch_size, self.config.pool_size,
        )

        for index, batch in enumerate(batches):
            report.batch_sizes.append(len(batch))
            claimed = self._claim(batch)
            report.skipped += len(batch) - len(claimed)
            logger.info("Processing batch %d/%d (%d items)", index + 1, len(batches), len(batch))

            for outcome in self._run_batch(claimed):
                if outcome is None:
                    report.skipped += 1
                    continue
                report.outcomes.append(outcome)
                if outcome.success:
                    report.succeeded += 1
                else:
                    report.failed += 1

            if index < len(batches) - 1 and self.config.batch_delay_seconds > 0:
                self.sleep(self.config.batch_delay_seconds)

        report.duration_seconds = time.monotonic() - started
        logger.info(
            "Finished sending %d records in %dms (success: %d, errors: %d, skipped: %d)",
            report.total, int(report.duration_seconds * 1000),
            report.succeeded, report.failed, report.skipped,
        )
        return report

    def _run_batch(self, batch: list[LabRecord]) -> list[Optional[DeliveryOutcome]]:
        """Fan one batch out to the pool and collect every outcome (None for skips)."""
        futures = []
        for position, record in enumerate(batch):
            try:
                future = self._executor.submit(self._send, record)
            except RuntimeError as e:
                # Pool torn down mid-run: give back the claims never dispatched
                for unsent in batch[position:]:
                    self._release(unsent.id)
                raise DeliveryError("Delivery pipeline is shut down") from e
            self._track(future)
            futures.append(future)

        wait(futures)
        outcomes = []
        for record, future in zip(batch, futures):
            if future.cancelled():
                # Dropped by shutdown before it started
                self._release(record.id)
                outcomes.append(DeliveryOutcome(record_id=record.id, success=False, error="cancelled"))
            else:
                outcomes.append(future.result())
        return outcomes

    def _send(self, record: LabRecord) -> Optional[DeliveryOutcome]:
        """
        POST one record. Never raises.

        Returns None without sending when the stored copy is already
        delivered, which happens when an overlapping run got there first.
        """
        try:
            with self._slots:
                stored = self.store.find_by_id(record.id)
                if stored is not None and stored.sent_to_api:
                    logger.debug("Record %s already delivered; skipping", record.id)
                    return None

                payload = self.exporter.export_json(record)
                response = self.session.post(
                    self.config.url,
                    data=payload,
                    headers=JSON_HEADERS,
                    timeout=self.config.timeout_seconds,
                )
                status = response.status_code

                if not is_success(status):
                    logger.warning("Failed to send record %s - Status: %d", record.id, status)
                    return DeliveryOutcome(
                        record_id=record.id, success=False, status_code=status, error=f"HTTP {status}",
                    )

                self.store.mark_delivered(record.id, status, self.now())
                logger.debug("Successfully sent record %s - Status: %d", record.id, status)
                return DeliveryOutcome(record_id=record.id, success=True, status_code=status)
        except Exception as e:
            logger.error("Exception sending record %s: %s", record.id, e)
            return DeliveryOutcome(record_id=record.id, success=False, error=str(e))
        finally:
            self._release(record.id)

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _claim(self, batch: list[LabRecord]) -> list[LabRecord]:
        """Reserve the records nobody else is sending; return those."""
        claimed = []
        with self._lock:
            for record in batch:
                if record.id in self._in_flight:
                    logger.debug("Record %s already in flight; skipping", record.id)
                    continue
                self._in_flight.add(record.id)
                claimed.append(record)
        return claimed

    def _release(self, record_id: str) -> None:
        with self._lock:
            self._in_flight.discard(record_id)

    def _track(self, future: Future) -> None:
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._untrack)

    def _untrack(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def in_flight(self) -> int:
        """Number of records currently claimed by a running send."""
        with self._lock:
            return len(self._in_flight)

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop accepting work and give in-flight sends a bounded time to finish.

        Sends still running after the grace period are abandoned; queued
        ones are cancelled.
        """
        if self._closed:
            return
        self._closed = True
        grace = self.config.shutdown_grace_seconds if grace_seconds is None else grace_seconds

        with self._lock:
            pending = list(self._pending)
        if pending:
            logger.info("Waiting up to %ss for %d in-flight sends", grace, len(pending))
            _, not_done = wait(pending, timeout=grace)
            if not_done:
                logger.warning("Abandoning %d sends still running after %ss", len(not_done), grace)

        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_session:
            self.session.close()
        logger.info("Delivery pipeline shut down")
