"""
Shared fixtures for hemogen tests.
"""

import random
import sys
import threading
import time
from datetime import datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from hemogen.config import AnomalyConfig, AppConfig, HistoricalConfig, SchedulerConfig, SinkConfig
from hemogen.db import InMemoryRecordStore


FIXED_NOW = datetime(2026, 3, 15, 10, 30)


class ScriptedRandom(random.Random):
    """Random source whose random() replays a script, then falls back to the seed."""

    def __init__(self, values, seed=0):
        super().__init__(seed)
        self.values = list(values)

    def random(self):
        if self.values:
            return self.values.pop(0)
        return super().random()

    # Keeps choice/randint on getrandbits so they never eat scripted values
    def getrandbits(self, k):
        return super().getrandbits(k)


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class FakeSession:
    """
    Stands in for requests.Session.

    Counts calls, the peak number of concurrent post() calls, and any
    payload posted while an identical one is still in flight. Every
    ``fail_every``-th call answers 500, every ``raise_every``-th raises.
    """

    def __init__(self, status=200, fail_every=None, raise_every=None, delay=0.0):
        self.status = status
        self.fail_every = fail_every
        self.raise_every = raise_every
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.concurrent_duplicates = 0
        self._active_payloads = set()
        self._lock = threading.Lock()

    def post(self, url, data=None, headers=None, timeout=None):
        with self._lock:
            self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
            call_number = len(self.calls)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            if data in self._active_payloads:
                self.concurrent_duplicates += 1
            self._active_payloads.add(data)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.raise_every and call_number % self.raise_every == 0:
                raise ConnectionError("connection refused")
            if self.fail_every and call_number % self.fail_every == 0:
                return FakeResponse(500)
            return FakeResponse(self.status)
        finally:
            with self._lock:
                self.active -= 1
                self._active_payloads.discard(data)

    def close(self):
        pass


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sink_config():
    return SinkConfig(url="http://sink.test/api/ingestion/fhir", batch_delay_seconds=0.0, timeout_seconds=5)


@pytest.fixture
def anomaly_config():
    return AnomalyConfig()


@pytest.fixture
def app_config(sink_config):
    return AppConfig(
        sink=sink_config,
        historical=HistoricalConfig(days=10, daily_count=20),
        scheduler=SchedulerConfig(initial_delay_seconds=0),
    )


@pytest.fixture
def services(app_config, store, rng, session, clock):
    from hemogen.services import Services

    services = Services(app_config, store=store, rng=rng, session=session, now=clock)
    yield services
    services.shutdown()
