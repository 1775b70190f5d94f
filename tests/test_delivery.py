"""
Tests for the delivery pipeline.
"""

import json
import threading

import pytest

from conftest import FIXED_NOW, FakeSession


def make_records(store, n):
    from hemogen.models import LabRecord

    return [store.save(LabRecord(city="Trindade", region="GO", white_blood_cells=9000.0)) for _ in range(n)]


@pytest.fixture
def pipeline_factory(store, sink_config, clock):
    from hemogen.delivery import DeliveryPipeline

    created = []

    def factory(session, config=None, **kwargs):
        pipeline = DeliveryPipeline(config or sink_config, store, session=session, now=clock, **kwargs)
        created.append(pipeline)
        return pipeline

    yield factory
    for pipeline in created:
        pipeline.shutdown(grace_seconds=1)


class TestPartition:
    def test_batches(self):
        from hemogen.delivery import partition

        assert [len(b) for b in partition(list(range(237)), 50)] == [50, 50, 50, 50, 37]
        assert partition([], 50) == []

    def test_invalid_size(self):
        from hemogen.delivery import partition

        with pytest.raises(ValueError):
            partition([1, 2], 0)

    def test_is_success(self):
        from hemogen.delivery import is_success

        assert is_success(200)
        assert is_success(204)
        assert not is_success(302)
        assert not is_success(500)


class TestDeliver:
    """Batching, accounting and status updates."""

    def test_237_records(self, store, pipeline_factory):
        session = FakeSession(fail_every=7)
        report = pipeline_factory(session).deliver(make_records(store, 237))

        assert report.batch_sizes == [50, 50, 50, 50, 37]
        assert report.succeeded + report.failed == 237
        assert report.failed == 237 // 7
        assert len(session.calls) == 237
        assert len({o.record_id for o in report.outcomes}) == 237

    def test_success_marks_record(self, store, pipeline_factory):
        records = make_records(store, 3)
        report = pipeline_factory(FakeSession(status=201)).deliver(records)

        assert report.succeeded == 3
        for record in records:
            stored = store.find_by_id(record.id)
            assert stored.sent_to_api
            assert stored.api_response_status == 201
            assert stored.sent_at == FIXED_NOW

    def test_non_2xx_leaves_record_pending(self, store, pipeline_factory):
        records = make_records(store, 4)
        report = pipeline_factory(FakeSession(status=503)).deliver(records)

        assert report.failed == 4
        assert all(o.status_code == 503 for o in report.outcomes)
        assert len(store.find_undelivered()) == 4

    def test_exceptions_are_isolated(self, store, pipeline_factory):
        records = make_records(store, 30)
        report = pipeline_factory(FakeSession(raise_every=3)).deliver(records)

        assert report.failed == 10
        assert report.succeeded == 20
        errors = [o for o in report.outcomes if o.error]
        assert all("connection refused" in o.error for o in errors)
        assert len(store.find_undelivered()) == 10

    def test_request_shape(self, store, pipeline_factory, sink_config):
        session = FakeSession()
        record = make_records(store, 1)[0]
        pipeline_factory(session).deliver([record])

        call = session.calls[0]
        assert call["url"] == sink_config.url
        assert call["headers"] == {"Content-Type": "application/json"}
        assert call["timeout"] == sink_config.timeout_seconds
        bundle = json.loads(call["data"])
        assert bundle["resourceType"] == "Bundle"
        assert bundle["id"] == f"bundle-{record.subject_id}"

    def test_empty_input(self, pipeline_factory):
        session = FakeSession()
        report = pipeline_factory(session).deliver([])
        assert report.total == 0
        assert report.batch_sizes == []
        assert session.calls == []

    def test_delay_between_batches_only(self, store, sink_config, pipeline_factory):
        from hemogen.config import SinkConfig

        sleeps = []
        config = SinkConfig(url=sink_config.url, batch_size=10, batch_delay_seconds=0.1)
        pipeline_factory(FakeSession(), config, sleep=sleeps.append).deliver(make_records(store, 35))

        assert sleeps == [0.1, 0.1, 0.1]


class TestConcurrency:
    """The pool-wide ceiling on in-flight sends."""

    def test_ceiling_respected(self, store, sink_config, pipeline_factory):
        from hemogen.config import SinkConfig

        session = FakeSession(delay=0.01)
        config = SinkConfig(url=sink_config.url, pool_size=4, batch_size=20, batch_delay_seconds=0)
        pipeline_factory(session, config).deliver(make_records(store, 60))

        assert 1 <= session.max_active <= 4

    def test_ceiling_shared_by_overlapping_runs(self, store, sink_config, pipeline_factory):
        from hemogen.config import SinkConfig

        session = FakeSession(delay=0.01)
        config = SinkConfig(url=sink_config.url, pool_size=5, batch_size=25, batch_delay_seconds=0)
        pipeline = pipeline_factory(session, config)
        first, second = make_records(store, 50), make_records(store, 50)

        threads = [threading.Thread(target=pipeline.deliver, args=(batch,)) for batch in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert session.max_active <= 5
        assert len(session.calls) == 100
        assert store.find_undelivered() == []

    def test_overlapping_runs_never_double_send(self, store, sink_config, pipeline_factory):
        from hemogen.config import SinkConfig

        session = FakeSession(delay=0.02)
        config = SinkConfig(url=sink_config.url, pool_size=3, batch_size=10, batch_delay_seconds=0)
        pipeline = pipeline_factory(session, config)
        records = make_records(store, 12)

        reports = []
        threads = [
            threading.Thread(target=lambda: reports.append(pipeline.deliver(records)))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert session.concurrent_duplicates == 0
        assert len(session.calls) == 12
        assert sum(r.attempted + r.skipped for r in reports) == 24
        assert store.find_undelivered() == []
        assert pipeline.in_flight() == 0

    @pytest.mark.parametrize("offset", [0.01, 0.05, 0.11])
    def test_late_run_skips_already_delivered(self, store, sink_config, pipeline_factory, offset):
        import time

        from hemogen.config import SinkConfig

        session = FakeSession(delay=0.02)
        config = SinkConfig(url=sink_config.url, pool_size=4, batch_size=5, batch_delay_seconds=0)
        pipeline = pipeline_factory(session, config)
        records = make_records(store, 60)

        reports = []

        def run():
            reports.append(pipeline.deliver(store.find_undelivered()))

        first = threading.Thread(target=run)
        first.start()
        time.sleep(offset)
        second = threading.Thread(target=run)
        second.start()
        first.join(timeout=10)
        second.join(timeout=10)

        assert len(session.calls) == len(records)
        assert sum(r.succeeded for r in reports) == len(records)
        assert store.find_undelivered() == []

    def test_redelivering_sent_records_is_a_no_op(self, store, pipeline_factory):
        session = FakeSession()
        pipeline = pipeline_factory(session)
        records = make_records(store, 5)

        pipeline.deliver(records)
        report = pipeline.deliver(records)

        assert len(session.calls) == 5
        assert report.skipped == 5
        assert report.attempted == 0


class TestShutdown:
    def test_deliver_after_shutdown(self, store, pipeline_factory):
        from hemogen.delivery import DeliveryError

        pipeline = pipeline_factory(FakeSession())
        pipeline.shutdown(grace_seconds=0)
        assert pipeline.closed
        with pytest.raises(DeliveryError):
            pipeline.deliver(make_records(store, 1))

    def test_shutdown_idempotent(self, pipeline_factory):
        pipeline = pipeline_factory(FakeSession())
        pipeline.shutdown(grace_seconds=0)
        pipeline.shutdown(grace_seconds=0)
