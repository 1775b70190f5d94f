"""
Tests for the generation engines: sampling, classification, location
selection and batch composition.
"""

import logging
import random
from collections import Counter
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, ScriptedRandom


class TestSampler:
    """Category-driven measurement values."""

    def _samples(self, category, n=300):
        from hemogen.config import ClinicalThresholds
        from hemogen.engines import ClinicalValueSampler

        sampler = ClinicalValueSampler(ClinicalThresholds(), random.Random(7))
        return [sampler.sample(category) for _ in range(n)]

    def test_severe_signal(self):
        from hemogen.models import AnomalyCategory

        for m in self._samples(AnomalyCategory.SEVERE_OUTBREAK_SIGNAL):
            assert m.neutrophils > 7500
            assert m.neutrophils_band_form > 500

    def test_narrow_range_stays_above_threshold(self):
        from hemogen.config import ClinicalThresholds
        from hemogen.engines import ClinicalValueSampler
        from hemogen.models import AnomalyCategory

        sampler = ClinicalValueSampler(ClinicalThresholds(left_shift_range=(500.01, 500.02)), random.Random(7))
        for _ in range(200):
            assert sampler.sample(AnomalyCategory.SEVERE_OUTBREAK_SIGNAL).neutrophils_band_form > 500

    def test_suspected_signal(self):
        from hemogen.models import AnomalyCategory

        for m in self._samples(AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL):
            assert m.white_blood_cells > 11000
            assert m.neutrophils > 7500
            assert m.neutrophils_band_form <= 500

    def test_isolated_leucocytosis(self):
        from hemogen.models import AnomalyCategory

        for m in self._samples(AnomalyCategory.LEUCOCYTOSIS):
            assert m.white_blood_cells > 11000
            assert m.neutrophils <= 7500
            assert m.neutrophils_band_form <= 500

    def test_normal_within_ranges(self):
        from hemogen.config import ClinicalThresholds
        from hemogen.engines import ClinicalValueSampler
        from hemogen.models import AnomalyCategory, MEASUREMENT_FIELDS

        ranges = ClinicalValueSampler(ClinicalThresholds()).normal_ranges()
        assert set(ranges) == set(MEASUREMENT_FIELDS)

        for m in self._samples(AnomalyCategory.NORMAL):
            for name, (low, high) in ranges.items():
                value = getattr(m, name)
                assert low <= value <= high, f"{name}={value} outside [{low}, {high}]"
            assert m.white_blood_cells < 11000
            assert m.neutrophils < 7500
            assert m.neutrophils_band_form < 500

    def test_every_measurement_present(self):
        from hemogen.models import AnomalyCategory, MEASUREMENT_FIELDS

        for category in AnomalyCategory:
            m = self._samples(category, n=1)[0]
            assert all(getattr(m, name) is not None for name in MEASUREMENT_FIELDS)

    def test_thresholds_follow_config(self):
        from hemogen.config import ClinicalThresholds
        from hemogen.engines import normal_differential_ranges

        ranges = normal_differential_ranges(ClinicalThresholds(leucocytosis=10000, leucocytosis_range=(10500, 20000)))
        assert ranges["white_blood_cells"] == (4000.0, 9500.0)

    def test_reproducible_with_seed(self):
        from hemogen.config import ClinicalThresholds
        from hemogen.engines import ClinicalValueSampler
        from hemogen.models import AnomalyCategory

        a = ClinicalValueSampler(ClinicalThresholds(), random.Random(99)).sample(AnomalyCategory.NORMAL)
        b = ClinicalValueSampler(ClinicalThresholds(), random.Random(99)).sample(AnomalyCategory.NORMAL)
        assert a == b


class TestClassifier:
    """Anomalous flag and severity split."""

    def test_is_anomalous(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import AnomalyClassifier

        classifier = AnomalyClassifier(AnomalyConfig(), ScriptedRandom([0.24, 0.25]))
        assert classifier.is_anomalous(0.25)
        assert not classifier.is_anomalous(0.25)

    def test_normal_consumes_no_roll(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import AnomalyClassifier
        from hemogen.models import AnomalyCategory

        rng = ScriptedRandom([0.0])
        assert AnomalyClassifier(AnomalyConfig(), rng).classify(False) == AnomalyCategory.NORMAL
        assert rng.values == [0.0]

    def test_severity_split(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import AnomalyClassifier
        from hemogen.models import AnomalyCategory

        classifier = AnomalyClassifier(AnomalyConfig(severe_ratio=0.3), ScriptedRandom([0.29, 0.30, 0.99]))
        assert classifier.classify(True) == AnomalyCategory.SEVERE_OUTBREAK_SIGNAL
        assert classifier.classify(True) == AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL
        assert classifier.classify(True) == AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL

    def test_two_categories_by_default(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import AnomalyClassifier
        from hemogen.models import AnomalyCategory

        classifier = AnomalyClassifier(AnomalyConfig(), random.Random(3))
        seen = {classifier.classify(True) for _ in range(2000)}
        assert seen == {AnomalyCategory.SEVERE_OUTBREAK_SIGNAL, AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL}

    def test_leucocytosis_opt_in(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import AnomalyClassifier
        from hemogen.models import AnomalyCategory

        config = AnomalyConfig(severe_ratio=0.3, leucocytosis_ratio=0.2)
        classifier = AnomalyClassifier(config, ScriptedRandom([0.1, 0.45, 0.55]))
        assert classifier.classify(True) == AnomalyCategory.SEVERE_OUTBREAK_SIGNAL
        assert classifier.classify(True) == AnomalyCategory.LEUCOCYTOSIS
        assert classifier.classify(True) == AnomalyCategory.SUSPECTED_OUTBREAK_SIGNAL


class TestLocationSelector:
    """Outbreak bias and fallbacks."""

    def test_anomalous_goes_to_outbreak_under_bias(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import LocationSelector

        selector = LocationSelector(AnomalyConfig(outbreak_bias=0.7), ScriptedRandom([0.69]))
        outbreak_keys = {loc.key for loc in selector.outbreak_locations}
        assert selector.select(True).key in outbreak_keys

    def test_anomalous_over_bias_picks_any(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import LocationSelector

        selector = LocationSelector(AnomalyConfig(outbreak_bias=0.0), random.Random(5))
        keys = {selector.select(True).key for _ in range(500)}
        assert keys == {loc.key for loc in selector.all_locations}

    def test_normal_records_stay_in_normal_locations(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import LocationSelector

        selector = LocationSelector(AnomalyConfig(), random.Random(5))
        normal_keys = {loc.key for loc in selector.normal_locations}
        for _ in range(500):
            assert selector.select(False).key in normal_keys

    def test_forced_location_wins(self):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import LocationSelector

        selector = LocationSelector(AnomalyConfig(), random.Random(5))
        assert selector.select(True, forced="Anapolis|GO").key == "Anapolis|GO"

    def test_empty_lists_fall_back_to_defaults(self, caplog):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import LocationSelector

        with caplog.at_level(logging.WARNING):
            selector = LocationSelector(AnomalyConfig(outbreak_locations=(), normal_locations=()))
        assert [loc.key for loc in selector.outbreak_locations] == ["Trindade|GO"]
        assert [loc.key for loc in selector.normal_locations] == ["Sao Paulo|SP"]
        assert "No outbreak locations configured" in caplog.text

    def test_malformed_entries_skipped(self, caplog):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import LocationSelector

        with caplog.at_level(logging.WARNING):
            selector = LocationSelector(AnomalyConfig(outbreak_locations=("|GO", "Goiania|GO")))
        assert [loc.key for loc in selector.outbreak_locations] == ["Goiania|GO"]
        assert "malformed" in caplog.text


class TestSplitEvenly:
    def test_remainder_goes_first(self):
        from hemogen.engines import split_evenly

        assert split_evenly(10, 3) == [4, 3, 3]
        assert split_evenly(9, 3) == [3, 3, 3]
        assert split_evenly(2, 4) == [1, 1, 0, 0]


class TestBatchComposer:
    """Uniform and burst generation cycles."""

    def _composer(self, store, clock, **overrides):
        from hemogen.config import AnomalyConfig
        from hemogen.engines import BatchComposer

        return BatchComposer(AnomalyConfig(**overrides), store, random.Random(11), clock)

    def test_burst_targets_outbreak_locations(self, store, clock):
        from hemogen.engines import GenerationMode

        composer = self._composer(store, clock, burst_probability=1.0)
        records = composer.compose(30)

        assert composer.last_mode == GenerationMode.BURST
        assert len(records) == 90
        outbreak_keys = {loc.key for loc in composer.selector.outbreak_locations}
        assert all(r.location in outbreak_keys for r in records)

        counts = Counter(r.location for r in records)
        assert max(counts.values()) - min(counts.values()) <= 1

    def test_burst_dated_at_detection_lag(self, store, clock):
        composer = self._composer(store, clock, burst_probability=1.0)
        records = composer.compose(10)
        assert {r.collected_at for r in records} == {FIXED_NOW - timedelta(days=2)}

    def test_burst_uneven_split(self, store, clock):
        composer = self._composer(
            store, clock, burst_probability=1.0, burst_size_multiplier=1.0,
            outbreak_locations=("A|X", "B|X", "C|X"),
        )
        counts = Counter(r.location for r in composer.compose(10))
        assert sorted(counts.values()) == [3, 3, 4]

    def test_burst_mostly_anomalous(self, store, clock):
        composer = self._composer(store, clock, burst_probability=1.0, burst_anomaly_rate=1.0)
        assert all(r.category.is_anomalous for r in composer.compose(20))

    def test_uniform_cycle(self, store, clock):
        from hemogen.engines import GenerationMode

        composer = self._composer(store, clock, burst_probability=0.0)
        records = composer.compose(40)

        assert composer.last_mode == GenerationMode.UNIFORM
        assert len(records) == 40
        assert {r.collected_at for r in records} == {FIXED_NOW}
        assert store.count() == 40
        normal_keys = {loc.key for loc in composer.selector.normal_locations}
        for r in records:
            if not r.category.is_anomalous:
                assert r.location in normal_keys

    def test_uniform_anomalies_concentrate_at_outbreak_locations(self, store, clock):
        composer = self._composer(store, clock, burst_probability=0.0)
        records = composer.compose(2000)

        outbreak_keys = {loc.key for loc in composer.selector.outbreak_locations}
        at_outbreak = [r for r in records if r.location in outbreak_keys]
        at_normal = [r for r in records if r.location not in outbreak_keys]

        def anomalous_share(group):
            return sum(1 for r in group if r.category.is_anomalous) / len(group)

        assert at_outbreak and at_normal
        assert anomalous_share(at_outbreak) > 0.9
        assert anomalous_share(at_normal) < 0.15
        assert anomalous_share(at_outbreak) > 5 * anomalous_share(at_normal)

    def test_disabled_generates_only_normal(self, store, clock):
        from hemogen.engines import GenerationMode

        composer = self._composer(store, clock, enabled=False, burst_probability=1.0)
        records = composer.compose(50)
        assert composer.last_mode == GenerationMode.UNIFORM
        assert all(not r.category.is_anomalous for r in records)

    def test_generate_outbreak(self, store, clock):
        composer = self._composer(store, clock)
        records = composer.generate_outbreak("Goiania|GO", 25, 1.0)

        assert len(records) == 25
        assert all(r.subject_id.startswith("OUT-") for r in records)
        assert all(r.location == "Goiania|GO" for r in records)
        assert all(r.category.is_anomalous for r in records)
        assert all(r.collected_at == FIXED_NOW - timedelta(days=2) for r in records)

    def test_persistence_failure_skips_record(self, clock, caplog):
        from hemogen.db import InMemoryRecordStore, StorageError

        class FlakyStore(InMemoryRecordStore):
            calls = 0

            def save(self, record):
                self.calls += 1
                if self.calls % 4 == 0:
                    raise StorageError("disk full")
                return super().save(record)

        store = FlakyStore()
        composer = self._composer(store, clock, burst_probability=0.0)
        with caplog.at_level(logging.ERROR):
            records = composer.compose(20)

        assert len(records) == 15
        assert store.count() == 15
        assert "Failed to persist" in caplog.text
