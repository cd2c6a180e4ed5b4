"""
Tests for instruments, meters and the meter provider.
"""

import threading

import pytest

from dice_server.observability.metrics import (
    Counter,
    HistogramDataPoint,
    InstrumentError,
    InstrumentKind,
    MeterProvider,
    NoOpMeterProvider,
    Observation,
    Temporality,
)


def _metric(data, name):
    return next((m for m in data.metrics if m.name == name), None)


class TestCounter:
    def test_accumulates_per_attribute_set(self, meter, metric_reader):
        counter = meter.create_counter("dice_rolls")
        counter.add(1, {"value": 1})
        counter.add(1, {"value": 1})
        counter.add(1, {"value": 6})

        metric = _metric(metric_reader.collect(), "dice_rolls")
        values = {p.attributes["value"]: p.value for p in metric.points}
        assert values == {1: 2, 6: 1}
        assert metric.kind is InstrumentKind.COUNTER
        assert metric.is_monotonic

    def test_attribute_order_does_not_matter(self, meter, metric_reader):
        counter = meter.create_counter("requests")
        counter.add(1, {"a": 1, "b": 2})
        counter.add(1, {"b": 2, "a": 1})

        (point,) = _metric(metric_reader.collect(), "requests").points
        assert point.value == 2
        assert point.attributes == {"a": 1, "b": 2}

    def test_no_attributes(self, meter, metric_reader):
        counter = meter.create_counter("plain")
        counter.add(3)
        (point,) = _metric(metric_reader.collect(), "plain").points
        assert point.value == 3
        assert point.attributes == {}

    def test_negative_amount_dropped(self, meter, metric_reader, caplog):
        counter = meter.create_counter("monotonic")
        counter.add(2)
        counter.add(-1)
        (point,) = _metric(metric_reader.collect(), "monotonic").points
        assert point.value == 2
        assert "negative increment" in caplog.text

    def test_concurrent_adds(self, meter, metric_reader):
        counter = meter.create_counter("concurrent")

        def work():
            for i in range(1000):
                counter.add(1, {"value": i % 3})

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        metric = _metric(metric_reader.collect(), "concurrent")
        assert sum(p.value for p in metric.points) == 8000
        assert len(metric.points) == 3

    def test_unused_instrument_not_reported(self, meter, metric_reader):
        meter.create_counter("idle")
        assert _metric(metric_reader.collect(), "idle") is None


class TestHistogram:
    def test_buckets_count_sum_min_max(self, meter, metric_reader):
        hist = meter.create_histogram("latency", unit="ms", boundaries=[10, 100])
        for value in (5, 10, 50, 500):
            hist.record(value)

        (point,) = _metric(metric_reader.collect(), "latency").points
        assert isinstance(point, HistogramDataPoint)
        assert point.count == 4
        assert point.sum == 565
        # Upper bounds are inclusive
        assert point.bucket_counts == (2, 1, 1)
        assert point.explicit_bounds == (10.0, 100.0)
        assert point.min == 5
        assert point.max == 500

    def test_default_boundaries(self, meter):
        hist = meter.create_histogram("sizes")
        assert hist.boundaries[0] == 0.0
        assert hist.boundaries[-1] == 10000.0
        assert len(hist.boundaries) == 15

    def test_unsorted_boundaries_rejected(self, meter):
        with pytest.raises(InstrumentError):
            meter.create_histogram("bad_bounds", boundaries=[10, 5])


class TestObservableGauge:
    def test_callback_invoked_at_collection(self, meter, metric_reader):
        calls = []

        def observe():
            calls.append(1)
            return [Observation(42, {"host": "a"})]

        meter.create_observable_gauge("queue.depth", [observe])
        assert calls == []
        (point,) = _metric(metric_reader.collect(), "queue.depth").points
        assert point.value == 42
        assert point.attributes == {"host": "a"}
        assert len(calls) == 1

    def test_failing_callback_skipped(self, meter, metric_reader, caplog):
        def broken():
            raise RuntimeError("sensor offline")

        meter.create_observable_gauge("temperature", [broken, lambda: [Observation(21.5)]])
        meter.create_counter("other").add(1)

        data = metric_reader.collect()
        (point,) = _metric(data, "temperature").points
        assert point.value == 21.5
        assert _metric(data, "other") is not None
        assert "sensor offline" in caplog.text


class TestMeterRegistration:
    def test_same_name_returns_same_instrument(self, meter):
        first = meter.create_counter("dice_rolls")
        assert meter.create_counter("dice_rolls") is first
        assert meter.create_counter("DICE_ROLLS") is first

    def test_same_name_different_kind_rejected(self, meter):
        meter.create_counter("dice_rolls")
        with pytest.raises(InstrumentError, match="already registered"):
            meter.create_histogram("dice_rolls")

    @pytest.mark.parametrize("name", ["", "1abc", "has space", "x" * 300])
    def test_invalid_names_rejected(self, meter, name):
        with pytest.raises(InstrumentError):
            meter.create_counter(name)

    def test_valid_names(self, meter):
        for name in ("dice_rolls", "http.server.request.duration", "a/b-c"):
            assert isinstance(meter.create_counter(name), Counter)

    def test_meters_are_cached(self, meter_provider):
        assert meter_provider.get_meter("a") is meter_provider.get_meter("a")

    def test_scope_recorded(self, meter_provider, metric_reader):
        meter_provider.get_meter("dice").create_counter("rolls").add(1)
        assert _metric(metric_reader.collect(), "rolls").scope == "dice"


class TestMeterProvider:
    def test_collect_is_cumulative(self, meter, meter_provider):
        counter = meter.create_counter("total")
        counter.add(1)
        meter_provider.collect()
        counter.add(2)
        (point,) = _metric(meter_provider.collect(), "total").points
        assert point.value == 3

    def test_collect_carries_resource(self, meter_provider):
        assert meter_provider.collect().resource == {"service.name": "test"}

    def test_reader_cannot_be_shared(self, metric_reader, meter_provider):
        with pytest.raises(ValueError):
            MeterProvider(readers=[metric_reader])

    def test_to_dict(self, meter, meter_provider):
        meter.create_counter("rolls", unit="{roll}").add(1, {"value": 3})
        data = meter_provider.collect().to_dict()
        (metric,) = data["metrics"]
        assert metric["name"] == "rolls"
        assert metric["temporality"] == Temporality.CUMULATIVE.value
        assert metric["points"][0]["value"] == 1

    def test_noop_provider_discards(self):
        meter = NoOpMeterProvider().get_meter("x")
        meter.create_counter("c").add(1)
        meter.create_histogram("h").record(1)
        meter.create_observable_gauge("g", [lambda: [Observation(1)]])
