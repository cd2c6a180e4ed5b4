"""
In-process metric aggregation: counters, histograms and observable gauges.

Instruments accumulate observations in memory between export cycles.
Each distinct attribute set gets its own bucket guarded by its own lock,
so concurrent requests recording different attribute sets never contend.
A short lock is only taken when a new bucket is inserted.

Instruments always keep *cumulative* state.  Readers (see ``pipeline``)
derive delta views from it, so one reader resetting its window never
disturbs another reader's view.
"""

import bisect
import enum
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..constants import DEFAULT_HISTOGRAM_BOUNDARIES
from .resource import build_resource

logger = logging.getLogger("telemetry")

Number = Union[int, float]
AttributesKey = Tuple[Tuple[str, Any], ...]

_INSTRUMENT_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_./-]{0,254}$")


class InstrumentError(Exception):
    """Raised when an instrument cannot be created."""


class InstrumentKind(enum.Enum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"
    OBSERVABLE_GAUGE = "observable_gauge"


class Temporality(enum.Enum):
    CUMULATIVE = "cumulative"
    DELTA = "delta"


# ── Export model ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Observation:
    """A value reported by an observable instrument callback."""

    value: Number
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NumberDataPoint:
    attributes: Dict[str, Any]
    start_time_unix_nano: int
    time_unix_nano: int
    value: Number


@dataclass(frozen=True)
class HistogramDataPoint:
    attributes: Dict[str, Any]
    start_time_unix_nano: int
    time_unix_nano: int
    count: int
    sum: float
    bucket_counts: Tuple[int, ...]
    explicit_bounds: Tuple[float, ...]
    min: Optional[float] = None
    max: Optional[float] = None


DataPoint = Union[NumberDataPoint, HistogramDataPoint]


@dataclass(frozen=True)
class Metric:
    """All data points of one instrument for one collection."""

    name: str
    description: str
    unit: str
    kind: InstrumentKind
    temporality: Temporality
    points: Tuple[DataPoint, ...]
    scope: str = ""
    is_monotonic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "kind": self.kind.value,
            "temporality": self.temporality.value,
            "scope": self.scope,
            "points": [_point_to_dict(p) for p in self.points],
        }


@dataclass(frozen=True)
class MetricsData:
    """One collection: the resource plus every metric that had data."""

    resource: Dict[str, Any]
    metrics: Tuple[Metric, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": dict(self.resource),
            "metrics": [m.to_dict() for m in self.metrics],
        }


def _point_to_dict(point: DataPoint) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "attributes": dict(point.attributes),
        "start_time_unix_nano": point.start_time_unix_nano,
        "time_unix_nano": point.time_unix_nano,
    }
    if isinstance(point, HistogramDataPoint):
        data.update(
            count=point.count,
            sum=point.sum,
            bucket_counts=list(point.bucket_counts),
            explicit_bounds=list(point.explicit_bounds),
            min=point.min,
            max=point.max,
        )
    else:
        data["value"] = point.value
    return data


def _attributes_key(attributes: Optional[Mapping[str, Any]]) -> AttributesKey:
    """Order-independent, hashable identity for an attribute set."""
    if not attributes:
        return ()
    return tuple(sorted(attributes.items(), key=lambda kv: kv[0]))


# ── Accumulators ─────────────────────────────────────────────────


class _SumAccumulator:
    __slots__ = ("lock", "value", "start_time")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.value: Number = 0
        self.start_time = time.time_ns()

    def add(self, amount: Number) -> None:
        with self.lock:
            self.value += amount

    def snapshot(self) -> Tuple[int, Number]:
        with self.lock:
            return self.start_time, self.value


class _HistogramAccumulator:
    __slots__ = ("lock", "bounds", "bucket_counts", "count", "total", "min", "max", "start_time")

    def __init__(self, bounds: Tuple[float, ...]) -> None:
        self.lock = threading.Lock()
        self.bounds = bounds
        self.bucket_counts = [0] * (len(bounds) + 1)
        self.count = 0
        self.total = 0.0
        self.min: Optional[float] = None
        self.max: Optional[float] = None
        self.start_time = time.time_ns()

    def record(self, value: Number) -> None:
        # Upper bounds are inclusive: value == bound lands in that bucket
        index = bisect.bisect_left(self.bounds, value)
        with self.lock:
            self.bucket_counts[index] += 1
            self.count += 1
            self.total += value
            self.min = value if self.min is None else min(self.min, value)
            self.max = value if self.max is None else max(self.max, value)

    def snapshot(self) -> Tuple[int, int, float, Tuple[int, ...], Optional[float], Optional[float]]:
        with self.lock:
            return (
                self.start_time,
                self.count,
                self.total,
                tuple(self.bucket_counts),
                self.min,
                self.max,
            )


# ── Instruments ──────────────────────────────────────────────────


class Instrument:
    """Base for all instruments: identity plus a map of attribute buckets."""

    kind: InstrumentKind

    def __init__(self, name: str, unit: str = "", description: str = "", scope: str = "") -> None:
        self.name = name
        self.unit = unit
        self.description = description
        self.scope = scope
        self._buckets: Dict[AttributesKey, Any] = {}
        self._buckets_lock = threading.Lock()

    def _new_accumulator(self) -> Any:
        raise NotImplementedError

    def _bucket(self, attributes: Optional[Mapping[str, Any]]) -> Any:
        key = _attributes_key(attributes)
        acc = self._buckets.get(key)
        if acc is None:
            with self._buckets_lock:
                acc = self._buckets.get(key)
                if acc is None:
                    acc = self._buckets[key] = self._new_accumulator()
        return acc

    def _items(self) -> List[Tuple[AttributesKey, Any]]:
        with self._buckets_lock:
            return list(self._buckets.items())

    def collect(self, now: int) -> Optional[Metric]:
        raise NotImplementedError


class Counter(Instrument):
    """Monotonic sum.  Negative increments are rejected."""

    kind = InstrumentKind.COUNTER

    def _new_accumulator(self) -> _SumAccumulator:
        return _SumAccumulator()

    def add(self, amount: Number, attributes: Optional[Mapping[str, Any]] = None) -> None:
        if amount < 0:
            logger.warning("Counter %s: ignoring negative increment %s", self.name, amount)
            return
        self._bucket(attributes).add(amount)

    def collect(self, now: int) -> Optional[Metric]:
        points = []
        for key, acc in self._items():
            start, value = acc.snapshot()
            points.append(NumberDataPoint(dict(key), start, now, value))
        if not points:
            return None
        return Metric(
            self.name, self.description, self.unit, self.kind,
            Temporality.CUMULATIVE, tuple(points), self.scope, is_monotonic=True,
        )


class Histogram(Instrument):
    """Explicit-bucket distribution of recorded values."""

    kind = InstrumentKind.HISTOGRAM

    def __init__(
        self,
        name: str,
        unit: str = "",
        description: str = "",
        scope: str = "",
        boundaries: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, unit, description, scope)
        bounds = tuple(float(b) for b in (boundaries or DEFAULT_HISTOGRAM_BOUNDARIES))
        if list(bounds) != sorted(set(bounds)):
            raise InstrumentError(f"Histogram {name}: boundaries must be strictly increasing")
        self.boundaries = bounds

    def _new_accumulator(self) -> _HistogramAccumulator:
        return _HistogramAccumulator(self.boundaries)

    def record(self, value: Number, attributes: Optional[Mapping[str, Any]] = None) -> None:
        self._bucket(attributes).record(value)

    def collect(self, now: int) -> Optional[Metric]:
        points = []
        for key, acc in self._items():
            start, count, total, buckets, vmin, vmax = acc.snapshot()
            points.append(
                HistogramDataPoint(
                    dict(key), start, now, count, total, buckets, self.boundaries, vmin, vmax
                )
            )
        if not points:
            return None
        return Metric(
            self.name, self.description, self.unit, self.kind,
            Temporality.CUMULATIVE, tuple(points), self.scope,
        )


Callback = Callable[[], Iterable[Observation]]


class ObservableGauge(Instrument):
    """Last observed value, pulled from callbacks at collection time."""

    kind = InstrumentKind.OBSERVABLE_GAUGE

    def __init__(
        self,
        name: str,
        unit: str = "",
        description: str = "",
        scope: str = "",
        callbacks: Optional[Sequence[Callback]] = None,
    ) -> None:
        super().__init__(name, unit, description, scope)
        self._callbacks: List[Callback] = list(callbacks or [])

    def add_callback(self, callback: Callback) -> None:
        self._callbacks.append(callback)

    def collect(self, now: int) -> Optional[Metric]:
        observed: Dict[AttributesKey, NumberDataPoint] = {}
        for callback in list(self._callbacks):
            try:
                observations = list(callback())
            except Exception as exc:
                logger.warning(
                    "Gauge %s: callback %s failed: %s",
                    self.name,
                    getattr(callback, "__name__", repr(callback)),
                    exc,
                )
                continue
            for obs in observations:
                key = _attributes_key(obs.attributes)
                observed[key] = NumberDataPoint(dict(key), now, now, obs.value)
        if not observed:
            return None
        return Metric(
            self.name, self.description, self.unit, self.kind,
            Temporality.CUMULATIVE, tuple(observed.values()), self.scope,
        )


# ── Meters & providers ───────────────────────────────────────────


class Meter:
    """Creates and owns the instruments of one instrumentation scope.

    Instruments are registered once per (case-insensitive) name; asking
    again returns the existing instrument.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._instruments: Dict[str, Instrument] = {}
        self._lock = threading.Lock()

    def _register(self, cls: type, name: str, **kwargs: Any) -> Any:
        if not name or not _INSTRUMENT_NAME_RE.match(name):
            raise InstrumentError(f"Invalid instrument name: {name!r}")
        with self._lock:
            existing = self._instruments.get(name.lower())
            if existing is not None:
                if type(existing) is not cls:
                    raise InstrumentError(
                        f"Instrument {name!r} already registered as {existing.kind.value}"
                    )
                callbacks = kwargs.get("callbacks")
                if callbacks and isinstance(existing, ObservableGauge):
                    for cb in callbacks:
                        existing.add_callback(cb)
                return existing
            instrument = cls(name, scope=self.name, **kwargs)
            self._instruments[name.lower()] = instrument
            return instrument

    def create_counter(self, name: str, unit: str = "", description: str = "") -> Counter:
        return self._register(Counter, name, unit=unit, description=description)

    def create_histogram(
        self,
        name: str,
        unit: str = "",
        description: str = "",
        boundaries: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._register(
            Histogram, name, unit=unit, description=description, boundaries=boundaries
        )

    def create_observable_gauge(
        self,
        name: str,
        callbacks: Optional[Sequence[Callback]] = None,
        unit: str = "",
        description: str = "",
    ) -> ObservableGauge:
        return self._register(
            ObservableGauge, name, unit=unit, description=description, callbacks=callbacks
        )

    def instruments(self) -> List[Instrument]:
        with self._lock:
            return list(self._instruments.values())


class MeterProvider:
    """Owns meters and the readers that collect from them.

    Usage::

        reader = InMemoryMetricReader()
        provider = MeterProvider(readers=[reader])
        provider.get_meter("app").create_counter("requests").add(1)
        reader.collect()
    """

    def __init__(
        self,
        readers: Optional[Sequence[Any]] = None,
        resource: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.resource = resource if resource is not None else build_resource()
        self._meters: Dict[str, Meter] = {}
        self._lock = threading.Lock()
        self._readers = list(readers or [])
        for reader in self._readers:
            reader._register(self)

    @property
    def readers(self) -> List[Any]:
        return list(self._readers)

    def get_meter(self, name: str) -> Meter:
        with self._lock:
            meter = self._meters.get(name)
            if meter is None:
                meter = self._meters[name] = Meter(name)
            return meter

    def collect(self) -> MetricsData:
        """Cumulative state of every instrument that has data."""
        now = time.time_ns()
        with self._lock:
            meters = list(self._meters.values())
        metrics = []
        for meter in meters:
            for instrument in meter.instruments():
                metric = instrument.collect(now)
                if metric is not None:
                    metrics.append(metric)
        return MetricsData(self.resource, tuple(metrics))

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return all([reader.force_flush(timeout) for reader in self._readers])

    def shutdown(self) -> None:
        for reader in self._readers:
            reader.shutdown()


# ── No-op implementations ────────────────────────────────────────


class NoOpCounter(Counter):
    def add(self, amount, attributes=None) -> None:
        pass


class NoOpHistogram(Histogram):
    def record(self, value, attributes=None) -> None:
        pass


class NoOpObservableGauge(ObservableGauge):
    def collect(self, now: int) -> Optional[Metric]:
        return None


class NoOpMeter(Meter):
    """Hands out instruments that discard everything."""

    def create_counter(self, name, unit="", description="") -> Counter:
        return NoOpCounter(name, unit, description, self.name)

    def create_histogram(self, name, unit="", description="", boundaries=None) -> Histogram:
        return NoOpHistogram(name, unit, description, self.name, boundaries)

    def create_observable_gauge(self, name, callbacks=None, unit="", description=""):
        return NoOpObservableGauge(name, unit, description, self.name)


class NoOpMeterProvider(MeterProvider):
    def __init__(self) -> None:
        super().__init__(readers=[], resource={})

    def get_meter(self, name: str) -> Meter:
        return NoOpMeter(name)
