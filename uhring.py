#!/usr/bin/env python3
"""uh-ring — show Ultrahuman ring metrics and forward them to a time-series store.

Usage:
    python uhring.py                  # show all metrics for today
    python uhring.py hr               # print a single metric value
    python uhring.py --date 2024-06-01
    python uhring.py serve --remote-write-url http://localhost:9090/api/v1/write
    python uhring.py help             # list every known metric
"""

import argparse
import enum
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import NamedTuple, Optional, Tuple

import requests
import snappy
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.domain.bucket_retention_rules import BucketRetentionRules
from influxdb_client.rest import ApiException

__version__ = "0.1.0"

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
log = logging.getLogger("uhring")

DEFAULT_API_URL = "https://partner.ultrahuman.com/api/v1/partner/daily_metrics"
DEFAULT_PORT = 8080
DEFAULT_INTERVAL = 60
DEFAULT_INFLUXDB_BUCKET = "ultrahuman"

# Client-side timeout for every outbound HTTP request, in seconds.
REQUEST_TIMEOUT = 30

# Wire types decoded with fixed shapes instead of through the registry.
SLEEP_TYPE = "sleep"
MOTION_TYPE = "motion"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class UhRingError(Exception):
    """Base class for every error raised by uh-ring."""


class FetchError(UhRingError):
    """The Ultrahuman API could not be reached or returned an unreadable body."""


class APIError(UhRingError):
    """The Ultrahuman API answered with an error payload."""


class DecodeError(UhRingError):
    """A single metric payload did not match its expected shape."""


class TransportError(UhRingError):
    """Forwarding a batch of samples failed."""


class EncodingError(TransportError):
    """Samples could not be serialized for the wire."""


class NetworkError(TransportError):
    """The forwarding target could not be reached."""


class RemoteRejectedError(TransportError):
    """The forwarding target answered with a non-2xx status."""

    def __init__(self, status_code, body):
        super().__init__(f"remote write failed with status {status_code}: {body}")
        self.status_code = status_code
        self.body = body


# ---------------------------------------------------------------------------
# Metric schema registry
# ---------------------------------------------------------------------------

class ShapeKind(enum.Enum):
    TIME_SERIES = "timeseries"
    SCALAR = "simple"
    COMPOSITE_SLEEP = "sleep"


class SummaryField(enum.Enum):
    LAST = "last"
    AVERAGE = "avg"
    TOTAL = "total"


@dataclass(frozen=True)
class RegistryEntry:
    """How one wire type is decoded, displayed and forwarded.

    An empty ``output_name`` means the metric is never forwarded.
    ``cumulative`` marks running daily counters, which are forwarded once per
    day as the day's total instead of reading by reading.
    """

    wire_type: str
    shape_kind: ShapeKind
    display_name: str
    unit: str = ""
    summary_field: Optional[SummaryField] = None
    is_duration: bool = False
    output_name: str = ""
    group: str = ""
    precision: int = 0
    cumulative: bool = False


class MetricRegistry:
    """Immutable lookup table of :class:`RegistryEntry` keyed by wire type."""

    def __init__(self, entries):
        table = {}
        for entry in entries:
            if entry.wire_type in table:
                raise ValueError(f"duplicate registry entry for wire type {entry.wire_type!r}")
            table[entry.wire_type] = entry
        self._entries = MappingProxyType(table)

    def lookup(self, wire_type):
        """Return the entry for *wire_type*, or None if it is not registered."""
        return self._entries.get(wire_type)

    def __contains__(self, wire_type):
        return wire_type in self._entries

    def __iter__(self):
        return iter(self._entries.values())

    def __len__(self):
        return len(self._entries)


GROUP_HEART = "Heart & Activity"
GROUP_SLEEP = "Sleep"
GROUP_TEMPERATURE = "Temperature"
GROUP_GLUCOSE = "Glucose"
GROUPS = (GROUP_HEART, GROUP_SLEEP, GROUP_TEMPERATURE, GROUP_GLUCOSE)


def _series(wire_type, display_name, unit, summary_field, output_name, group, **kwargs):
    return RegistryEntry(
        wire_type=wire_type, shape_kind=ShapeKind.TIME_SERIES, display_name=display_name,
        unit=unit, summary_field=summary_field, output_name=output_name, group=group, **kwargs,
    )


def _scalar(wire_type, display_name, unit, output_name, group, **kwargs):
    return RegistryEntry(
        wire_type=wire_type, shape_kind=ShapeKind.SCALAR, display_name=display_name,
        unit=unit, output_name=output_name, group=group, **kwargs,
    )


DEFAULT_REGISTRY = MetricRegistry([
    # Heart & activity
    _series("hr", "HEART RATE", "BPM", SummaryField.LAST, "ultrahuman_heart_rate_bpm", GROUP_HEART),
    _series("hrv", "HEART RATE VARIABILITY", "ms", SummaryField.LAST, "ultrahuman_hrv_ms", GROUP_HEART),
    _series("spo2", "SPO2 (Blood Oxygen)", "%", SummaryField.AVERAGE, "ultrahuman_spo2_percent", GROUP_HEART),
    _series("steps", "STEPS", "", SummaryField.TOTAL, "ultrahuman_steps_total", GROUP_HEART, cumulative=True),
    _scalar("movement_index", "MOVEMENT INDEX", "", "ultrahuman_movement_index", GROUP_HEART),
    _scalar("active_minutes", "ACTIVE MINUTES", "min", "ultrahuman_active_minutes", GROUP_HEART),
    _scalar("recovery_index", "RECOVERY INDEX", "", "ultrahuman_recovery_index", GROUP_HEART),
    _scalar("recovery", "RECOVERY", "", "ultrahuman_recovery", GROUP_HEART),
    _scalar("vo2_max", "VO2 MAX", "ml/kg/min", "ultrahuman_vo2_max", GROUP_HEART, precision=1),

    # Temperature
    _series("temp", "SKIN TEMPERATURE", "°C", SummaryField.LAST, "ultrahuman_skin_temperature_celsius",
            GROUP_TEMPERATURE, precision=1),
    _scalar("temperature_deviation", "TEMPERATURE DEVIATION", "°C", "ultrahuman_temperature_deviation_celsius",
            GROUP_TEMPERATURE, precision=1),
    _scalar("average_body_temperature", "AVG BODY TEMP", "°C", "ultrahuman_avg_body_temperature_celsius",
            GROUP_TEMPERATURE, precision=1),

    # Sleep
    _scalar("sleep_score", "SLEEP SCORE", "", "ultrahuman_sleep_score", GROUP_SLEEP),
    _scalar("total_sleep", "TOTAL SLEEP", "", "ultrahuman_total_sleep_minutes", GROUP_SLEEP, is_duration=True),
    _scalar("sleep_efficiency", "SLEEP EFFICIENCY", "%", "ultrahuman_sleep_efficiency_percent", GROUP_SLEEP),
    _scalar("deep_sleep", "DEEP SLEEP", "", "ultrahuman_deep_sleep_minutes", GROUP_SLEEP, is_duration=True),
    _scalar("light_sleep", "LIGHT SLEEP", "", "ultrahuman_light_sleep_minutes", GROUP_SLEEP, is_duration=True),
    _scalar("rem_sleep", "REM SLEEP", "", "ultrahuman_rem_sleep_minutes", GROUP_SLEEP, is_duration=True),
    _scalar("time_in_bed", "TIME IN BED", "", "ultrahuman_time_in_bed_minutes", GROUP_SLEEP, is_duration=True),
    _scalar("sleep_rhr", "SLEEP RESTING HR", "BPM", "ultrahuman_sleep_rhr_bpm", GROUP_SLEEP),
    _scalar("night_rhr", "SLEEP RESTING HR", "BPM", "ultrahuman_sleep_rhr_bpm", GROUP_SLEEP),
    _scalar("avg_sleep_hrv", "SLEEP HRV", "ms", "ultrahuman_avg_sleep_hrv_ms", GROUP_SLEEP),
    _scalar("hr_drop", "HR DROP (Sleep)", "BPM", "ultrahuman_hr_drop_bpm", GROUP_SLEEP),
    _scalar("restorative_sleep", "RESTORATIVE SLEEP", "", "ultrahuman_restorative_sleep", GROUP_SLEEP),
    _scalar("morning_alertness", "MORNING ALERTNESS", "", "ultrahuman_morning_alertness", GROUP_SLEEP),
    _scalar("full_sleep_cycles", "SLEEP CYCLES", "", "ultrahuman_full_sleep_cycles", GROUP_SLEEP),
    _scalar("tosses_and_turns", "TOSSES & TURNS", "", "ultrahuman_tosses_and_turns", GROUP_SLEEP),
    _scalar("movements", "MOVEMENTS (Sleep)", "", "ultrahuman_sleep_movements", GROUP_SLEEP),

    # Glucose
    _series("glucose", "GLUCOSE", "mg/dL", SummaryField.LAST, "ultrahuman_glucose_mg_dl", GROUP_GLUCOSE),
    _scalar("average_glucose", "AVERAGE GLUCOSE", "mg/dL", "ultrahuman_avg_glucose_mg_dl", GROUP_GLUCOSE),
    _scalar("glucose_variability", "GLUCOSE VARIABILITY", "%", "ultrahuman_glucose_variability_percent",
            GROUP_GLUCOSE, precision=1),
    _scalar("time_in_target", "TIME IN TARGET", "%", "ultrahuman_time_in_target_percent", GROUP_GLUCOSE),
    _scalar("hba1c", "HbA1c (Estimated)", "%", "ultrahuman_hba1c_percent", GROUP_GLUCOSE, precision=1),
    _scalar("metabolic_score", "METABOLIC SCORE", "", "ultrahuman_metabolic_score", GROUP_GLUCOSE),
])


# ---------------------------------------------------------------------------
# Metric records & payload decoding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetricEnvelope:
    """One polymorphic metric as returned by the API, tagged by wire type."""

    type: str
    payload: object = None


class Reading(NamedTuple):
    value: float
    timestamp: int


@dataclass(frozen=True)
class TimeSeriesRecord:
    day_start_timestamp: int = 0
    title: str = ""
    readings: Tuple[Reading, ...] = ()
    last_reading: float = 0.0
    unit: str = ""
    subtitle: str = ""
    average: float = 0.0
    total: float = 0.0

    def summary(self, summary_field):
        """Return the summary value selected by *summary_field*."""
        if summary_field is SummaryField.AVERAGE:
            return self.average
        if summary_field is SummaryField.TOTAL:
            return self.total
        return self.last_reading


@dataclass(frozen=True)
class ScalarRecord:
    value: Optional[float] = None
    title: str = ""
    day_start_timestamp: int = 0

    @property
    def has_data(self):
        return self.value is not None


@dataclass(frozen=True)
class SleepCompositeRecord:
    day_start_timestamp: int = 0
    score: Optional[float] = None
    total_sleep: Optional[float] = None
    efficiency: Optional[float] = None
    time_in_bed: Optional[float] = None
    deep_sleep: Optional[float] = None
    light_sleep: Optional[float] = None
    rem_sleep: Optional[float] = None

    @property
    def is_empty(self):
        return self.score is None and self.total_sleep is None


@dataclass(frozen=True)
class DecodedMetric:
    """A decoded record together with the wire type and registry entry it came from.

    *entry* is None for the fixed-shape ``sleep`` and ``motion`` types.
    """

    wire_type: str
    entry: Optional[RegistryEntry]
    record: object


def _object(payload):
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise DecodeError(f"expected an object, got {type(payload).__name__}")
    return payload


def _number(obj, key, optional=False):
    val = obj.get(key)
    if val is None:
        return None if optional else 0.0
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise DecodeError(f"field {key!r}: expected a number, got {type(val).__name__}")
    return float(val)


def _integer(obj, key):
    val = obj.get(key)
    if val is None:
        return 0
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise DecodeError(f"field {key!r}: expected an integer, got {type(val).__name__}")
    if isinstance(val, float) and not val.is_integer():
        raise DecodeError(f"field {key!r}: expected an integer, got {val!r}")
    return int(val)


def _string(obj, key):
    val = obj.get(key)
    if val is None:
        return ""
    if not isinstance(val, str):
        raise DecodeError(f"field {key!r}: expected a string, got {type(val).__name__}")
    return val


def decode_time_series(payload):
    """Decode a time-series payload, keeping every reading in collection order."""
    obj = _object(payload)
    raw_values = obj.get("values")
    if raw_values is None:
        raw_values = []
    if not isinstance(raw_values, list):
        raise DecodeError(f"field 'values': expected a list, got {type(raw_values).__name__}")
    readings = []
    for item in raw_values:
        item = _object(item)
        readings.append(Reading(_number(item, "value"), _integer(item, "timestamp")))
    return TimeSeriesRecord(
        day_start_timestamp=_integer(obj, "day_start_timestamp"),
        title=_string(obj, "title"),
        readings=tuple(readings),
        last_reading=_number(obj, "last_reading"),
        unit=_string(obj, "unit"),
        subtitle=_string(obj, "subtitle"),
        average=_number(obj, "avg"),
        total=_number(obj, "total"),
    )


def decode_scalar(payload):
    """Decode a single-value payload. A null value means "no data", not zero."""
    obj = _object(payload)
    return ScalarRecord(
        value=_number(obj, "value", optional=True),
        title=_string(obj, "title"),
        day_start_timestamp=_integer(obj, "day_start_timestamp"),
    )


def decode_sleep(payload):
    obj = _object(payload)
    return SleepCompositeRecord(
        day_start_timestamp=_integer(obj, "day_start_timestamp"),
        score=_number(obj, "score", optional=True),
        total_sleep=_number(obj, "total_sleep", optional=True),
        efficiency=_number(obj, "efficiency", optional=True),
        time_in_bed=_number(obj, "time_in_bed", optional=True),
        deep_sleep=_number(obj, "deep_sleep", optional=True),
        light_sleep=_number(obj, "light_sleep", optional=True),
        rem_sleep=_number(obj, "rem_sleep", optional=True),
    )


_DECODERS = {
    ShapeKind.TIME_SERIES: decode_time_series,
    ShapeKind.SCALAR: decode_scalar,
    ShapeKind.COMPOSITE_SLEEP: decode_sleep,
}


def decode(envelope, entry):
    """Decode *envelope* into the record shape named by *entry*.

    Raises :class:`DecodeError` when the payload does not fit that shape.
    """
    return _DECODERS[entry.shape_kind](envelope.payload)


def decode_envelope(envelope, registry=DEFAULT_REGISTRY):
    """Decode one envelope into a :class:`DecodedMetric`.

    ``sleep`` and ``motion`` use fixed shapes; everything else goes through
    *registry*. Returns None for a wire type nobody knows about.
    """
    if envelope.type == SLEEP_TYPE:
        return DecodedMetric(envelope.type, None, decode_sleep(envelope.payload))
    if envelope.type == MOTION_TYPE:
        return DecodedMetric(envelope.type, None, decode_time_series(envelope.payload))
    entry = registry.lookup(envelope.type)
    if entry is None:
        return None
    return DecodedMetric(envelope.type, entry, decode(envelope, entry))


def decode_metrics(envelopes, registry=DEFAULT_REGISTRY):
    """Decode *envelopes* in order, skipping unknown types and malformed payloads."""
    decoded = []
    for envelope in envelopes:
        try:
            metric = decode_envelope(envelope, registry)
        except DecodeError as exc:
            log.debug("Skipping metric '%s': %s", envelope.type, exc)
            continue
        if metric is not None:
            decoded.append(metric)
    return decoded


# ---------------------------------------------------------------------------
# High-water-mark tracking
# ---------------------------------------------------------------------------

class ForwardBatch:
    """High-water marks staged by one poll cycle.

    Starts from a snapshot of the committed marks. Nothing recorded here is
    visible to other readers until :meth:`TrackerState.commit` is called.
    """

    def __init__(self, marks):
        self._marks = dict(marks)
        self._pending = {}
        self._latest = 0

    def watermark(self, wire_type):
        """Return the last forwarded timestamp for *wire_type* (0 if none)."""
        return self._marks.get(wire_type, 0)

    def should_forward(self, wire_type, epoch_seconds):
        return epoch_seconds > self.watermark(wire_type)

    def record(self, wire_type, epoch_seconds):
        if epoch_seconds > self._marks.get(wire_type, 0):
            self._marks[wire_type] = epoch_seconds
            self._pending[wire_type] = epoch_seconds
        if epoch_seconds > self._latest:
            self._latest = epoch_seconds

    @property
    def pending(self):
        return dict(self._pending)

    @property
    def latest_timestamp(self):
        return self._latest


class TrackerState:
    """Per-metric high-water marks plus the latest forwarded timestamp.

    Shared between the poll loop and the status endpoint; every access goes
    through one lock. Never persisted, so a restart forgets what was sent.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._marks = {}
        self._latest = 0

    def begin_batch(self):
        with self._lock:
            return ForwardBatch(self._marks)

    def commit(self, batch):
        """Merge the marks staged in *batch*. Marks only ever move forward."""
        with self._lock:
            for wire_type, ts in batch.pending.items():
                if ts > self._marks.get(wire_type, 0):
                    self._marks[wire_type] = ts
            if batch.latest_timestamp > self._latest:
                self._latest = batch.latest_timestamp

    def last_forwarded(self, wire_type):
        with self._lock:
            return self._marks.get(wire_type, 0)

    @property
    def latest_timestamp(self):
        with self._lock:
            return self._latest

    def snapshot(self):
        """Return ``(marks, latest_timestamp)`` read under the lock."""
        with self._lock:
            return dict(self._marks), self._latest


# ---------------------------------------------------------------------------
# Forwarding: samples & encoding
# ---------------------------------------------------------------------------

class WireSample(NamedTuple):
    name: str
    value: float
    epoch_millis: int


def encode_samples(metrics, batch):
    """Turn decoded time-series metrics into samples not yet forwarded.

    Each reading newer than the metric's mark is emitted with its original
    sensor timestamp. Cumulative counters are emitted once per day as the
    day's total, keyed on the day-start timestamp. Marks are staged in
    *batch*.
    """
    samples = []
    for metric in metrics:
        entry = metric.entry
        if entry is None or not entry.output_name or entry.shape_kind is not ShapeKind.TIME_SERIES:
            continue
        record = metric.record

        if entry.cumulative:
            if batch.should_forward(metric.wire_type, record.day_start_timestamp):
                samples.append(WireSample(entry.output_name, record.total, record.day_start_timestamp * 1000))
                batch.record(metric.wire_type, record.day_start_timestamp)
            continue

        # Readings are not sorted, so compare against the mark as it was
        # before this envelope.
        floor = batch.watermark(metric.wire_type)
        for reading in record.readings:
            if reading.timestamp <= floor:
                continue
            samples.append(WireSample(entry.output_name, reading.value, reading.timestamp * 1000))
            batch.record(metric.wire_type, reading.timestamp)
    return samples


def _build_write_request_class():
    """Build the Prometheus remote-write ``WriteRequest`` message class.

    Field numbers match ``prompb/remote.proto`` and ``prompb/types.proto`` so
    the serialized bytes are what any remote-write receiver expects.
    """
    fdp = descriptor_pb2.FieldDescriptorProto
    proto = descriptor_pb2.FileDescriptorProto(
        name="uhring/prompb.proto", package="prometheus", syntax="proto3",
    )

    label = proto.message_type.add(name="Label")
    label.field.add(name="name", number=1, type=fdp.TYPE_STRING, label=fdp.LABEL_OPTIONAL)
    label.field.add(name="value", number=2, type=fdp.TYPE_STRING, label=fdp.LABEL_OPTIONAL)

    sample = proto.message_type.add(name="Sample")
    sample.field.add(name="value", number=1, type=fdp.TYPE_DOUBLE, label=fdp.LABEL_OPTIONAL)
    sample.field.add(name="timestamp", number=2, type=fdp.TYPE_INT64, label=fdp.LABEL_OPTIONAL)

    series = proto.message_type.add(name="TimeSeries")
    series.field.add(name="labels", number=1, type=fdp.TYPE_MESSAGE,
                     type_name=".prometheus.Label", label=fdp.LABEL_REPEATED)
    series.field.add(name="samples", number=2, type=fdp.TYPE_MESSAGE,
                     type_name=".prometheus.Sample", label=fdp.LABEL_REPEATED)

    request = proto.message_type.add(name="WriteRequest")
    request.field.add(name="timeseries", number=1, type=fdp.TYPE_MESSAGE,
                      type_name=".prometheus.TimeSeries", label=fdp.LABEL_REPEATED)

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("prometheus.WriteRequest"))


WriteRequest = _build_write_request_class()


def encode_write_request(samples):
    """Serialize *samples* as a remote-write request, one series per sample."""
    request = WriteRequest()
    try:
        for sample in samples:
            series = request.timeseries.add()
            series.labels.add(name="__name__", value=sample.name)
            series.samples.add(value=sample.value, timestamp=sample.epoch_millis)
        return request.SerializeToString()
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"marshaling write request: {exc}") from exc


# ---------------------------------------------------------------------------
# Forwarding transports
# ---------------------------------------------------------------------------

REMOTE_WRITE_HEADERS = {
    "Content-Type": "application/x-protobuf",
    "Content-Encoding": "snappy",
    "X-Prometheus-Remote-Write-Version": "0.1.0",
    "User-Agent": f"uh-ring/{__version__}",
}


class RemoteWriteClient:
    """Send samples to a Prometheus remote-write endpoint. No retries."""

    def __init__(self, url, session=None, timeout=REQUEST_TIMEOUT):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, samples):
        body = snappy.compress(encode_write_request(samples))
        try:
            resp = self.session.post(self.url, data=body, headers=REMOTE_WRITE_HEADERS, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"sending request: {exc}") from exc
        if resp.status_code // 100 != 2:
            raise RemoteRejectedError(resp.status_code, resp.text)

    def __repr__(self):
        return f"RemoteWriteClient({self.url!r})"


def ensure_bucket(influx_client, bucket, org):
    """Ensure the target InfluxDB bucket exists with infinite retention.

    Creates the bucket with no expiration (``every_seconds=0``) if missing.
    If the bucket already exists, logs a warning when its retention policy
    is not set to infinite so the operator can adjust it manually.
    """
    buckets_api = influx_client.buckets_api()
    existing = buckets_api.find_bucket_by_name(bucket)
    if existing:
        for rule in existing.retention_rules or []:
            if rule.every_seconds and rule.every_seconds > 0:
                log.warning(
                    "Bucket '%s' has a finite retention of %d seconds. "
                    "Old ring data may be dropped. Consider setting retention to infinite (0).",
                    bucket,
                    rule.every_seconds,
                )
        return
    try:
        retention = BucketRetentionRules(type="expire", every_seconds=0)
        buckets_api.create_bucket(bucket_name=bucket, org=org, retention_rules=[retention])
    except ApiException as exc:
        raise RemoteRejectedError(exc.status, exc.body) from exc
    log.info("Created InfluxDB bucket '%s' with infinite retention.", bucket)


class InfluxWriter:
    """Send samples to InfluxDB v2, one point per sample.

    The sample name becomes the measurement and the value is stored in the
    ``value`` field at millisecond precision.
    """

    def __init__(self, influx_client, bucket, org):
        self.client = influx_client
        self.bucket = bucket
        self.org = org
        self.write_api = influx_client.write_api(write_options=SYNCHRONOUS)

    def send(self, samples):
        try:
            points = [
                Point(s.name).field("value", float(s.value)).time(s.epoch_millis, WritePrecision.MS)
                for s in samples
            ]
        except (TypeError, ValueError) as exc:
            raise EncodingError(f"building points: {exc}") from exc
        try:
            self.write_api.write(bucket=self.bucket, org=self.org, record=points)
        except ApiException as exc:
            raise RemoteRejectedError(exc.status, exc.body) from exc
        except Exception as exc:
            raise NetworkError(f"writing to InfluxDB: {exc}") from exc

    def close(self):
        self.client.close()

    def __repr__(self):
        return f"InfluxWriter(bucket={self.bucket!r}, org={self.org!r})"


def forward_metrics(metrics, sink, state):
    """Forward every not-yet-sent sample in *metrics* through *sink*.

    Marks are committed to *state* only after *sink* accepts the batch, so a
    failed send is retried by the next cycle. Returns the number of samples
    sent; no request is made when there is nothing new.
    """
    if sink is None:
        return 0
    batch = state.begin_batch()
    samples = encode_samples(metrics, batch)
    if not samples:
        return 0
    log.info("Pushing %d data points to %r", len(samples), sink)
    sink.send(samples)
    state.commit(batch)
    return len(samples)


# ---------------------------------------------------------------------------
# Ultrahuman API client
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DailyMetrics:
    """Envelopes grouped by date, plus the user's latest time zone."""

    metrics: dict = field(default_factory=dict)
    timezone: str = ""

    def dates(self):
        return sorted(self.metrics)

    def envelopes_for(self, day_str):
        """Envelopes for *day_str*, or for the earliest date when it is absent."""
        if day_str in self.metrics:
            return self.metrics[day_str]
        dates = self.dates()
        return self.metrics[dates[0]] if dates else ()

    def all_envelopes(self):
        """Every envelope, ordered by date then by position in the response."""
        return [env for day in self.dates() for env in self.metrics[day]]


def parse_daily_metrics(body):
    """Build :class:`DailyMetrics` from a decoded ``daily_metrics`` response."""
    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise FetchError(f"unexpected 'data' in response: {type(data).__name__}")
    raw_metrics = data.get("metrics") or {}
    if not isinstance(raw_metrics, dict):
        raise FetchError(f"unexpected 'metrics' in response: {type(raw_metrics).__name__}")

    metrics = {}
    for day_str, items in raw_metrics.items():
        if items is None:
            items = []
        if not isinstance(items, list):
            raise FetchError(f"unexpected metrics for {day_str}: {type(items).__name__}")
        envelopes = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("type"), str):
                log.debug("Ignoring malformed metric entry on %s: %r", day_str, item)
                continue
            envelopes.append(MetricEnvelope(item["type"], item.get("object")))
        metrics[day_str] = tuple(envelopes)
    return DailyMetrics(metrics=metrics, timezone=data.get("latest_time_zone") or "")


class UltrahumanClient:
    """Fetch daily metrics from the Ultrahuman partner API.

    *token* is sent verbatim in the ``Authorization`` header.
    """

    def __init__(self, token, base_url=DEFAULT_API_URL, session=None, timeout=REQUEST_TIMEOUT):
        self.token = token
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, day):
        """Return :class:`DailyMetrics` for *day* (a date or ``YYYY-MM-DD`` string)."""
        day_str = day if isinstance(day, str) else day.strftime("%Y-%m-%d")
        try:
            resp = self.session.get(
                self.base_url,
                params={"date": day_str},
                headers={"Authorization": self.token},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise FetchError(f"requesting metrics for {day_str}: {exc}") from exc

        try:
            body = resp.json()
        except ValueError as exc:
            raise FetchError(f"undecodable response (HTTP {resp.status_code})") from exc
        if not isinstance(body, dict):
            raise FetchError(f"unexpected response (HTTP {resp.status_code})")

        if body.get("error") is not None:
            raise APIError(str(body["error"]))
        return parse_daily_metrics(body)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

HEAVY_RULE = "═" * 58
LIGHT_RULE = "─" * 58


def format_timestamp(ts):
    return datetime.fromtimestamp(ts).strftime("%H:%M")


def format_duration(minutes):
    """Format *minutes* as ``"7h 5m"``, or ``"45m"`` under an hour."""
    sign = "-" if minutes < 0 else ""
    hours, mins = divmod(abs(int(minutes)), 60)
    if hours > 0:
        return f"{sign}{hours}h {mins}m"
    return f"{sign}{mins}m"


def format_number(value, precision=0):
    return f"{value:.{precision}f}"


def _with_unit(text, unit):
    if unit in ("°C", "%"):
        return f"{text}{unit}"
    if unit:
        return f"{text} {unit}"
    return text


def _section(title):
    return ["", f"  {title}"]


def _render_sleep(record):
    if record.is_empty:
        return []
    lines = _section("SLEEP")
    if record.score is not None:
        lines.append(f"      Score: {format_number(record.score)}")
    if record.total_sleep is not None:
        lines.append(f"      Total: {format_duration(record.total_sleep)}")
    if record.efficiency is not None:
        lines.append(f"      Efficiency: {format_number(record.efficiency)}%")
    for label, minutes in (
        ("Time in bed", record.time_in_bed),
        ("Deep", record.deep_sleep),
        ("Light", record.light_sleep),
        ("REM", record.rem_sleep),
    ):
        if minutes is not None:
            lines.append(f"      {label}: {format_duration(minutes)}")
    return lines


def _render_time_series(entry, record):
    if entry.cumulative:
        if record.total <= 0 and record.average <= 0:
            return []
        lines = _section(entry.display_name)
        lines.append(f"      Total: {format_number(record.total)} | Avg: {format_number(record.average)}")
        return lines

    if not record.title:
        return []
    lines = _section(entry.display_name)
    unit = entry.unit or record.unit
    labels = {SummaryField.LAST: "Last", SummaryField.AVERAGE: "Average", SummaryField.TOTAL: "Total"}
    summary = format_number(record.summary(entry.summary_field), entry.precision)
    if entry.summary_field is SummaryField.TOTAL:
        lines.append(f"      Total: {summary}")
    else:
        lines.append(f"      {labels[entry.summary_field or SummaryField.LAST]}: {_with_unit(summary, unit)}")
    for reading in record.readings:
        value = _with_unit(format_number(reading.value, entry.precision), unit)
        lines.append(f"      - {value} @ {format_timestamp(reading.timestamp)}")
    return lines


def _render_scalar(entry, record):
    if not record.has_data:
        return []
    lines = _section(entry.display_name)
    if entry.is_duration:
        lines.append(f"      Duration: {format_duration(record.value)}")
    elif entry.unit:
        lines.append(f"      Value: {_with_unit(format_number(record.value, entry.precision), entry.unit)}")
    else:
        lines.append(f"      Score: {format_number(record.value, entry.precision)}")
    return lines


def render_metric(metric):
    """Return display lines for one decoded metric (empty when there is nothing to show)."""
    record = metric.record
    if metric.wire_type == SLEEP_TYPE:
        return _render_sleep(record)
    if metric.wire_type == MOTION_TYPE:
        if not record.readings:
            return []
        return _section("MOTION") + [f"      Readings: {len(record.readings)}"]
    if isinstance(record, TimeSeriesRecord):
        return _render_time_series(metric.entry, record)
    if isinstance(record, ScalarRecord):
        return _render_scalar(metric.entry, record)
    return []


def render_daily_metrics(daily, registry=DEFAULT_REGISTRY):
    """Render every metric in *daily*, date by date, as one block of text."""
    lines = [
        HEAVY_RULE,
        f"  ULTRAHUMAN METRICS | Timezone: {daily.timezone}",
        HEAVY_RULE,
    ]
    for day_str in daily.dates():
        lines.append("")
        lines.append(f"  Date: {day_str}")
        lines.append(LIGHT_RULE)
        for metric in decode_metrics(daily.metrics[day_str], registry):
            lines.extend(render_metric(metric))
    lines.append("")
    lines.append(HEAVY_RULE)
    return "\n".join(lines)


def display_metrics(daily, registry=DEFAULT_REGISTRY):
    print(render_daily_metrics(daily, registry))


def metric_value(envelopes, wire_type, registry=DEFAULT_REGISTRY):
    """Return the formatted value of the first *wire_type* envelope.

    ``"null"`` means the metric is present but has no usable value;
    ``"not found"`` means it is absent or unknown.
    """
    for envelope in envelopes:
        if envelope.type != wire_type:
            continue
        if wire_type != SLEEP_TYPE and wire_type != MOTION_TYPE and wire_type not in registry:
            return "not found"
        try:
            metric = decode_envelope(envelope, registry)
        except DecodeError:
            return "null"

        record = metric.record
        if wire_type == SLEEP_TYPE:
            return "null" if record.score is None else format_number(record.score)
        if wire_type == MOTION_TYPE:
            return str(len(record.readings))
        entry = metric.entry
        if isinstance(record, TimeSeriesRecord):
            return format_number(record.summary(entry.summary_field), entry.precision)
        if not record.has_data:
            return "null"
        if entry.is_duration:
            return format_duration(record.value)
        return format_number(record.value, entry.precision)
    return "not found"


# Fixed-shape types listed in the usage catalog alongside registry entries.
_SPECIAL_COMMANDS = (
    (MOTION_TYPE, GROUP_HEART, "Motion readings count"),
    (SLEEP_TYPE, GROUP_SLEEP, "Sleep score"),
)


def get_metric_catalog(registry=DEFAULT_REGISTRY):
    """Return ``{group: [(wire_type, description), ...]}`` for every known metric."""
    catalog = {group: [] for group in GROUPS}
    for wire_type, group, description in _SPECIAL_COMMANDS:
        catalog.setdefault(group, []).append((wire_type, description))
    for entry in registry:
        description = entry.display_name
        if entry.unit:
            description = f"{description} ({entry.unit})"
        catalog.setdefault(entry.group or "Other", []).append((entry.wire_type, description))
    return catalog


def print_usage(registry=DEFAULT_REGISTRY):
    print("Usage: uh-ring [options] [command]")
    print()
    print("Options:")
    print("  --api-token <token>       API token (or set ULTRAHUMAN_API_TOKEN env var)")
    print("  --api-url <url>           Daily metrics endpoint (or set ULTRAHUMAN_API_URL)")
    print(f"  --port <port>             Port for the status server (default: {DEFAULT_PORT})")
    print(f"  --interval <seconds>      Metric refresh interval in seconds (default: {DEFAULT_INTERVAL})")
    print("  --remote-write-url <url>  Prometheus remote write URL for historical data")
    print("                            (e.g., http://localhost:9090/api/v1/write)")
    print("  --date <YYYY-MM-DD>       Date to query (default: today)")
    print()
    print("Commands:")
    print("  (no command)          Show all metrics")
    print("  serve                 Start the metrics forwarder and status server")
    print("  help                  Show this message")
    for group, metrics in get_metric_catalog(registry).items():
        if not metrics:
            continue
        print()
        print(f"  {group}:")
        for wire_type, description in metrics:
            print(f"    {wire_type:<26}{description}")


# ---------------------------------------------------------------------------
# Poll loop
# ---------------------------------------------------------------------------

class PollState(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECODING = "decoding"
    FORWARDING = "forwarding"


class MetricsPoller:
    """Fetch, decode and forward metrics on a fixed interval."""

    def __init__(self, api, sink, state, registry=DEFAULT_REGISTRY, interval=DEFAULT_INTERVAL,
                 today=date.today, clock=time.monotonic):
        self.api = api
        self.sink = sink
        self.state = state
        self.registry = registry
        self.interval = interval
        self.today = today
        self.clock = clock
        self.phase = PollState.IDLE

    def poll_once(self):
        """Run one cycle and return the number of samples forwarded.

        Fetch, API and transport failures are logged and end the cycle.
        """
        try:
            self.phase = PollState.FETCHING
            daily = self.api.fetch(self.today())

            self.phase = PollState.DECODING
            metrics = decode_metrics(daily.all_envelopes(), self.registry)

            self.phase = PollState.FORWARDING
            return forward_metrics(metrics, self.sink, self.state)
        except (FetchError, APIError) as exc:
            log.warning("Fetch error: %s", exc)
        except TransportError as exc:
            log.warning("Push error: %s", exc)
        finally:
            self.phase = PollState.IDLE
        return 0

    def run(self, stop_event=None):
        """Poll immediately, then once per interval until *stop_event* is set.

        Ticks are scheduled from the start time, so a slow cycle does not push
        later ones back; ticks missed entirely are skipped.
        """
        stop_event = stop_event or threading.Event()
        self._guarded_poll()
        next_tick = self.clock() + self.interval
        while not stop_event.wait(max(0.0, next_tick - self.clock())):
            self._guarded_poll()
            now = self.clock()
            next_tick += self.interval
            while next_tick <= now:
                next_tick += self.interval

    def _guarded_poll(self):
        try:
            self.poll_once()
        except Exception:
            log.exception("Unexpected error during poll cycle")

    def start(self, stop_event=None):
        thread = threading.Thread(target=self.run, args=(stop_event,), name="uhring-poller", daemon=True)
        thread.start()
        return thread


# ---------------------------------------------------------------------------
# Status server
# ---------------------------------------------------------------------------

def create_app(state, interval, poller=None):
    """Return the FastAPI app exposing ``/health`` and ``/status``.

    When *poller* is given, ``/status`` also reports its current phase.
    """
    app = FastAPI(title="uh-ring", version=__version__)

    @app.get("/health", response_class=PlainTextResponse)
    def health():
        return "ok\n"

    @app.get("/status")
    def status():
        _, latest = state.snapshot()
        body = {"status": "running", "last_data_timestamp": latest, "interval_seconds": interval}
        if poller is not None:
            body["phase"] = poller.phase.value
        return body

    return app


# ---------------------------------------------------------------------------
# Configuration & CLI
# ---------------------------------------------------------------------------

def _env_int(key, default):
    raw = os.environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.error("Environment variable %s must be an integer, got %r", key, raw)
        sys.exit(1)


def get_config(args):
    """Merge command-line flags with environment variables.

    Flags win over the environment. Exits when no API token is available.
    """
    token = args.api_token or os.environ.get("ULTRAHUMAN_API_TOKEN")
    if not token:
        print("Error: API token required. Use --api-token or set ULTRAHUMAN_API_TOKEN env var")
        sys.exit(1)
    return {
        "api_token": token,
        "api_url": args.api_url or os.environ.get("ULTRAHUMAN_API_URL") or DEFAULT_API_URL,
        "port": args.port if args.port is not None else _env_int("UH_RING_PORT", DEFAULT_PORT),
        "interval": args.interval if args.interval is not None else _env_int("UH_RING_INTERVAL", DEFAULT_INTERVAL),
        "remote_write_url": args.remote_write_url or os.environ.get("REMOTE_WRITE_URL"),
        "influxdb_url": os.environ.get("INFLUXDB_URL"),
        "influxdb_token": os.environ.get("INFLUXDB_TOKEN"),
        "influxdb_org": os.environ.get("INFLUXDB_ORG"),
        "influxdb_bucket": os.environ.get("INFLUXDB_BUCKET", DEFAULT_INFLUXDB_BUCKET),
    }


def build_sink(cfg):
    """Return the configured forwarding sink, or None if there is none.

    A remote-write URL takes precedence over an InfluxDB configuration.
    """
    if cfg.get("remote_write_url"):
        return RemoteWriteClient(cfg["remote_write_url"])
    if cfg.get("influxdb_url") and cfg.get("influxdb_token") and cfg.get("influxdb_org"):
        influx = InfluxDBClient(url=cfg["influxdb_url"], token=cfg["influxdb_token"], org=cfg["influxdb_org"])
        ensure_bucket(influx, cfg["influxdb_bucket"], cfg["influxdb_org"])
        return InfluxWriter(influx, cfg["influxdb_bucket"], cfg["influxdb_org"])
    return None


def serve(cfg):
    """Run the poller in the background and serve ``/health`` and ``/status``."""
    try:
        sink = build_sink(cfg)
    except TransportError as exc:
        log.error("Could not prepare forwarding target: %s", exc)
        sys.exit(1)
    if sink is None:
        log.error("--remote-write-url (or INFLUXDB_URL/TOKEN/ORG) is required for serve mode")
        sys.exit(1)
    log.info("Forwarding target: %r", sink)

    state = TrackerState()
    api = UltrahumanClient(cfg["api_token"], cfg["api_url"])
    poller = MetricsPoller(api, sink, state, interval=cfg["interval"])
    poller.start()

    log.info("Starting metrics pusher on :%d", cfg["port"])
    log.info("Pushing metrics every %d seconds", cfg["interval"])
    uvicorn.run(create_app(state, cfg["interval"], poller), host="0.0.0.0", port=cfg["port"], log_level="info")


def _parse_date(value):
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD")


def build_parser():
    parser = argparse.ArgumentParser(prog="uh-ring", description="Show and forward Ultrahuman ring metrics")
    parser.add_argument("command", nargs="?", default=None,
                        help="'serve', 'help', or a metric name (default: show all metrics)")
    parser.add_argument("--api-token", default=None, help="API token for Ultrahuman")
    parser.add_argument("--api-url", default=None, help="Daily metrics endpoint URL")
    parser.add_argument("--port", type=int, default=None, help=f"Port for the status server (default: {DEFAULT_PORT})")
    parser.add_argument("--interval", type=int, default=None,
                        help=f"Metric refresh interval in seconds (default: {DEFAULT_INTERVAL})")
    parser.add_argument("--remote-write-url", default=None,
                        help="Prometheus remote write URL (e.g., http://localhost:9090/api/v1/write)")
    parser.add_argument("--date", type=_parse_date, default=None, help="Date to query (YYYY-MM-DD). Defaults to today.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Allow help without a token
    if args.command == "help":
        print_usage()
        return

    cfg = get_config(args)

    if args.command == "serve":
        serve(cfg)
        return

    day = args.date or date.today()
    api = UltrahumanClient(cfg["api_token"], cfg["api_url"])
    try:
        daily = api.fetch(day)
    except APIError as exc:
        print(f"API Error: {exc}")
        sys.exit(1)
    except FetchError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if args.command is None:
        display_metrics(daily)
        return

    print(metric_value(daily.envelopes_for(day.strftime("%Y-%m-%d")), args.command))


if __name__ == "__main__":
    main()
