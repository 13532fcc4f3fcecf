import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from uapoller._UAMapping_ import NodeMetricMapping
from uapoller._UAReader_ import NodeValue


@dataclass
class Metric:
    name: str
    tags: Dict[str, str]
    fields: Dict[str, Any]
    timestamp: datetime.datetime


class Accumulator:
    """Receiver of finished measurements and cycle level errors."""

    def add_fields(self, measurement: str, fields: Dict[str, Any], tags: Dict[str, str],
                   timestamp: datetime.datetime):
        raise NotImplementedError

    def add_error(self, error: Exception):
        raise NotImplementedError


class MetricAccumulator(Accumulator):
    """Keeps everything in memory."""

    def __init__(self):
        self.metrics: List[Metric] = []
        self.errors: List[Exception] = []

    def add_fields(self, measurement, fields, tags, timestamp):
        self.metrics.append(Metric(measurement, dict(tags), dict(fields), timestamp))

    def add_error(self, error):
        self.errors.append(error)

    def clear(self):
        self.metrics.clear()
        self.errors.clear()


class LoggingAccumulator(Accumulator):
    """Writes measurements to the log, used when running standalone."""

    def add_fields(self, measurement, fields, tags, timestamp):
        logging.info(f"LoggingAccumulator.add_fields: {measurement} tags={tags} fields={fields} time={timestamp.isoformat()}")

    def add_error(self, error):
        logging.error(f"LoggingAccumulator.add_error: {str(error)}")


def _pick_timestamp(values: List[NodeValue], source: str, default: datetime.datetime) -> datetime.datetime:
    if source == "server":
        stamps = [v.server_timestamp for v in values if v.server_timestamp is not None]
    elif source == "source":
        stamps = [v.source_timestamp for v in values if v.source_timestamp is not None]
    else:
        return default
    if not stamps:
        return default
    return max(_as_utc(s) for s in stamps)


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def emit(mappings: Sequence[NodeMetricMapping], values: Sequence[Optional[NodeValue]], accumulator: Accumulator,
         timestamp: datetime.datetime, timestamp_source: str = "gather") -> int:
    """
    Send one measurement per metric name with the fields of all its readable nodes.

    Nodes without a value contribute nothing and a metric name with no
    readable node is skipped. Tags are merged in mapping order, so the last
    node wins a disagreement. Returns the number of measurements emitted.
    """
    grouped: Dict[str, Dict[str, Any]] = {}
    for mapping, value in zip(mappings, values):
        if value is None or not value.ok:
            continue
        entry = grouped.setdefault(mapping.metric_name, {"fields": {}, "tags": {}, "values": []})
        entry["fields"][mapping.field_name] = value.value
        entry["tags"].update(mapping.metric_tags)
        entry["values"].append(value)

    for metric_name, entry in grouped.items():
        metric_time = _pick_timestamp(entry["values"], timestamp_source, timestamp)
        accumulator.add_fields(metric_name, entry["fields"], entry["tags"], metric_time)
    return len(grouped)
