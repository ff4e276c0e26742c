"""Writing Top SQL records to the time-series and document databases."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from topsqlmon.codec import TagLabel, decode_resource_group_tag
from topsqlmon.model import Metric, MetricName, TopologyInstance, TSDBRequest, TSDBResponse

log = logging.getLogger(__name__)

InsertHandler = Callable[[TSDBRequest], TSDBResponse]

_COMPONENT_TIKV = "tikv"
_IMPORT_PATH = "/api/v1/import"

_CREATE_TABLES = (
    "CREATE TABLE IF NOT EXISTS sql_digest "
    "(digest VARCHAR(255) PRIMARY KEY, sql_text TEXT, is_internal BOOLEAN)",
    "CREATE TABLE IF NOT EXISTS plan_digest "
    "(digest VARCHAR(255) PRIMARY KEY, plan_text TEXT, encoded_plan TEXT)",
)

_GO_JSON_ESCAPES = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "&": "\\u0026",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


@dataclass
class TopSQLRecordItem:
    timestamp_sec: int
    cpu_time_ms: int = 0
    stmt_exec_count: int = 0
    stmt_kv_exec_count: dict[str, int] = field(default_factory=dict)
    stmt_duration_sum_ns: int = 0
    stmt_duration_count: int = 0


@dataclass
class TopSQLRecord:
    sql_digest: bytes = b""
    plan_digest: bytes = b""
    items: list[TopSQLRecordItem] = field(default_factory=list)


@dataclass
class SQLMeta:
    sql_digest: bytes
    normalized_sql: str = ""
    is_internal_sql: bool = False


@dataclass
class PlanMeta:
    plan_digest: bytes
    normalized_plan: str = ""
    encoded_normalized_plan: str = ""


@dataclass
class GroupTagRecordItem:
    timestamp_sec: int
    cpu_time_ms: int = 0
    read_keys: int = 0
    write_keys: int = 0


@dataclass
class ResourceUsageRecord:
    resource_group_tag: bytes = b""
    items: list[GroupTagRecordItem] = field(default_factory=list)


def _record_metric(
    name: MetricName, instance: str, instance_type: str, sql_digest: str, plan_digest: str
) -> Metric:
    return Metric(
        {
            "__name__": name.value,
            "instance": instance,
            "instance_type": instance_type,
            "sql_digest": sql_digest,
            "plan_digest": plan_digest,
        }
    )


def _append(metric: Metric, timestamp_ms: int, value: int) -> None:
    metric.timestamps.append(timestamp_ms)
    metric.values.append(value)


def instances_to_metrics(items: Iterable[TopologyInstance]) -> list[Metric]:
    """One single-point series per instance seen in the topology."""
    return [
        Metric(
            {
                "__name__": MetricName.INSTANCE.value,
                "instance": item.instance,
                "instance_type": item.instance_type,
            },
            [item.timestamp_sec * 1000],
            [1],
        )
        for item in items
    ]


def topsql_record_to_metrics(instance: str, instance_type: str, record: TopSQLRecord) -> list[Metric]:
    """Series for CPU time, executions and durations, plus per-storage execution counts."""
    sql_digest = record.sql_digest.hex()
    plan_digest = record.plan_digest.hex()

    def make(name: MetricName, target: str = instance, target_type: str = instance_type) -> Metric:
        return _record_metric(name, target, target_type, sql_digest, plan_digest)

    cpu = make(MetricName.CPU_TIME)
    exec_count = make(MetricName.SQL_EXEC_COUNT)
    duration_sum = make(MetricName.SQL_DURATION_SUM)
    duration_count = make(MetricName.SQL_DURATION_COUNT)
    kv_exec_count: dict[str, Metric] = {}

    for item in record.items:
        ts_ms = item.timestamp_sec * 1000
        _append(cpu, ts_ms, item.cpu_time_ms)
        _append(exec_count, ts_ms, item.stmt_exec_count)
        _append(duration_sum, ts_ms, item.stmt_duration_sum_ns)
        _append(duration_count, ts_ms, item.stmt_duration_count)
        for target, count in item.stmt_kv_exec_count.items():
            metric = kv_exec_count.get(target)
            if metric is None:
                metric = kv_exec_count[target] = make(MetricName.SQL_EXEC_COUNT, target, _COMPONENT_TIKV)
            _append(metric, ts_ms, count)

    return [cpu, exec_count, duration_sum, duration_count, *kv_exec_count.values()]


def _split_keys(value: int, label: TagLabel | int | None) -> tuple[int, int]:
    if label == TagLabel.ROW:
        return value, 0
    if label == TagLabel.INDEX:
        return 0, value
    return 0, 0


def resource_metering_record_to_metrics(
    instance: str, instance_type: str, record: ResourceUsageRecord
) -> list[Metric]:
    """Series for CPU time and row/index reads and writes; raises DecodeError on a bad tag."""
    tag = decode_resource_group_tag(record.resource_group_tag)
    sql_digest = tag.sql_digest.hex()
    plan_digest = tag.plan_digest.hex()

    def make(name: MetricName) -> Metric:
        return _record_metric(name, instance, instance_type, sql_digest, plan_digest)

    cpu = make(MetricName.CPU_TIME)
    read_row = make(MetricName.READ_ROW)
    read_index = make(MetricName.READ_INDEX)
    write_row = make(MetricName.WRITE_ROW)
    write_index = make(MetricName.WRITE_INDEX)

    for item in record.items:
        ts_ms = item.timestamp_sec * 1000
        _append(cpu, ts_ms, item.cpu_time_ms)
        rows, indexes = _split_keys(item.read_keys, tag.label)
        _append(read_row, ts_ms, rows)
        _append(read_index, ts_ms, indexes)
        rows, indexes = _split_keys(item.write_keys, tag.label)
        _append(write_row, ts_ms, rows)
        _append(write_index, ts_ms, indexes)

    return [cpu, read_row, read_index, write_row, write_index]


def encode_metrics(metrics: Iterable[Metric]) -> bytes:
    """Newline-delimited JSON in the import format."""
    lines = (
        json.dumps(metric.to_dict(), separators=(",", ":"), ensure_ascii=False).translate(_GO_JSON_ESCAPES)
        + "\n"
        for metric in metrics
    )
    return "".join(lines).encode("utf-8")


class DefaultStore:
    """Stores series through an import handler and digest texts in a SQLite database."""

    def __init__(self, insert_handler: InsertHandler, document_db: sqlite3.Connection) -> None:
        self._insert_handler = insert_handler
        self._db = document_db
        self._closed = False
        with self._db:
            for statement in _CREATE_TABLES:
                self._db.execute(statement)

    def instances(self, items: Iterable[TopologyInstance]) -> None:
        self._write_timeseries(instances_to_metrics(items))

    def topsql_record(self, instance: str, instance_type: str, record: TopSQLRecord) -> None:
        self._write_timeseries(topsql_record_to_metrics(instance, instance_type, record))

    def resource_metering_record(self, instance: str, instance_type: str, record: ResourceUsageRecord) -> None:
        self._write_timeseries(resource_metering_record_to_metrics(instance, instance_type, record))

    def sql_meta(self, meta: SQLMeta) -> None:
        self._check_open()
        with self._db:
            self._db.execute(
                "INSERT OR REPLACE INTO sql_digest(digest, sql_text, is_internal) VALUES (?, ?, ?)",
                (meta.sql_digest.hex(), meta.normalized_sql, meta.is_internal_sql),
            )

    def plan_meta(self, meta: PlanMeta) -> None:
        self._check_open()
        with self._db:
            self._db.execute(
                "INSERT OR REPLACE INTO plan_digest(digest, plan_text, encoded_plan) VALUES (?, ?, ?)",
                (meta.plan_digest.hex(), meta.normalized_plan, meta.encoded_normalized_plan),
            )

    def close(self) -> None:
        """Stop accepting writes; the handler and database stay with the caller."""
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("store is closed")

    def _write_timeseries(self, metrics: list[Metric]) -> None:
        self._check_open()
        if not metrics:
            return
        request = TSDBRequest("POST", _IMPORT_PATH, body=encode_metrics(metrics))
        response = self._insert_handler(request)
        if not response.ok():
            log.warning("failed to write timeseries db: %s", response.text)