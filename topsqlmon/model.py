"""Data shapes shared by the Top SQL store, query and service layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MetricName(str, Enum):
    """Names of the time series written to and read from the time-series database."""

    INSTANCE = "instance"
    CPU_TIME = "cpu_time"
    READ_ROW = "read_row"
    READ_INDEX = "read_index"
    WRITE_ROW = "write_row"
    WRITE_INDEX = "write_index"
    SQL_EXEC_COUNT = "sql_exec_count"
    SQL_DURATION_SUM = "sql_duration_sum"
    SQL_DURATION_COUNT = "sql_duration_count"

    def __str__(self) -> str:
        return self.value


@dataclass
class TSDBRequest:
    """A request handed to a time-series database handler."""

    method: str
    path: str
    params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class TSDBResponse:
    """The answer of a time-series database handler."""

    status: int
    body: bytes = b""

    def ok(self) -> bool:
        """True for a 2xx status."""
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class RecordKey:
    sql_digest: str
    plan_digest: str


_RECORD_SERIES = (
    "cpu_time_ms",
    "read_rows",
    "read_indexes",
    "write_rows",
    "write_indexes",
    "sql_exec_count",
    "sql_duration_sum",
    "sql_duration_count",
)


@dataclass
class RecordPlanItem:
    plan_digest: str = ""
    plan_text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    read_rows: list[int] = field(default_factory=list)
    read_indexes: list[int] = field(default_factory=list)
    write_rows: list[int] = field(default_factory=list)
    write_indexes: list[int] = field(default_factory=list)
    sql_exec_count: list[int] = field(default_factory=list)
    sql_duration_sum: list[int] = field(default_factory=list)
    sql_duration_count: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form; empty value series are left out."""
        result: dict[str, Any] = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        for name in _RECORD_SERIES:
            values = getattr(self, name)
            if values:
                result[name] = list(values)
        return result


@dataclass
class RecordItem:
    sql_digest: str = ""
    sql_text: str = ""
    is_other: bool = False
    plans: list[RecordPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "is_other": self.is_other,
            "plans": [plan.to_dict() for plan in self.plans],
        }


@dataclass
class SummaryPlanItem:
    plan_digest: str = ""
    plan_text: str = ""
    timestamp_sec: list[int] = field(default_factory=list)
    cpu_time_ms: list[int] = field(default_factory=list)
    exec_count_per_sec: float = 0.0
    duration_per_exec_ms: float = 0.0
    scan_records_per_sec: float = 0.0
    scan_indexes_per_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form; an empty CPU series is left out."""
        result: dict[str, Any] = {
            "plan_digest": self.plan_digest,
            "plan_text": self.plan_text,
            "timestamp_sec": list(self.timestamp_sec),
        }
        if self.cpu_time_ms:
            result["cpu_time_ms"] = list(self.cpu_time_ms)
        result["exec_count_per_sec"] = self.exec_count_per_sec
        result["duration_per_exec_ms"] = self.duration_per_exec_ms
        result["scan_records_per_sec"] = self.scan_records_per_sec
        result["scan_indexes_per_sec"] = self.scan_indexes_per_sec
        return result


@dataclass
class SummaryItem:
    sql_digest: str = ""
    sql_text: str = ""
    is_other: bool = False
    cpu_time_ms: int = 0
    exec_count_per_sec: float = 0.0
    duration_per_exec_ms: float = 0.0
    scan_records_per_sec: float = 0.0
    scan_indexes_per_sec: float = 0.0
    plans: list[SummaryPlanItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sql_digest": self.sql_digest,
            "sql_text": self.sql_text,
            "is_other": self.is_other,
            "cpu_time_ms": self.cpu_time_ms,
            "exec_count_per_sec": self.exec_count_per_sec,
            "duration_per_exec_ms": self.duration_per_exec_ms,
            "scan_records_per_sec": self.scan_records_per_sec,
            "scan_indexes_per_sec": self.scan_indexes_per_sec,
            "plans": [plan.to_dict() for plan in self.plans],
        }


@dataclass(frozen=True)
class InstanceItem:
    """An instance as reported by a query."""

    instance: str
    instance_type: str

    def to_dict(self) -> dict[str, str]:
        return {"instance": self.instance, "instance_type": self.instance_type}


@dataclass(frozen=True)
class TopologyInstance:
    """An instance seen in the cluster topology at a given second."""

    instance: str
    instance_type: str
    timestamp_sec: int


@dataclass
class Metric:
    """One time series in the import format of the time-series database."""

    metric: dict[str, str]
    timestamps: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": dict(self.metric),
            "timestamps": list(self.timestamps),
            "values": list(self.values),
        }