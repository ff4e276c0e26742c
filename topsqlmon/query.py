"""Reading Top SQL series back from the time-series database."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from topsqlmon.model import (
    InstanceItem,
    MetricName,
    RecordItem,
    RecordKey,
    RecordPlanItem,
    SummaryItem,
    SummaryPlanItem,
    TSDBRequest,
    TSDBResponse,
)

log = logging.getLogger(__name__)

SelectHandler = Callable[[TSDBRequest], TSDBResponse]
PlanDecoder = Callable[[str], str]

_UINT64_MAX = (1 << 64) - 1
_UNSIGNED = re.compile(r"[0-9]+")
_QUERY_RANGE_PATH = "/api/v1/query_range"
_QUERY_PATH = "/api/v1/query"

_SERIES_FIELD = {
    MetricName.CPU_TIME.value: "cpu_time_ms",
    MetricName.READ_ROW.value: "read_rows",
    MetricName.READ_INDEX.value: "read_indexes",
    MetricName.WRITE_ROW.value: "write_rows",
    MetricName.WRITE_INDEX.value: "write_indexes",
    MetricName.SQL_EXEC_COUNT.value: "sql_exec_count",
    MetricName.SQL_DURATION_SUM.value: "sql_duration_sum",
    MetricName.SQL_DURATION_COUNT.value: "sql_duration_count",
}


class QueryError(Exception):
    """Raised when the time-series database cannot answer a query."""


@dataclass
class PlanSeries:
    plan_digest: str = ""
    timestamp_secs: list[int] = field(default_factory=list)
    values: list[int] = field(default_factory=list)


@dataclass
class SQLGroup:
    sql_digest: str = ""
    plan_series: list[PlanSeries] = field(default_factory=list)
    value_sum: int = 0


def _parse_point(point: Any) -> tuple[int, int] | None:
    if not isinstance(point, (list, tuple)) or len(point) != 2:
        return None
    raw_ts, raw_value = point
    try:
        ts = int(float(raw_ts))
    except (TypeError, ValueError):
        return None
    if not isinstance(raw_value, str) or not _UNSIGNED.fullmatch(raw_value):
        return None
    value = int(raw_value)
    if value > _UINT64_MAX:
        return None
    return ts, value


def group_by_sql_digest(results: Iterable[dict[str, Any]]) -> tuple[list[SQLGroup], SQLGroup]:
    """Group series by SQL digest, then plan digest.

    The empty SQL digest stands for points evicted during collection; that
    group is returned separately as the second element.
    """
    groups: dict[str, SQLGroup] = {}
    for result in results:
        metric = result.get("metric") or {}
        sql_digest = metric.get("sql_digest", "") or ""
        plan_digest = metric.get("plan_digest", "") or ""

        group = groups.setdefault(sql_digest, SQLGroup(sql_digest))
        series = next((s for s in group.plan_series if s.plan_digest == plan_digest), None)
        if series is None:
            series = PlanSeries(plan_digest)
            group.plan_series.append(series)

        for point in result.get("values") or ():
            parsed = _parse_point(point)
            if parsed is None:
                continue
            ts, value = parsed
            group.value_sum = (group.value_sum + value) & _UINT64_MAX
            series.timestamp_secs.append(ts)
            series.values.append(value)

    others = groups.pop("", SQLGroup())
    return list(groups.values()), others


def keep_top_k(groups: Sequence[SQLGroup], top: int) -> tuple[list[SQLGroup], list[SQLGroup]]:
    """Split groups into the `top` largest by value sum and the rest."""
    groups = list(groups)
    if top <= 0 or len(groups) <= top:
        return groups, []
    ranked = sorted(groups, key=lambda g: (g.value_sum, g.sql_digest), reverse=True)
    return ranked[:top], ranked[top:]


def merge_others(original_others: SQLGroup, query_others: Iterable[SQLGroup]) -> SQLGroup:
    """Fold evicted groups into one series, summing values that share a timestamp."""
    query_others = list(query_others)
    if not query_others:
        return original_others

    points = sorted(
        (
            (ts, value)
            for group in (original_others, *query_others)
            for series in group.plan_series
            for ts, value in zip(series.timestamp_secs, series.values)
        ),
        key=lambda point: point[0],
    )
    merged = PlanSeries()
    for ts, value in points:
        if merged.timestamp_secs and merged.timestamp_secs[-1] == ts:
            merged.values[-1] = (merged.values[-1] + value) & _UINT64_MAX
        else:
            merged.timestamp_secs.append(ts)
            merged.values.append(value)
    return SQLGroup(plan_series=[merged])


def top_k(results: Iterable[dict[str, Any]], top: int) -> list[SQLGroup]:
    """Keep the top groups and append a merged 'others' group when it has data."""
    groups, original_others = group_by_sql_digest(results)
    kept, query_others = keep_top_k(groups, top)
    others = merge_others(original_others, query_others)
    if others.plan_series:
        kept.append(others)
    return kept


def _set_rates(
    target: SummaryItem | SummaryPlanItem,
    duration_ns: float,
    duration_count: float,
    exec_count: float,
    read_rows: float,
    read_indexes: float,
    range_secs: float,
) -> None:
    target.duration_per_exec_ms = 0.0 if duration_count == 0.0 else duration_ns / 1_000_000.0 / duration_count
    target.exec_count_per_sec = exec_count / range_secs
    target.scan_records_per_sec = read_rows / range_secs
    target.scan_indexes_per_sec = read_indexes / range_secs


def _aligned_start(start_secs: int, end_secs: int, window_secs: int) -> int:
    if window_secs <= 0:
        raise QueryError("window must be positive")
    return end_secs - (end_secs - start_secs) // window_secs * window_secs


class DefaultQuery:
    """Answers Top SQL queries from a select handler and a SQLite document database."""

    def __init__(
        self,
        select_handler: SelectHandler | None,
        document_db: sqlite3.Connection,
        plan_decoder: PlanDecoder | None = None,
    ) -> None:
        self._select_handler = select_handler
        self._db = document_db
        self._plan_decoder = plan_decoder

    def records(
        self,
        name: str,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[RecordItem]:
        """Per-SQL, per-plan series of one metric, summed over windows aligned to the end."""
        if start_secs > end_secs:
            return []
        start_secs = _aligned_start(start_secs, end_secs, window_secs)
        results = self._fetch_records(str(name), start_secs, end_secs, window_secs, instance, instance_type)
        if not results:
            return []
        return self._fill_text(str(name), top_k(results, top))

    def summary(
        self,
        start_secs: int,
        end_secs: int,
        window_secs: int,
        top: int,
        instance: str,
        instance_type: str,
    ) -> list[SummaryItem]:
        """CPU series of the top SQLs with per-second and per-execution rates."""
        if start_secs > end_secs:
            return []
        aligned_start = _aligned_start(start_secs, end_secs, window_secs)
        cpu_name = MetricName.CPU_TIME.value
        results = self._fetch_records(cpu_name, aligned_start, end_secs, window_secs, instance, instance_type)
        if not results:
            return []

        items = [self._to_summary(record) for record in self._fill_text(cpu_name, top_k(results, top))]

        range_secs = float(end_secs - start_secs + 1)

        def sums(metric: MetricName) -> dict[RecordKey, float]:
            return self._fetch_sums(metric.value, start_secs, end_secs, instance, instance_type)

        durations = sums(MetricName.SQL_DURATION_SUM)
        duration_counts = sums(MetricName.SQL_DURATION_COUNT)
        exec_counts = sums(MetricName.SQL_EXEC_COUNT)
        read_rows = sums(MetricName.READ_ROW)
        read_indexes = sums(MetricName.READ_INDEX)
        tables = (durations, duration_counts, exec_counts, read_rows, read_indexes)

        others_item: SummaryItem | None = None
        for item in items:
            if item.is_other:
                if not item.plans:
                    item.plans.append(SummaryPlanItem())
                others_item = item
                continue

            totals = [0.0] * len(tables)
            for plan in item.plans:
                key = RecordKey(item.sql_digest, plan.plan_digest)
                values = [table.pop(key, 0.0) for table in tables]
                _set_rates(plan, *values, range_secs)
                totals = [total + value for total, value in zip(totals, values)]
            _set_rates(item, *totals, range_secs)

        if others_item is not None:
            remaining = [sum(table.values()) for table in tables]
            _set_rates(others_item, *remaining, range_secs)
            _set_rates(others_item.plans[0], *remaining, range_secs)

        return items

    def instances(self, start_secs: int, end_secs: int) -> list[InstanceItem]:
        """Instances that reported at least once within [start_secs, end_secs]."""
        if start_secs > end_secs:
            return []
        payload = self._fetch(
            _QUERY_PATH,
            {
                "query": f"last_over_time(instance[{end_secs - start_secs + 1}s])",
                "time": str(end_secs),
                "nocache": "1",
            },
        )
        items = []
        for result in _results(payload):
            metric = result.get("metric") or {}
            items.append(InstanceItem(metric.get("instance", "") or "", metric.get("instance_type", "") or ""))
        return items

    def close(self) -> None:
        """Drop the select handler; later queries raise QueryError."""
        self._select_handler = None

    def _fetch(self, path: str, params: dict[str, str]) -> Any:
        if self._select_handler is None:
            raise QueryError("empty query handler")
        request = TSDBRequest("GET", path, params=params, headers={"Accept": "application/json"})
        response = self._select_handler(request)
        if not response.ok():
            log.warning("failed to fetch timeseries db: %s", response.text)
            raise QueryError(response.text)
        try:
            return json.loads(response.body)
        except ValueError as exc:
            raise QueryError(f"malformed response: {exc}") from exc

    def _fetch_records(
        self, name: str, start_secs: int, end_secs: int, window_secs: int, instance: str, instance_type: str
    ) -> list[dict[str, Any]]:
        payload = self._fetch(
            _QUERY_RANGE_PATH,
            {
                "query": f'sum_over_time({name}{{instance="{instance}", instance_type="{instance_type}"}}[{window_secs}])',
                "start": str(start_secs),
                "end": str(end_secs),
                "step": str(window_secs),
                "nocache": "1",
            },
        )
        return _results(payload)

    def _fetch_sums(
        self, name: str, start_secs: int, end_secs: int, instance: str, instance_type: str
    ) -> dict[RecordKey, float]:
        window = end_secs - start_secs + 1
        payload = self._fetch(
            _QUERY_PATH,
            {
                "query": f'sum_over_time({name}{{instance="{instance}", instance_type="{instance_type}"}}[{window}s])',
                "time": str(end_secs),
                "nocache": "1",
            },
        )
        sums: dict[RecordKey, float] = {}
        for result in _results(payload):
            value = result.get("value") or []
            if len(value) < 2 or not isinstance(value[1], str):
                continue
            try:
                total = float(value[1])
            except ValueError:
                continue
            metric = result.get("metric") or {}
            key = RecordKey(metric.get("sql_digest", "") or "", metric.get("plan_digest", "") or "")
            sums[key] = total
        return sums

    def _lookup(self, statement: str, digest: str) -> tuple[Any, ...] | None:
        try:
            return self._db.execute(statement, (digest,)).fetchone()
        except sqlite3.Error:
            return None

    def _plan_text(self, plan_digest: str) -> str:
        if not plan_digest:
            return ""
        row = self._lookup("SELECT plan_text, encoded_plan FROM plan_digest WHERE digest = ?", plan_digest)
        if row is None:
            return ""
        plan_text, encoded_plan = row[0] or "", row[1] or ""
        if plan_text:
            return plan_text
        if encoded_plan and self._plan_decoder is not None:
            try:
                return self._plan_decoder(encoded_plan)
            except Exception as exc:  # a bad plan must not fail the whole query
                log.warning("failed to decode plan %r: %s", encoded_plan, exc)
        return ""

    def _fill_text(self, name: str, groups: Iterable[SQLGroup]) -> list[RecordItem]:
        series_field = _SERIES_FIELD.get(name)
        items = []
        for group in groups:
            sql_text = ""
            if group.sql_digest:
                row = self._lookup("SELECT sql_text FROM sql_digest WHERE digest = ?", group.sql_digest)
                if row is not None:
                    sql_text = row[0] or ""

            item = RecordItem(group.sql_digest, sql_text, not group.sql_digest)
            for series in group.plan_series:
                plan = RecordPlanItem(
                    plan_digest=series.plan_digest,
                    plan_text=self._plan_text(series.plan_digest),
                    timestamp_sec=list(series.timestamp_secs),
                )
                if series_field is not None:
                    setattr(plan, series_field, list(series.values))
                item.plans.append(plan)
            items.append(item)
        return items

    @staticmethod
    def _to_summary(record: RecordItem) -> SummaryItem:
        item = SummaryItem(record.sql_digest, record.sql_text, record.is_other)
        for plan in record.plans:
            item.plans.append(
                SummaryPlanItem(
                    plan_digest=plan.plan_digest,
                    plan_text=plan.plan_text,
                    timestamp_sec=list(plan.timestamp_sec),
                    cpu_time_ms=list(plan.cpu_time_ms),
                )
            )
            item.cpu_time_ms += sum(plan.cpu_time_ms)
        return item


def _results(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        raise QueryError("malformed response")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise QueryError("malformed response")
    return [result for result in data.get("result") or () if isinstance(result, dict)]