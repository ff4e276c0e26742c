"""HTTP-style request handling for the Top SQL query API."""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Callable, Mapping
from functools import partial
from typing import Any, Protocol

from topsqlmon.model import InstanceItem, MetricName, RecordItem, SummaryItem
from topsqlmon.query import QueryError

log = logging.getLogger(__name__)

_WEEK_SECS = 7 * 24 * 60 * 60
_DEFAULT_TOP = "-1"
_DEFAULT_WINDOW = "1m"
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

_METRIC_NAMES = (
    MetricName.CPU_TIME,
    MetricName.READ_ROW,
    MetricName.READ_INDEX,
    MetricName.WRITE_ROW,
    MetricName.WRITE_INDEX,
    MetricName.SQL_EXEC_COUNT,
    MetricName.SQL_DURATION_SUM,
    MetricName.SQL_DURATION_COUNT,
)

_UNIT_NS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")
_INTEGER = re.compile(r"[+-]?[0-9]+")


class ParamError(ValueError):
    """Raised when a request parameter is missing or malformed."""


class _Query(Protocol):
    def records(
        self, name: str, start_secs: int, end_secs: int, window_secs: int, top: int, instance: str, instance_type: str
    ) -> list[RecordItem]: ...

    def summary(
        self, start_secs: int, end_secs: int, window_secs: int, top: int, instance: str, instance_type: str
    ) -> list[SummaryItem]: ...

    def instances(self, start_secs: int, end_secs: int) -> list[InstanceItem]: ...


def parse_duration(text: str) -> float:
    """Parse a duration such as "1m", "1h30m" or "1.5s" into seconds."""
    rest = text
    sign = 1
    if rest and rest[0] in "+-":
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ParamError(f'time: invalid duration "{text}"')

    total_ns = 0
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        whole, frac, unit = match.group(1), match.group(2) or "", match.group(3)
        if not whole and not frac:
            raise ParamError(f'time: invalid duration "{text}"')
        if not unit:
            raise ParamError(f'time: missing unit in duration "{text}"')
        scale = _UNIT_NS.get(unit)
        if scale is None:
            raise ParamError(f'time: unknown unit "{unit}" in duration "{text}"')
        total_ns += int(whole or "0") * scale
        if frac:
            total_ns += int(frac) * scale // 10 ** len(frac)
        if total_ns > _INT64_MAX:
            raise ParamError(f'time: invalid duration "{text}"')
        pos = match.end()
    return sign * total_ns / 1e9


def _param(params: Mapping[str, str], key: str, default: str) -> str:
    return params.get(key) or default


def _parse_float(raw: str) -> float:
    error = ParamError(f'strconv.ParseFloat: parsing "{raw}": invalid syntax')
    if raw != raw.strip() or "_" in raw:
        raise error
    try:
        value = float(raw)
    except ValueError:
        raise error from None
    if not math.isfinite(value):
        raise error
    return value


def _parse_int(raw: str) -> int:
    if not _INTEGER.fullmatch(raw):
        raise ParamError(f'strconv.ParseInt: parsing "{raw}": invalid syntax')
    value = int(raw)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ParamError(f'strconv.ParseInt: parsing "{raw}": value out of range')
    return value


def parse_start_end(params: Mapping[str, str], now: int) -> tuple[int, int]:
    """Start and end in seconds; they default to two weeks ago and now."""
    start = _parse_float(_param(params, "start", str(now - 2 * _WEEK_SECS)))
    end = _parse_float(_param(params, "end", str(now)))
    return int(start), int(end)


def parse_all_params(params: Mapping[str, str], now: int) -> tuple[int, int, int, int, str, str]:
    """Return (start, end, window_secs, top, instance, instance_type) from query parameters."""
    instance = params.get("instance", "")
    if not instance:
        raise ParamError("no instance")
    instance_type = params.get("instance_type", "")
    if not instance_type:
        raise ParamError("no instance_type")

    start, end = parse_start_end(params, now)
    top = _parse_int(_param(params, "top", _DEFAULT_TOP))
    window_secs = int(parse_duration(_param(params, "window", _DEFAULT_WINDOW)))
    return start, end, window_secs, top, instance, instance_type


def _error(exc: Exception) -> dict[str, Any]:
    return {"status": "error", "message": str(exc)}


class Service:
    """Routes API paths to a query backend and shapes JSON-ready answers."""

    def __init__(self, query: _Query, clock: Callable[[], float] = time.time) -> None:
        self._query = query
        self._clock = clock
        handlers: dict[str, Callable[[Mapping[str, str]], list[dict[str, Any]]]] = {
            "/v1/instances": self._instances
        }
        for name in _METRIC_NAMES:
            handlers[f"/v1/{name.value}"] = partial(self._records, name.value)
        handlers["/v1/summary"] = self._summary
        self._handlers = handlers

    def routes(self) -> list[str]:
        """Paths this service answers."""
        return list(self._handlers)

    def handle(self, path: str, params: Mapping[str, str]) -> tuple[int, dict[str, Any]]:
        """Answer a GET on `path` with the given query parameters as (status, body)."""
        handler = self._handlers.get(path)
        if handler is None:
            return 404, {"status": "error", "message": "404 page not found"}
        try:
            data = handler(params)
        except ParamError as exc:
            return 400, _error(exc)
        except QueryError as exc:
            return 503, _error(exc)
        return 200, {"status": "ok", "data": data}

    def _now(self) -> int:
        return int(self._clock())

    def _instances(self, params: Mapping[str, str]) -> list[dict[str, Any]]:
        start, end = parse_start_end(params, self._now())
        return [item.to_dict() for item in self._query.instances(start, end)]

    def _records(self, name: str, params: Mapping[str, str]) -> list[dict[str, Any]]:
        start, end, window_secs, top, instance, instance_type = parse_all_params(params, self._now())
        items = self._query.records(name, start, end, window_secs, top, instance, instance_type)
        return [item.to_dict() for item in items]

    def _summary(self, params: Mapping[str, str]) -> list[dict[str, Any]]:
        start, end, window_secs, top, instance, instance_type = parse_all_params(params, self._now())
        items = self._query.summary(start, end, window_secs, top, instance, instance_type)
        return [item.to_dict() for item in items]