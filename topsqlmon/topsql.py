"""Wiring of the Top SQL store, query, topology controller and API service."""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Mapping
from typing import Any

from topsqlmon.query import DefaultQuery, PlanDecoder, SelectHandler
from topsqlmon.service import Service
from topsqlmon.store import DefaultStore, InsertHandler
from topsqlmon.subscriber import SubscriberController


class TopSQL:
    """The Top SQL component: stores records, answers queries and tracks topology."""

    def __init__(
        self,
        insert_handler: InsertHandler,
        select_handler: SelectHandler | None,
        document_db: sqlite3.Connection,
        *,
        plan_decoder: PlanDecoder | None = None,
        enable_top_sql: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = DefaultStore(insert_handler, document_db)
        self.query = DefaultQuery(select_handler, document_db, plan_decoder)
        self.controller = SubscriberController(self.store, enable_top_sql)
        self.service = Service(self.query, clock)

    def handle(self, path: str, params: Mapping[str, str]) -> tuple[int, dict[str, Any]]:
        """Answer an API request as (status, body)."""
        return self.service.handle(path, params)

    def stop(self) -> None:
        self.query.close()
        self.store.close()

    def __enter__(self) -> TopSQL:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()