"""Keeps the Top SQL store informed about the cluster topology."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from topsqlmon.model import TopologyInstance

log = logging.getLogger(__name__)

COMPONENT_TIDB = "tidb"
COMPONENT_TIKV = "tikv"
COMPONENT_PD = "pd"
COMPONENT_TIFLASH = "tiflash"


class _InstanceStore(Protocol):
    def instances(self, items: Iterable[TopologyInstance]) -> None: ...


@dataclass(frozen=True)
class Component:
    """A member of the cluster topology."""

    name: str
    ip: str = ""
    port: int = 0
    status_port: int = 0


class SubscriberController:
    """Tracks whether Top SQL is enabled and records the instances it should watch."""

    def __init__(self, store: _InstanceStore, enable_top_sql: bool = False) -> None:
        self.store = store
        self.enable_top_sql = enable_top_sql
        self.components: list[Component] = []

    def name(self) -> str:
        return "Top SQL"

    def is_enabled(self) -> bool:
        return self.enable_top_sql

    def update_pd_variable(self, enable_top_sql: bool) -> None:
        self.enable_top_sql = enable_top_sql

    def update_topology(self, components: Iterable[Component]) -> None:
        """Replace the known topology and, when enabled, store the instances it holds."""
        self.components = list(components)
        if self.enable_top_sql:
            try:
                self.store_topology(int(time.time()))
            except Exception as exc:  # a failed write must not stop topology updates
                log.warning("failed to store topology: %s", exc)

    def store_topology(self, now: int | None = None) -> None:
        """Write the TiDB and TiKV instances of the topology, stamped at `now` seconds."""
        if not self.components:
            return
        if now is None:
            now = int(time.time())
        items = []
        for component in self.components:
            if component.name == COMPONENT_TIDB:
                items.append(TopologyInstance(f"{component.ip}:{component.status_port}", COMPONENT_TIDB, now))
            elif component.name == COMPONENT_TIKV:
                items.append(TopologyInstance(f"{component.ip}:{component.port}", COMPONENT_TIKV, now))
        self.store.instances(items)