"""
domain/backend.py — Domain backend interface + in-memory implementation

Actions never touch storage directly: every state change goes through a
DomainBackend. The orchestrator treats each call as an opaque, possibly
slow, possibly failing RPC.

Alerts are raised by the backend itself: a node turning degraded or
inactive, and every high-severity simulation, open one. Network
configuration (region, industry, currency, shipping, risk profile) is a
single record per backend.

Two implementations ship:
  - InMemoryDomainBackend : process-local network, used by default and in tests
  - HttpDomainBackend     : REST client over httpx (domain/http_backend.py)
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from domain.models import (
    Alert,
    AlertStatus,
    Link,
    NetworkConfig,
    NetworkSummary,
    Node,
    NodeStatus,
    NodeType,
    Severity,
    SimulationRun,
)
from exceptions import DomainConflictError, DomainNotFoundError
from observability.logger import get_logger

log = get_logger(__name__)

_SEVERITY_FACTOR = {
    Severity.LOW: 0.1,
    Severity.MEDIUM: 0.3,
    Severity.HIGH: 0.6,
}

_STATUS_ALERTS = {
    NodeStatus.DEGRADED: Severity.MEDIUM,
    NodeStatus.INACTIVE: Severity.HIGH,
}


class DomainBackend(ABC):
    """Operations the supply-chain actions need from the domain service."""

    @abstractmethod
    async def add_node(
        self,
        node_type: NodeType,
        location: str,
        capacity: float,
        name: Optional[str] = None,
    ) -> Node: ...

    @abstractmethod
    async def get_node(self, node_id: str) -> Node:
        """Raises DomainNotFoundError for unknown ids."""

    @abstractmethod
    async def list_nodes(self) -> list[Node]: ...

    @abstractmethod
    async def update_node(self, node_id: str, **changes) -> Node: ...

    @abstractmethod
    async def remove_node(self, node_id: str) -> None: ...

    @abstractmethod
    async def connect(self, source: str, target: str, bidirectional: bool = False) -> Link: ...

    @abstractmethod
    async def disconnect(self, source: str, target: str) -> None: ...

    @abstractmethod
    async def run_simulation(
        self,
        kind: str,
        severity: Severity,
        duration_days: int,
        affected: Optional[list[str]] = None,
    ) -> SimulationRun: ...

    @abstractmethod
    async def list_links(self) -> list[Link]: ...

    @abstractmethod
    async def summary(self) -> NetworkSummary: ...

    @abstractmethod
    async def list_alerts(
        self,
        status: AlertStatus = AlertStatus.ACTIVE,
        limit: int = 10,
    ) -> list[Alert]:
        """Most recent first."""

    @abstractmethod
    async def get_config(self) -> NetworkConfig: ...

    @abstractmethod
    async def update_config(self, **changes) -> NetworkConfig:
        """Apply the non-None changes and return the stored config."""

    async def close(self) -> None:
        """Release any held resources (HTTP pools etc.)."""


# ─────────────────────────────────────────────────────────────────────────────
# In-memory implementation
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryDomainBackend(DomainBackend):
    """
    Process-local supply-chain network.

    Node ids are `{type}-{n}` with a per-type counter, e.g. `supplier-1`.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._links: list[Link] = []
        self._simulations: list[SimulationRun] = []
        self._alerts: list[Alert] = []
        self._config = NetworkConfig()
        self._counters: dict[NodeType, int] = {}
        self._lock = asyncio.Lock()

    async def add_node(
        self,
        node_type: NodeType,
        location: str,
        capacity: float,
        name: Optional[str] = None,
    ) -> Node:
        async with self._lock:
            n = self._counters.get(node_type, 0) + 1
            self._counters[node_type] = n
            node_id = f"{node_type.value}-{n}"
            node = Node(
                id=node_id,
                type=node_type,
                name=name or f"{node_type.value.title()} {location}",
                location=location,
                capacity=capacity,
            )
            self._nodes[node_id] = node
        log.info("domain.node_added", node_id=node_id, type=node_type.value)
        return node

    async def get_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise DomainNotFoundError(f"Node with ID {node_id} not found.")
        return node

    async def list_nodes(self) -> list[Node]:
        return list(self._nodes.values())

    async def update_node(self, node_id: str, **changes) -> Node:
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise DomainConflictError(
                "No updates provided. Please specify at least one property to update."
            )
        async with self._lock:
            node = await self.get_node(node_id)
            if "status" in changes:
                changes["status"] = NodeStatus(changes["status"])
            updated = node.model_copy(update=changes)
            self._nodes[node_id] = updated
            if updated.status is not node.status and updated.status in _STATUS_ALERTS:
                self._raise_alert(
                    _STATUS_ALERTS[updated.status],
                    f"{node_id} is {updated.status.value}",
                    f"{updated.name} in {updated.location} changed from "
                    f"{node.status.value} to {updated.status.value}.",
                    node_id=node_id,
                )
        return updated

    async def remove_node(self, node_id: str) -> None:
        async with self._lock:
            await self.get_node(node_id)
            del self._nodes[node_id]
            self._links = [
                link for link in self._links
                if link.source != node_id and link.target != node_id
            ]
        log.info("domain.node_removed", node_id=node_id)

    async def connect(self, source: str, target: str, bidirectional: bool = False) -> Link:
        if source == target:
            raise DomainConflictError("Cannot connect a node to itself.")
        async with self._lock:
            if source not in self._nodes:
                raise DomainNotFoundError(f"Source node with ID {source} not found.")
            if target not in self._nodes:
                raise DomainNotFoundError(f"Target node with ID {target} not found.")
            if any(link.joins(source, target) for link in self._links):
                raise DomainConflictError("Connection already exists between these nodes.")
            link = Link(source=source, target=target, bidirectional=bidirectional)
            self._links.append(link)
        return link

    async def disconnect(self, source: str, target: str) -> None:
        async with self._lock:
            if source not in self._nodes:
                raise DomainNotFoundError(f"Source node with ID {source} not found.")
            if target not in self._nodes:
                raise DomainNotFoundError(f"Target node with ID {target} not found.")
            before = len(self._links)
            self._links = [link for link in self._links if not link.joins(source, target)]
            if len(self._links) == before:
                raise DomainConflictError("No connection exists between these nodes.")

    async def run_simulation(
        self,
        kind: str,
        severity: Severity,
        duration_days: int,
        affected: Optional[list[str]] = None,
    ) -> SimulationRun:
        if not self._nodes:
            raise DomainConflictError(
                "No nodes available to simulate. Please add nodes to your supply chain first."
            )
        targets = affected or list(self._nodes)
        unknown = [n for n in targets if n not in self._nodes]
        if unknown:
            raise DomainNotFoundError(f"Node with ID {unknown[0]} not found.")

        factor = _SEVERITY_FACTOR[severity]
        lost = sum(self._nodes[n].capacity for n in targets) * factor
        run = SimulationRun(
            id=f"sim-{uuid.uuid4().hex[:6]}",
            kind=kind,
            severity=severity,
            duration_days=duration_days,
            affected_nodes=targets,
            impact={
                "capacity_lost": round(lost, 2),
                "estimated_delay_days": round(duration_days * factor, 1),
                "nodes_affected": len(targets),
            },
        )
        async with self._lock:
            self._simulations.append(run)
            if severity is Severity.HIGH:
                self._raise_alert(
                    Severity.HIGH,
                    f"High-severity {kind.replace('_', ' ')} simulated",
                    f"Simulation {run.id} affects {len(targets)} node(s) for {duration_days} days.",
                )
        log.info("domain.simulation_run", simulation_id=run.id, kind=kind)
        return run

    async def summary(self) -> NetworkSummary:
        by_type: dict[str, int] = {}
        for node in self._nodes.values():
            by_type[node.type.value] = by_type.get(node.type.value, 0) + 1
        return NetworkSummary(
            node_count=len(self._nodes),
            link_count=len(self._links),
            by_type=by_type,
            total_capacity=sum(n.capacity for n in self._nodes.values()),
            simulations_run=len(self._simulations),
        )

    async def list_links(self) -> list[Link]:
        return list(self._links)

    # ── Alerts ────────────────────────────────────────────────────────────────

    def _raise_alert(
        self,
        severity: Severity,
        title: str,
        message: str = "",
        node_id: Optional[str] = None,
    ) -> Alert:
        alert = Alert(
            id=f"alert-{len(self._alerts) + 1}",
            severity=severity,
            title=title,
            message=message,
            node_id=node_id,
        )
        self._alerts.append(alert)
        log.info("domain.alert_raised", alert_id=alert.id, severity=severity.value, node_id=node_id)
        return alert

    async def list_alerts(
        self,
        status: AlertStatus = AlertStatus.ACTIVE,
        limit: int = 10,
    ) -> list[Alert]:
        matching = [a for a in reversed(self._alerts) if a.status is status]
        return matching[:limit]

    # ── Configuration ─────────────────────────────────────────────────────────

    async def get_config(self) -> NetworkConfig:
        return self._config

    async def update_config(self, **changes) -> NetworkConfig:
        changes = {k: v for k, v in changes.items() if v is not None}
        unknown = set(changes) - set(NetworkConfig.model_fields)
        if unknown:
            raise DomainConflictError(f"Unknown configuration field: {sorted(unknown)[0]}")
        async with self._lock:
            self._config = self._config.model_copy(update=changes)
        log.info("domain.config_updated", fields=sorted(changes))
        return self._config
