"""
domain — Supply-chain domain backend (the service actions operate on).
"""

from domain.backend import DomainBackend, InMemoryDomainBackend
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

__all__ = [
    "Alert",
    "AlertStatus",
    "DomainBackend",
    "InMemoryDomainBackend",
    "Link",
    "NetworkConfig",
    "NetworkSummary",
    "Node",
    "NodeStatus",
    "NodeType",
    "Severity",
    "SimulationRun",
]
