"""
domain/models.py — Supply-chain domain models

Pydantic models exchanged between actions and the domain backend. The
HTTP backend parses service responses straight into these.

Node metrics (utilization, inventory) are optional: a node the service has
no telemetry for carries None, and the analysis actions skip those checks.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class NodeType(str, Enum):
    SUPPLIER     = "supplier"
    MANUFACTURER = "manufacturer"
    WAREHOUSE    = "warehouse"
    DISTRIBUTOR  = "distributor"
    RETAILER     = "retailer"


class NodeStatus(str, Enum):
    ACTIVE   = "active"
    INACTIVE = "inactive"
    DEGRADED = "degraded"


class Severity(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class Node(BaseModel):
    id: str
    type: NodeType
    name: str
    location: str
    capacity: float = 1000.0
    status: NodeStatus = NodeStatus.ACTIVE
    utilization: Optional[float] = Field(default=None, ge=0.0)     # fraction of capacity in use
    inventory: Optional[float] = Field(default=None, ge=0.0)       # units on hand
    created_at: float = Field(default_factory=time.time)


class AlertStatus(str, Enum):
    ACTIVE       = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"


class Link(BaseModel):
    source: str
    target: str
    bidirectional: bool = False

    def joins(self, a: str, b: str) -> bool:
        if self.source == a and self.target == b:
            return True
        return self.bidirectional and self.source == b and self.target == a


class SimulationRun(BaseModel):
    id: str
    kind: str
    severity: Severity
    duration_days: int
    affected_nodes: list[str] = Field(default_factory=list)
    impact: dict[str, Any] = Field(default_factory=dict)


class NetworkSummary(BaseModel):
    node_count: int = 0
    link_count: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    total_capacity: float = 0.0
    simulations_run: int = 0


class Alert(BaseModel):
    id: str
    severity: Severity
    title: str
    message: str = ""
    node_id: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: float = Field(default_factory=time.time)


# ─────────────────────────────────────────────────────────────────────────────
# Network configuration
# ─────────────────────────────────────────────────────────────────────────────

REGIONS = ("asia-pacific", "north-america", "europe", "latin-america", "middle-east")
INDUSTRIES = ("electronics", "automotive", "pharmaceuticals", "food-beverage", "fashion", "chemicals")
CURRENCIES = ("USD", "EUR", "GBP", "CNY", "JPY")
SHIPPING_METHODS = ("sea-freight", "air-freight", "rail", "truck", "express")
RISK_PROFILES = ("low", "medium", "high")


class NetworkConfig(BaseModel):
    region: Optional[str] = None
    industry: Optional[str] = None
    currency: str = "USD"
    shipping_methods: list[str] = Field(default_factory=list)
    risk_profile: str = "medium"
