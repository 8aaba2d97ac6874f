"""
actions/builtin/analysis.py — Network analysis actions

Read-only checks over the current network: anomalies, risks, bottlenecks
and utilization. Each one pulls nodes, links (and alerts for risks) from
the domain backend and evaluates fixed thresholds locally.

Thresholds:
    utilization > 0.90           high utilization / capacity bottleneck
    utilization > 0.85           capacity constraint (risk)
    utilization > 0.70           utilization warning
    inventory   < 10% capacity   low inventory
    inventory   > 95% capacity   inventory bottleneck
    incoming > 5, outgoing < 2   single point of failure / connection bottleneck
    > 3 nodes in one location    geographic concentration

Nodes without telemetry (utilization / inventory = None) skip the metric
checks; structural checks still apply.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Optional

from actions.base import ActionBase
from actions.types import (
    ActionCategory,
    ActionContext,
    ActionDefinition,
    ExecutionResult,
    ParameterSpec,
    ParamType,
)
from domain.models import AlertStatus, Link, Node, NodeStatus, Severity

HIGH_UTILIZATION = 0.9
CONSTRAINED_UTILIZATION = 0.85
WARNING_UTILIZATION = 0.7
LOW_INVENTORY_RATIO = 0.1
FULL_INVENTORY_RATIO = 0.95
HUB_INCOMING = 5
HUB_OUTGOING = 2
CONCENTRATION_LIMIT = 3

NO_NODES_MESSAGE = "No nodes available to scan. Please add nodes to your supply chain first."

_NODE_IDS = ParameterSpec(
    "nodeIds", ParamType.ARRAY,
    description="Node IDs to check (defaults to the whole network)",
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def degrees(links: list[Link]) -> tuple[Counter, Counter]:
    """(incoming, outgoing) link counts per node id; bidirectional links count both ways."""
    incoming: Counter = Counter()
    outgoing: Counter = Counter()
    for link in links:
        outgoing[link.source] += 1
        incoming[link.target] += 1
        if link.bidirectional:
            outgoing[link.target] += 1
            incoming[link.source] += 1
    return incoming, outgoing


async def _select_nodes(context: ActionContext, node_ids: Optional[list]) -> list[Node]:
    """All nodes, or the requested subset. Raises KeyError naming the first unknown id."""
    nodes = await context.backend.list_nodes()
    if not node_ids:
        return nodes
    by_id = {n.id: n for n in nodes}
    wanted = [str(i) for i in node_ids]
    for node_id in wanted:
        if node_id not in by_id:
            raise KeyError(node_id)
    return [by_id[i] for i in wanted]


def _finding(node: Optional[Node], kind: str, severity: Severity, description: str) -> dict[str, Any]:
    return {
        "nodeId": node.id if node else None,
        "type": kind,
        "severity": severity.value,
        "description": description,
    }


def _count_by_severity(findings: list[dict[str, Any]]) -> dict[str, int]:
    counts = Counter(f["severity"] for f in findings)
    return {s.value: counts.get(s.value, 0) for s in Severity}


def _unknown_node(node_id: str) -> ExecutionResult:
    return ExecutionResult.fail(f"Node with ID {node_id} not found.", suggestions=("Show network summary",))


def _empty_network() -> ExecutionResult:
    return ExecutionResult.fail(NO_NODES_MESSAGE, suggestions=("Add a supplier", "Ask for help"))


# ─────────────────────────────────────────────────────────────────────────────
# Actions
# ─────────────────────────────────────────────────────────────────────────────

class ScanAnomaliesAction(ActionBase):
    definition = ActionDefinition(
        name="scan-anomalies",
        category=ActionCategory.ANALYZE,
        description="Scan nodes for anomalies: overload, low inventory, disconnection, degraded status",
        parameters=(_NODE_IDS,),
        examples=("Scan for anomalies", "Check warehouse-1 for anomalies"),
        suggestions=("Identify risks", "Find bottlenecks"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        try:
            nodes = await _select_nodes(context, params.get("nodeIds"))
        except KeyError as e:
            return _unknown_node(e.args[0])
        if not nodes:
            return _empty_network()

        incoming, outgoing = degrees(await context.backend.list_links())
        anomalies = []
        for node in nodes:
            if node.utilization is not None and node.utilization > HIGH_UTILIZATION:
                anomalies.append(_finding(
                    node, "high_utilization", Severity.HIGH,
                    f"{node.id} is running at {node.utilization:.0%} of capacity.",
                ))
            if node.inventory is not None and node.inventory < node.capacity * LOW_INVENTORY_RATIO:
                anomalies.append(_finding(
                    node, "low_inventory", Severity.MEDIUM,
                    f"{node.id} holds {node.inventory:g} units, under 10% of capacity.",
                ))
            if not incoming[node.id] and not outgoing[node.id]:
                anomalies.append(_finding(
                    node, "disconnected", Severity.MEDIUM,
                    f"{node.id} has no connections to the rest of the network.",
                ))
            if node.status is NodeStatus.DEGRADED:
                anomalies.append(_finding(node, "degraded", Severity.MEDIUM, f"{node.id} is degraded."))
            elif node.status is NodeStatus.INACTIVE:
                anomalies.append(_finding(node, "inactive", Severity.HIGH, f"{node.id} is inactive."))

        data = {
            "nodesScanned": len(nodes),
            "anomalies": anomalies,
            "bySeverity": _count_by_severity(anomalies),
        }
        if not anomalies:
            return ExecutionResult.ok(data=data, summary=f"Scanned {len(nodes)} node(s); no anomalies found.")
        return ExecutionResult.ok(
            data=data,
            summary=(
                f"Scanned {len(nodes)} node(s) and found {len(anomalies)} anomaly(ies): "
                + "; ".join(a["description"] for a in anomalies[:3])
                + ("" if len(anomalies) <= 3 else f" (and {len(anomalies) - 3} more)")
            ),
            suggestions=self.definition.suggestions,
        )


class IdentifyRisksAction(ActionBase):
    definition = ActionDefinition(
        name="identify-risks",
        category=ActionCategory.ANALYZE,
        description="Identify structural and operational risks across the network",
        examples=("Identify risks", "What are the risks in my supply chain?"),
        suggestions=("Run a simulation", "Find bottlenecks"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        nodes = await context.backend.list_nodes()
        if not nodes:
            return _empty_network()
        incoming, outgoing = degrees(await context.backend.list_links())

        risks = []
        for node in nodes:
            if incoming[node.id] > HUB_INCOMING and outgoing[node.id] < HUB_OUTGOING:
                risks.append(_finding(
                    node, "single_point_of_failure", Severity.HIGH,
                    f"{node.id} receives {incoming[node.id]} flows but feeds only {outgoing[node.id]}.",
                ))
            if node.utilization is not None and node.utilization > CONSTRAINED_UTILIZATION:
                risks.append(_finding(
                    node, "capacity_constraint", Severity.HIGH,
                    f"{node.id} has little spare capacity ({node.utilization:.0%} used).",
                ))

        by_location = Counter(n.location.strip().lower() for n in nodes)
        for location, count in sorted(by_location.items()):
            if count > CONCENTRATION_LIMIT:
                risks.append(_finding(
                    None, "geographic_concentration", Severity.MEDIUM,
                    f"{count} nodes are concentrated in {location.title()}.",
                ))

        for alert in await context.backend.list_alerts(AlertStatus.ACTIVE, limit=100):
            if alert.severity is Severity.HIGH:
                risks.append({
                    "nodeId": alert.node_id,
                    "type": "active_alert",
                    "severity": alert.severity.value,
                    "description": alert.title,
                })

        data = {"risks": risks, "bySeverity": _count_by_severity(risks)}
        if not risks:
            return ExecutionResult.ok(data=data, summary="No significant risks identified.")
        high = data["bySeverity"][Severity.HIGH.value]
        return ExecutionResult.ok(
            data=data,
            summary=f"Identified {len(risks)} risk(s), {high} high severity.",
            suggestions=self.definition.suggestions,
        )


class FindBottlenecksAction(ActionBase):
    definition = ActionDefinition(
        name="find-bottlenecks",
        category=ActionCategory.ANALYZE,
        description="Find capacity, connection and inventory bottlenecks",
        examples=("Find bottlenecks", "Where are my bottlenecks?"),
        suggestions=("Calculate utilization", "Add a warehouse"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        nodes = await context.backend.list_nodes()
        if not nodes:
            return _empty_network()
        incoming, outgoing = degrees(await context.backend.list_links())

        bottlenecks = []
        for node in nodes:
            if node.utilization is not None and node.utilization > HIGH_UTILIZATION:
                bottlenecks.append(_finding(
                    node, "capacity", Severity.HIGH,
                    f"{node.id} is at {node.utilization:.0%} utilization.",
                ))
            if incoming[node.id] > HUB_INCOMING and outgoing[node.id] < HUB_OUTGOING:
                bottlenecks.append(_finding(
                    node, "connection", Severity.MEDIUM,
                    f"{node.id} funnels {incoming[node.id]} inbound flows into {outgoing[node.id]}.",
                ))
            if node.inventory is not None and node.inventory > node.capacity * FULL_INVENTORY_RATIO:
                bottlenecks.append(_finding(
                    node, "inventory", Severity.MEDIUM,
                    f"{node.id} storage is almost full ({node.inventory:g} of {node.capacity:g}).",
                ))

        data = {"bottlenecks": bottlenecks, "bySeverity": _count_by_severity(bottlenecks)}
        if not bottlenecks:
            return ExecutionResult.ok(data=data, summary="No bottlenecks found.")
        return ExecutionResult.ok(
            data=data,
            summary=(
                f"Found {len(bottlenecks)} bottleneck(s) at "
                + ", ".join(sorted({b["nodeId"] for b in bottlenecks}))
                + "."
            ),
            suggestions=self.definition.suggestions,
        )


class CalculateUtilizationAction(ActionBase):
    definition = ActionDefinition(
        name="calculate-utilization",
        category=ActionCategory.ANALYZE,
        description="Report capacity utilization per node and on average",
        parameters=(_NODE_IDS,),
        examples=("Calculate utilization", "How busy is warehouse-1?"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        try:
            nodes = await _select_nodes(context, params.get("nodeIds"))
        except KeyError as e:
            return _unknown_node(e.args[0])
        if not nodes:
            return _empty_network()

        rows = []
        for node in nodes:
            u = node.utilization
            if u is None:
                status = "unknown"
            elif u > HIGH_UTILIZATION:
                status = "critical"
            elif u > WARNING_UTILIZATION:
                status = "warning"
            else:
                status = "normal"
            rows.append({"nodeId": node.id, "utilization": u, "status": status})

        known = [r["utilization"] for r in rows if r["utilization"] is not None]
        average = round(sum(known) / len(known), 4) if known else None
        data = {"nodes": rows, "averageUtilization": average}
        if average is None:
            return ExecutionResult.ok(
                data=data,
                summary=f"No utilization data is reported for the {len(nodes)} node(s) checked.",
            )
        critical = [r["nodeId"] for r in rows if r["status"] == "critical"]
        summary = f"Average utilization is {average:.0%} across {len(known)} node(s)."
        if critical:
            summary += f" Critical: {', '.join(critical)}."
        return ExecutionResult.ok(data=data, summary=summary)
