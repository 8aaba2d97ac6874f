"""
actions/builtin/simulation.py — Disruption simulation actions

run-simulation is the generic entry point. The what-if actions pick the
affected nodes themselves before running the same simulation:

    what-if-port-closure      nodes located at the port (case-insensitive match)
    what-if-supplier-failure  the supplier plus everything downstream of it
    what-if-demand-spike      nodes in a region, or every retailer and distributor;
                              severity follows the size of the increase
"""

from __future__ import annotations

from collections import deque
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
from actions.validator import all_of, non_empty_string, number_in_range, one_of, positive_number
from domain.models import Link, NodeType, Severity, SimulationRun
from exceptions import DomainConflictError, DomainNotFoundError

SIMULATION_KINDS = (
    "port_closure",
    "natural_disaster",
    "supplier_failure",
    "demand_spike",
    "transport_delay",
)

_SEVERITY = ParameterSpec(
    "severity", ParamType.STRING, default=Severity.HIGH.value,
    description="low, medium or high",
    predicate=one_of(*(s.value for s in Severity)),
)
_DURATION = ParameterSpec(
    "duration", ParamType.INTEGER, default=7,
    description="Duration in days (1-365)",
    predicate=number_in_range(1, 365),
)


def _describe_run(run: SimulationRun) -> str:
    impact = run.impact
    return (
        f"Simulation {run.id} ({run.kind.replace('_', ' ')}, {run.severity.value} severity, "
        f"{run.duration_days} days) affected {impact.get('nodes_affected', 0)} node(s); "
        f"estimated delay {impact.get('estimated_delay_days', 0)} days."
    )


class RunSimulationAction(ActionBase):
    definition = ActionDefinition(
        name="run-simulation",
        category=ActionCategory.SIMULATE,
        description="Run a disruption simulation against the current network",
        parameters=(
            ParameterSpec("type", ParamType.STRING, default="supplier_failure",
                          description=f"One of: {', '.join(SIMULATION_KINDS)}",
                          predicate=one_of(*SIMULATION_KINDS)),
            ParameterSpec("severity", ParamType.STRING, default=Severity.MEDIUM.value,
                          description="low, medium or high",
                          predicate=one_of(*(s.value for s in Severity))),
            _DURATION,
            ParameterSpec("affectedNodes", ParamType.ARRAY,
                          description="Node IDs to disrupt (defaults to the whole network)"),
        ),
        examples=(
            "Run a simulation",
            "Simulate a high severity port closure for 14 days",
            "Simulate a natural disaster affecting supplier-1",
        ),
        suggestions=("View network summary", "Run another simulation"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        affected = [str(n) for n in params.get("affectedNodes") or []]
        try:
            run = await context.backend.run_simulation(
                kind=params["type"],
                severity=Severity(params["severity"]),
                duration_days=params["duration"],
                affected=affected or None,
            )
        except (DomainConflictError, DomainNotFoundError) as e:
            return ExecutionResult.fail(
                str(e), suggestions=("Add a supplier", "View network summary")
            )
        return ExecutionResult.ok(
            data=run.model_dump(mode="json"),
            summary=_describe_run(run),
            suggestions=self.definition.suggestions,
        )


# ─────────────────────────────────────────────────────────────────────────────
# What-if scenarios
# ─────────────────────────────────────────────────────────────────────────────

def downstream_of(node_id: str, links: list[Link]) -> list[str]:
    """Every node reachable from node_id along link direction, in BFS order."""
    edges: dict[str, list[str]] = {}
    for link in links:
        edges.setdefault(link.source, []).append(link.target)
        if link.bidirectional:
            edges.setdefault(link.target, []).append(link.source)

    seen = {node_id}
    order: list[str] = []
    queue = deque([node_id])
    while queue:
        for nxt in edges.get(queue.popleft(), ()):
            if nxt not in seen:
                seen.add(nxt)
                order.append(nxt)
                queue.append(nxt)
    return order


def demand_spike_severity(increase_pct: float) -> Severity:
    if increase_pct >= 50:
        return Severity.HIGH
    if increase_pct >= 25:
        return Severity.MEDIUM
    return Severity.LOW


async def _simulate(
    context: ActionContext,
    kind: str,
    severity: Severity,
    duration: int,
    affected: list[str],
    extra: Optional[dict[str, Any]] = None,
    suggestions: tuple[str, ...] = (),
) -> ExecutionResult:
    try:
        run = await context.backend.run_simulation(kind, severity, duration, affected)
    except (DomainConflictError, DomainNotFoundError) as e:
        return ExecutionResult.fail(str(e), suggestions=("View network summary",))
    data = run.model_dump(mode="json")
    data.update(extra or {})
    return ExecutionResult.ok(data=data, summary=_describe_run(run), suggestions=suggestions)


class WhatIfPortClosureAction(ActionBase):
    definition = ActionDefinition(
        name="what-if-port-closure",
        category=ActionCategory.SIMULATE,
        description="Simulate the closure of a port and the nodes located there",
        parameters=(
            ParameterSpec("portLocation", ParamType.STRING, required=True,
                          description="City of the port", predicate=non_empty_string),
            _DURATION,
            _SEVERITY,
        ),
        examples=("What if the port of Shanghai closes?", "Simulate a 14 day port closure in Rotterdam"),
        suggestions=("Identify risks", "Add a warehouse in another region"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        port = params["portLocation"].strip().lower()
        nodes = [n for n in await context.backend.list_nodes() if n.location.strip().lower() == port]
        if not nodes:
            return ExecutionResult.fail(
                "No nodes found near the specified port location. "
                "Please check the location or add nodes in that area.",
                suggestions=("View network summary",),
            )
        return await _simulate(
            context, "port_closure", Severity(params["severity"]), params["duration"],
            [n.id for n in nodes],
            extra={"portLocation": params["portLocation"]},
            suggestions=self.definition.suggestions,
        )


class WhatIfSupplierFailureAction(ActionBase):
    definition = ActionDefinition(
        name="what-if-supplier-failure",
        category=ActionCategory.SIMULATE,
        description="Simulate a supplier failing and the impact on every node downstream of it",
        parameters=(
            ParameterSpec("supplierId", ParamType.STRING, required=True,
                          description="ID of the supplier", predicate=non_empty_string),
            _DURATION,
            _SEVERITY,
        ),
        examples=("What if supplier-1 fails?", "Simulate supplier-2 going offline for 30 days"),
        suggestions=("Add a backup supplier", "Identify risks"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        supplier_id = params["supplierId"]
        try:
            supplier = await context.backend.get_node(supplier_id)
        except DomainNotFoundError as e:
            return ExecutionResult.fail(str(e), suggestions=("Show network summary",))
        if supplier.type is not NodeType.SUPPLIER:
            return ExecutionResult.fail(
                f"{supplier_id} is a {supplier.type.value}, not a supplier.",
                suggestions=("Run a simulation",),
            )
        downstream = downstream_of(supplier_id, await context.backend.list_links())
        return await _simulate(
            context, "supplier_failure", Severity(params["severity"]), params["duration"],
            [supplier_id, *downstream],
            extra={"supplierId": supplier_id, "downstreamNodes": downstream},
            suggestions=self.definition.suggestions,
        )


class WhatIfDemandSpikeAction(ActionBase):
    definition = ActionDefinition(
        name="what-if-demand-spike",
        category=ActionCategory.SIMULATE,
        description="Simulate a percentage demand increase at retail and distribution nodes",
        parameters=(
            ParameterSpec("demandIncrease", ParamType.NUMBER, required=True,
                          description="Demand increase in percent (0-1000]",
                          predicate=all_of(positive_number, number_in_range(0, 1000))),
            _DURATION,
            ParameterSpec("affectedRegion", ParamType.STRING,
                          description="Location to limit the spike to"),
        ),
        examples=("What if demand rises 50%?", "Simulate a 200% demand spike in Berlin"),
        suggestions=("Calculate utilization", "Find bottlenecks"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        nodes = await context.backend.list_nodes()
        region = (params.get("affectedRegion") or "").strip().lower()
        if region:
            targets = [n for n in nodes if n.location.strip().lower() == region]
        else:
            targets = [n for n in nodes if n.type in (NodeType.RETAILER, NodeType.DISTRIBUTOR)]
        if not targets:
            return ExecutionResult.fail(
                "No nodes available to simulate demand spike. "
                "Please add retailer or distributor nodes.",
                suggestions=("Add a retailer", "Add a distributor"),
            )
        increase = params["demandIncrease"]
        return await _simulate(
            context, "demand_spike", demand_spike_severity(increase), params["duration"],
            [n.id for n in targets],
            extra={"demandIncrease": increase},
            suggestions=self.definition.suggestions,
        )
