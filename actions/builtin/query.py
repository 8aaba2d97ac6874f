"""
actions/builtin/query.py — Read-only query actions
"""

from __future__ import annotations

from typing import Any

from actions.base import ActionBase
from actions.types import (
    ActionCategory,
    ActionContext,
    ActionDefinition,
    ExecutionResult,
    ParameterSpec,
    ParamType,
)
from actions.validator import non_empty_string, number_in_range, one_of
from domain.models import AlertStatus
from exceptions import DomainNotFoundError


class GetNetworkSummaryAction(ActionBase):
    definition = ActionDefinition(
        name="get-network-summary",
        category=ActionCategory.QUERY,
        description="Summarise the current supply chain network",
        examples=("Show me my network", "How many nodes do I have?", "Give me a summary"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        summary = await context.backend.summary()
        if summary.node_count == 0:
            return ExecutionResult.ok(
                data=summary.model_dump(),
                summary="Your network is empty. Start by adding a supplier.",
                suggestions=("Add a supplier in Shanghai",),
            )
        breakdown = ", ".join(f"{count} {kind}(s)" for kind, count in sorted(summary.by_type.items()))
        return ExecutionResult.ok(
            data=summary.model_dump(),
            summary=(
                f"Your network has {summary.node_count} node(s) ({breakdown}) and "
                f"{summary.link_count} connection(s); total capacity {summary.total_capacity:g}."
            ),
        )


class GetNodeDetailsAction(ActionBase):
    definition = ActionDefinition(
        name="get-node-details",
        category=ActionCategory.QUERY,
        description="Show the details of a single node",
        parameters=(
            ParameterSpec("nodeId", ParamType.STRING, required=True,
                          description="ID of the node", predicate=non_empty_string),
        ),
        examples=("Show details for supplier-1", "What is warehouse-2?"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        try:
            node = await context.backend.get_node(params["nodeId"])
        except DomainNotFoundError as e:
            return ExecutionResult.fail(str(e), suggestions=("Show network summary",))
        return ExecutionResult.ok(
            data=node.model_dump(mode="json"),
            summary=(
                f"{node.id} is a {node.type.value} named {node.name} in {node.location}, "
                f"capacity {node.capacity:g}, status {node.status.value}."
            ),
        )


class GetRecentAlertsAction(ActionBase):
    definition = ActionDefinition(
        name="get-recent-alerts",
        category=ActionCategory.QUERY,
        description="List the most recent alerts raised on the network",
        parameters=(
            ParameterSpec("limit", ParamType.INTEGER, default=10,
                          description="How many alerts to show (1-100)",
                          predicate=number_in_range(1, 100)),
            ParameterSpec("status", ParamType.STRING, default=AlertStatus.ACTIVE.value,
                          description="active, acknowledged or resolved",
                          predicate=one_of(*(s.value for s in AlertStatus))),
        ),
        examples=("Check for alerts", "Show me resolved alerts"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        status = AlertStatus(params["status"])
        alerts = await context.backend.list_alerts(status, limit=params["limit"])
        data = {"alerts": [a.model_dump(mode="json") for a in alerts], "status": status.value}
        if not alerts:
            summary = (
                "No active alerts - your supply chain is running smoothly!"
                if status is AlertStatus.ACTIVE else f"No {status.value} alerts."
            )
            return ExecutionResult.ok(data=data, summary=summary)
        lines = [f"{len(alerts)} {status.value} alert(s):"]
        lines += [f"- [{a.severity.value}] {a.title}" for a in alerts]
        return ExecutionResult.ok(
            data=data,
            summary="\n".join(lines),
            suggestions=("Identify risks", "Scan for anomalies"),
        )


class HelpAction(ActionBase):
    definition = ActionDefinition(
        name="help",
        category=ActionCategory.QUERY,
        description="List what the copilot can do",
        parameters=(
            ParameterSpec("category", ParamType.STRING,
                          description="Only list one category",
                          predicate=one_of(*(c.value for c in ActionCategory))),
        ),
        examples=("help", "What can you do?", "Which simulation commands are there?"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        registry = context.registry
        if registry is None:
            return ExecutionResult.ok(summary="I can build, configure, analyze, simulate and query your supply chain.")

        wanted = params.get("category")
        sections: dict[str, list[str]] = {}
        for action in registry.all():
            d = action.definition
            if wanted and d.category.value != wanted:
                continue
            example = f' (e.g. "{d.examples[0]}")' if d.examples else ""
            sections.setdefault(d.category.value, []).append(f"- {d.description}{example}")

        lines = ["Here is what I can do:"]
        for category, entries in sections.items():
            lines.append(f"\n{category.title()}:")
            lines.extend(entries)
        return ExecutionResult.ok(
            data={"categories": list(sections)},
            summary="\n".join(lines),
        )
