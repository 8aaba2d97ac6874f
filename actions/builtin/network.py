"""
actions/builtin/network.py — Network building actions

Create, update, remove and link supply-chain nodes.

Domain rejections (unknown node, self-link, duplicate link) come back as
ExecutionResult.fail() with the service's own explanation. An unreachable
domain service is not a business error: DomainUnavailableError propagates
so the orchestrator reports it as a dependency failure.
"""

from __future__ import annotations

from typing import Any, ClassVar

from actions.base import ActionBase
from actions.types import (
    ActionCategory,
    ActionContext,
    ActionDefinition,
    ExecutionResult,
    ParameterSpec,
    ParamType,
)
from actions.validator import non_empty_string, number_in_range, one_of, positive_number
from domain.models import NodeStatus, NodeType
from exceptions import DomainConflictError, DomainNotFoundError

_LOCATION = ParameterSpec(
    "location", ParamType.STRING, required=True,
    description="City or site where the node is located",
    predicate=non_empty_string,
)
_CAPACITY = ParameterSpec(
    "capacity", ParamType.NUMBER,
    description="Capacity in units per day",
    default=1000.0,
    predicate=positive_number,
)
_NAME = ParameterSpec("name", ParamType.STRING, description="Optional display name")


# ─────────────────────────────────────────────────────────────────────────────
# Add node (one action per node type)
# ─────────────────────────────────────────────────────────────────────────────

def _add_node_definition(node_type: NodeType, example_city: str) -> ActionDefinition:
    kind = node_type.value
    return ActionDefinition(
        name=f"add-{kind}",
        category=ActionCategory.BUILD,
        description=f"Add a new {kind} node to the supply chain network",
        parameters=(_LOCATION, _CAPACITY, _NAME),
        examples=(
            f"Add a {kind} in {example_city}",
            f"Create a new {kind} node with capacity 500",
        ),
        suggestions=("View network summary", f"Connect the new {kind} to another node"),
    )


class AddNodeAction(ActionBase):
    node_type: ClassVar[NodeType]

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        node = await context.backend.add_node(
            self.node_type,
            location=params["location"],
            capacity=params.get("capacity", 1000.0),
            name=params.get("name"),
        )
        return ExecutionResult.ok(
            data=node.model_dump(mode="json"),
            summary=(
                f"Added {self.node_type.value} {node.id} ({node.name}) in {node.location} "
                f"with capacity {node.capacity:g}."
            ),
            suggestions=self.definition.suggestions,
        )


class AddSupplierAction(AddNodeAction):
    node_type = NodeType.SUPPLIER
    definition = _add_node_definition(NodeType.SUPPLIER, "Shanghai")


class AddManufacturerAction(AddNodeAction):
    node_type = NodeType.MANUFACTURER
    definition = _add_node_definition(NodeType.MANUFACTURER, "Shenzhen")


class AddWarehouseAction(AddNodeAction):
    node_type = NodeType.WAREHOUSE
    definition = _add_node_definition(NodeType.WAREHOUSE, "Rotterdam")


class AddDistributorAction(AddNodeAction):
    node_type = NodeType.DISTRIBUTOR
    definition = _add_node_definition(NodeType.DISTRIBUTOR, "Chicago")


class AddRetailerAction(AddNodeAction):
    node_type = NodeType.RETAILER
    definition = _add_node_definition(NodeType.RETAILER, "London")


# ─────────────────────────────────────────────────────────────────────────────
# Update / remove
# ─────────────────────────────────────────────────────────────────────────────

class UpdateNodeAction(ActionBase):
    definition = ActionDefinition(
        name="update-node",
        category=ActionCategory.BUILD,
        description="Update the capacity, status, location or live metrics of an existing node",
        parameters=(
            ParameterSpec("nodeId", ParamType.STRING, required=True,
                          description="ID of the node to update", predicate=non_empty_string),
            ParameterSpec("capacity", ParamType.NUMBER, description="New capacity",
                          predicate=positive_number),
            ParameterSpec("status", ParamType.STRING, description="active, inactive or degraded",
                          predicate=one_of(*(s.value for s in NodeStatus))),
            ParameterSpec("location", ParamType.STRING, description="New location"),
            ParameterSpec("utilization", ParamType.NUMBER,
                          description="Fraction of capacity in use (0-1)",
                          predicate=number_in_range(0, 1)),
            ParameterSpec("inventory", ParamType.NUMBER, description="Units on hand",
                          predicate=number_in_range(0, float("inf"))),
        ),
        examples=(
            "Set supplier-1 capacity to 800",
            "Mark warehouse-2 as inactive",
            "Set warehouse-1 utilization to 0.95",
        ),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        node_id = params["nodeId"]
        try:
            node = await context.backend.update_node(
                node_id,
                capacity=params.get("capacity"),
                status=params.get("status"),
                location=params.get("location"),
                utilization=params.get("utilization"),
                inventory=params.get("inventory"),
            )
        except (DomainNotFoundError, DomainConflictError) as e:
            return ExecutionResult.fail(str(e), suggestions=("Show network summary",))
        return ExecutionResult.ok(
            data=node.model_dump(mode="json"),
            summary=f"Updated {node.id}: capacity {node.capacity:g}, status {node.status.value}.",
        )


class RemoveNodeAction(ActionBase):
    definition = ActionDefinition(
        name="remove-node",
        category=ActionCategory.BUILD,
        description="Remove a node and all of its connections",
        parameters=(
            ParameterSpec("nodeId", ParamType.STRING, required=True,
                          description="ID of the node to remove", predicate=non_empty_string),
        ),
        examples=("Remove supplier-2", "Delete warehouse-1"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        node_id = params["nodeId"]
        try:
            await context.backend.remove_node(node_id)
        except DomainNotFoundError as e:
            return ExecutionResult.fail(str(e), suggestions=("Show network summary",))
        return ExecutionResult.ok(
            data={"nodeId": node_id},
            summary=f"Removed {node_id} and its connections.",
        )


# ─────────────────────────────────────────────────────────────────────────────
# Connections
# ─────────────────────────────────────────────────────────────────────────────

_SOURCE = ParameterSpec("sourceNodeId", ParamType.STRING, required=True,
                        description="ID of the upstream node", predicate=non_empty_string)
_TARGET = ParameterSpec("targetNodeId", ParamType.STRING, required=True,
                        description="ID of the downstream node", predicate=non_empty_string)


class ConnectNodesAction(ActionBase):
    definition = ActionDefinition(
        name="connect-nodes",
        category=ActionCategory.CONFIGURE,
        description="Connect two nodes in the supply chain network",
        parameters=(
            _SOURCE,
            _TARGET,
            ParameterSpec("bidirectional", ParamType.BOOLEAN, default=False,
                          description="Whether goods flow both ways"),
        ),
        examples=("Connect supplier-1 to warehouse-1", "Link manufacturer-2 and distributor-1"),
    )

    async def validate(self, params: dict[str, Any], context: ActionContext) -> str | None:
        if params["sourceNodeId"] == params["targetNodeId"]:
            return "Cannot connect a node to itself."
        return None

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        source, target = params["sourceNodeId"], params["targetNodeId"]
        try:
            link = await context.backend.connect(
                source, target, bidirectional=params.get("bidirectional", False)
            )
        except DomainConflictError as e:
            return ExecutionResult.fail(
                str(e), suggestions=("Choose two different nodes", "Show network summary")
            )
        except DomainNotFoundError as e:
            return ExecutionResult.fail(
                str(e), suggestions=("Show network summary", "Add the missing node first")
            )
        arrow = "<->" if link.bidirectional else "->"
        return ExecutionResult.ok(
            data=link.model_dump(mode="json"),
            summary=f"Connected {source} {arrow} {target}.",
        )


class DisconnectNodesAction(ActionBase):
    definition = ActionDefinition(
        name="disconnect-nodes",
        category=ActionCategory.CONFIGURE,
        description="Remove the connection between two nodes",
        parameters=(_SOURCE, _TARGET),
        examples=("Disconnect supplier-1 from warehouse-1",),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        source, target = params["sourceNodeId"], params["targetNodeId"]
        try:
            await context.backend.disconnect(source, target)
        except (DomainNotFoundError, DomainConflictError) as e:
            return ExecutionResult.fail(str(e), suggestions=("Show network summary",))
        return ExecutionResult.ok(
            data={"source": source, "target": target},
            summary=f"Disconnected {source} from {target}.",
        )
