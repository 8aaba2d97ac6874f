"""
actions/builtin/configuration.py — Network configuration actions

Region, industry, currency, shipping methods and risk profile of the
network. Allowed values live in domain/models.py; anything else is
rejected by parameter validation before the action runs.
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
from actions.validator import one_of
from domain.models import CURRENCIES, INDUSTRIES, REGIONS, RISK_PROFILES, SHIPPING_METHODS
from exceptions import DomainConflictError

_SUGGESTIONS = ("View network summary", "Identify risks")


def _choice(name: str, allowed: tuple[str, ...], what: str) -> ParameterSpec:
    return ParameterSpec(
        name, ParamType.STRING, required=True,
        description=f"{what}: {', '.join(allowed)}",
        predicate=one_of(*allowed),
    )


class _SetFieldAction(ActionBase):
    """Sets one NetworkConfig field from one required parameter."""

    param: str = ""
    field: str = ""
    label: str = ""

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        value = params[self.param]
        try:
            config = await context.backend.update_config(**{self.field: value})
        except DomainConflictError as e:
            return ExecutionResult.fail(str(e), suggestions=("Ask for help",))
        return ExecutionResult.ok(
            data=config.model_dump(mode="json"),
            summary=f"{self.label} set to {value}.",
            suggestions=_SUGGESTIONS,
        )


class SetRegionAction(_SetFieldAction):
    param = "region"
    field = "region"
    label = "Operating region"
    definition = ActionDefinition(
        name="set-region",
        category=ActionCategory.CONFIGURE,
        description="Set the network's primary operating region",
        parameters=(_choice("region", REGIONS, "Region"),),
        examples=("Set my region to europe", "We operate in asia-pacific"),
    )


class SetIndustryAction(_SetFieldAction):
    param = "industry"
    field = "industry"
    label = "Industry"
    definition = ActionDefinition(
        name="set-industry",
        category=ActionCategory.CONFIGURE,
        description="Set the industry the network serves",
        parameters=(_choice("industry", INDUSTRIES, "Industry"),),
        examples=("Set industry to electronics", "We are in pharmaceuticals"),
    )


class SetCurrencyAction(_SetFieldAction):
    param = "currency"
    field = "currency"
    label = "Reporting currency"
    definition = ActionDefinition(
        name="set-currency",
        category=ActionCategory.CONFIGURE,
        description="Set the currency used for costs and reports",
        parameters=(_choice("currency", CURRENCIES, "ISO currency code"),),
        examples=("Use EUR as currency", "Switch currency to JPY"),
    )


class SetRiskProfileAction(_SetFieldAction):
    param = "riskProfile"
    field = "risk_profile"
    label = "Risk profile"
    definition = ActionDefinition(
        name="set-risk-profile",
        category=ActionCategory.CONFIGURE,
        description="Set how much risk the network tolerates",
        parameters=(_choice("riskProfile", RISK_PROFILES, "Risk tolerance"),),
        examples=("Set risk profile to low", "We can tolerate high risk"),
    )


class AddShippingMethodAction(ActionBase):
    definition = ActionDefinition(
        name="add-shipping-method",
        category=ActionCategory.CONFIGURE,
        description="Enable a shipping method for the network",
        parameters=(_choice("method", SHIPPING_METHODS, "Shipping method"),),
        examples=("Enable air-freight", "Add rail shipping"),
    )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        method = params["method"]
        config = await context.backend.get_config()
        if method in config.shipping_methods:
            return ExecutionResult.fail(
                f"Shipping method '{method}' is already enabled.",
                suggestions=("View network summary",),
            )
        config = await context.backend.update_config(
            shipping_methods=[*config.shipping_methods, method]
        )
        return ExecutionResult.ok(
            data=config.model_dump(mode="json"),
            summary=(
                f"Enabled {method}. Shipping methods: {', '.join(config.shipping_methods)}."
            ),
            suggestions=_SUGGESTIONS,
        )
