"""
actions/builtin — Sample supply-chain actions shipped with the copilot.
"""

from __future__ import annotations

from actions.builtin.analysis import (
    CalculateUtilizationAction,
    FindBottlenecksAction,
    IdentifyRisksAction,
    ScanAnomaliesAction,
)
from actions.builtin.configuration import (
    AddShippingMethodAction,
    SetCurrencyAction,
    SetIndustryAction,
    SetRegionAction,
    SetRiskProfileAction,
)
from actions.builtin.network import (
    AddDistributorAction,
    AddManufacturerAction,
    AddRetailerAction,
    AddSupplierAction,
    AddWarehouseAction,
    ConnectNodesAction,
    DisconnectNodesAction,
    RemoveNodeAction,
    UpdateNodeAction,
)
from actions.builtin.query import (
    GetNetworkSummaryAction,
    GetNodeDetailsAction,
    GetRecentAlertsAction,
    HelpAction,
)
from actions.builtin.simulation import (
    RunSimulationAction,
    WhatIfDemandSpikeAction,
    WhatIfPortClosureAction,
    WhatIfSupplierFailureAction,
)
from actions.registry import ActionRegistry

BUILTIN_ACTIONS = (
    AddSupplierAction,
    AddManufacturerAction,
    AddWarehouseAction,
    AddDistributorAction,
    AddRetailerAction,
    UpdateNodeAction,
    RemoveNodeAction,
    ConnectNodesAction,
    DisconnectNodesAction,
    SetRegionAction,
    SetIndustryAction,
    SetCurrencyAction,
    AddShippingMethodAction,
    SetRiskProfileAction,
    ScanAnomaliesAction,
    IdentifyRisksAction,
    FindBottlenecksAction,
    CalculateUtilizationAction,
    RunSimulationAction,
    WhatIfPortClosureAction,
    WhatIfSupplierFailureAction,
    WhatIfDemandSpikeAction,
    GetNetworkSummaryAction,
    GetNodeDetailsAction,
    GetRecentAlertsAction,
    HelpAction,
)


def register_builtin_actions(registry: ActionRegistry) -> ActionRegistry:
    """Register every builtin action (in the order above) and return the registry."""
    for cls in BUILTIN_ACTIONS:
        registry.register(cls())
    return registry
