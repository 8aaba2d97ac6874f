"""
actions/registry.py — Action Registry

Maps action names to their ActionBase instances. Populated once at startup,
then frozen; lookups afterwards are read-only and need no locking.

Usage:
    registry = ActionRegistry()
    registry.register(AddSupplierAction())
    registry.freeze()

    action = registry.lookup("add-supplier")
    definitions = [a.definition for a in registry.all()]
"""

from __future__ import annotations

from typing import Optional

from actions.base import ActionBase
from actions.types import ActionCategory, ActionDefinition
from exceptions import ActionNotFoundError, DuplicateActionError, RegistryFrozenError
from observability.logger import get_logger

log = get_logger(__name__)


class ActionRegistry:
    """
    Registration-ordered table of actions.

    Not a module global: build one per process (or per test) and pass it
    to the components that need it.
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionBase] = {}
        self._frozen = False

    # ── Write (startup only) ──────────────────────────────────────────────────

    def register(self, action: ActionBase) -> None:
        """Register an action instance. Raises DuplicateActionError on a name clash."""
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register '{action.definition.name}': registry is frozen."
            )
        name = action.definition.name
        if name in self._actions:
            raise DuplicateActionError(name)
        self._actions[name] = action
        log.debug("registry.registered", action=name, category=action.definition.category.value)

    def freeze(self) -> None:
        self._frozen = True
        log.info("registry.frozen", actions=len(self._actions))

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Read (runtime) ────────────────────────────────────────────────────────

    def lookup(self, name: str) -> ActionBase:
        """Return the action. Raises ActionNotFoundError if not found."""
        action = self._actions.get(name)
        if action is None:
            raise ActionNotFoundError(name, available=sorted(self._actions))
        return action

    def get_or_none(self, name: str) -> Optional[ActionBase]:
        return self._actions.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._actions

    def all(self) -> tuple[ActionBase, ...]:
        """Read-only snapshot in registration order."""
        return tuple(self._actions.values())

    def definitions(self) -> list[ActionDefinition]:
        return [a.definition for a in self._actions.values()]

    def by_category(self, category: ActionCategory) -> list[ActionBase]:
        return [a for a in self._actions.values() if a.definition.category == category]

    def list_names(self) -> list[str]:
        return list(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __repr__(self) -> str:
        return f"<ActionRegistry actions={list(self._actions)} frozen={self._frozen}>"
