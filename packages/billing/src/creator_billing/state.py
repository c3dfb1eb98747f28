"""Finite-state machines for entity lifecycles."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Generic, TypeVar

from creator_billing.errors import StateConflictError

S = TypeVar("S", bound=Enum)


class StateMachine(Generic[S]):
    """Table of legal transitions for one entity type.

    Moving to the current state is a no-op. Any move not listed in the table
    raises :class:`StateConflictError`. States without outgoing transitions
    are terminal.
    """

    def __init__(self, entity: str, transitions: Mapping[S, Iterable[S]]):
        self.entity = entity
        self._transitions: dict[S, frozenset[S]] = {
            state: frozenset(targets) for state, targets in transitions.items()
        }

    def allowed(self, current: S) -> frozenset[S]:
        return self._transitions.get(current, frozenset())

    def can_transition(self, current: S, target: S) -> bool:
        return current == target or target in self.allowed(current)

    def is_terminal(self, state: S) -> bool:
        return not self.allowed(state)

    def transition(self, current: S, target: S, *, entity_id: str | None = None) -> S:
        """Validate a move and return the new state."""
        if not self.can_transition(current, target):
            raise StateConflictError(
                f"{self.entity} cannot move from {current.value} to {target.value}",
                field="status",
                entity=f"{self.entity}:{entity_id}" if entity_id else self.entity,
                rule="legal_transition",
                details={
                    "from": current.value,
                    "to": target.value,
                    "allowed": sorted(s.value for s in self.allowed(current)),
                },
            )
        return target
