"""Dependency graph over controls and the propagation pass.

Edges say "the target's visibility / enablement / value is a function of
the source's value". Nodes are dense ControlIds and edges are plain index
pairs, so the graph never owns controls.

Besides explicit edges, each group has an implicit containment arc to each
of its children: a child is only visible (enabled) while its group is.
Containment arcs take part in cycle detection and topological ordering.

Propagation visits nodes in topological order, so a dependent is only
recomputed once every one of its inputs has settled for this pass. A
diamond (A -> B, A -> C, B -> D, C -> D) recomputes D exactly once, after
both B and C.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from stepform.lib.errors import (
    CycleDetectedError,
    DefinitionError,
    DerivationFailedError,
    RuleFailedError,
    UnknownControlError,
    ValidationError,
)
from stepform.models.conditions import Condition
from stepform.models.controls import Control
from stepform.models.value_store import ControlId, ValueSource, ValueStore

logger = logging.getLogger(__name__)

__all__ = ["Effect", "Derivation", "DependencyEdge", "Dependency", "DependencyGraph"]

Derivation = Callable[[Mapping[str, Any]], Any]


class Effect(str, Enum):
    """What a dependency edge controls on its target."""

    VISIBILITY = "visibility"
    ENABLEMENT = "enablement"
    VALUE_DERIVATION = "value_derivation"


@dataclass(frozen=True)
class DependencyEdge:
    """A single dependency.

    Attributes:
        source: Control whose value is read
        target: Control that is affected
        effect: Which aspect of the target is affected
        rule: For visibility/enablement, ``value -> bool`` (a Condition or
            any callable). For value derivation, ``{source path: value} ->
            new value``; every derivation edge into one target must share
            the same function, which receives all of its sources.
    """

    source: ControlId
    target: ControlId
    effect: Effect
    rule: Any = field(default=None, compare=False)

    def describe(self) -> str:
        rule = self.rule.describe() if isinstance(self.rule, Condition) else "custom"
        return f"{self.source} -> {self.target} [{self.effect.value}: {rule}]"


def _truthy(value: Any) -> bool:
    return Condition.truthy()(value)


class DependencyGraph:
    """Directed acyclic graph of control dependencies."""

    def __init__(self) -> None:
        self._nodes: list[ControlId] = []
        self._parent: dict[ControlId, ControlId] = {}
        self._children: dict[ControlId, list[ControlId]] = {}
        self._outgoing: dict[ControlId, list[DependencyEdge]] = {}
        self._incoming: dict[ControlId, list[DependencyEdge]] = {}
        self._order: Optional[list[ControlId]] = None
        self._failed_rules: set[ControlId] = set()

    # -- structure -----------------------------------------------------------

    def add_node(self, control_id: ControlId, parent: Optional[ControlId] = None) -> None:
        """Register a control, optionally as the child of a group."""
        if control_id in self._outgoing:
            raise DefinitionError(f"Control id {control_id} registered twice")
        if parent is not None and parent not in self._outgoing:
            raise UnknownControlError(f"Unknown parent control id {parent}")
        self._nodes.append(control_id)
        self._outgoing[control_id] = []
        self._incoming[control_id] = []
        self._children[control_id] = []
        if parent is not None:
            self._parent[control_id] = parent
            self._children[parent].append(control_id)
        self._order = None

    def __contains__(self, control_id: object) -> bool:
        return control_id in self._outgoing

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def edges(self) -> list[DependencyEdge]:
        return [edge for node in self._nodes for edge in self._outgoing[node]]

    def incoming(self, control_id: ControlId) -> list[DependencyEdge]:
        return list(self._incoming[control_id])

    def parent_of(self, control_id: ControlId) -> Optional[ControlId]:
        return self._parent.get(control_id)

    def _successors(self, control_id: ControlId) -> list[ControlId]:
        targets = [edge.target for edge in self._outgoing[control_id]]
        return targets + self._children[control_id]

    def register_edge(
        self,
        source: ControlId,
        target: ControlId,
        effect: Effect,
        rule: Any = None,
    ) -> DependencyEdge:
        """Add an edge, refusing any edge that would close a cycle.

        The check walks forward from ``target``; if ``source`` is reachable
        the edge is rejected and the graph is left unchanged.

        Raises:
            UnknownControlError: Either end is not a registered node
            CycleDetectedError: The edge would create a cycle
            DefinitionError: Conflicting derivations for one target
        """
        for node in (source, target):
            if node not in self._outgoing:
                raise UnknownControlError(f"Unknown control id {node}")

        if effect is Effect.VALUE_DERIVATION:
            if not callable(rule):
                raise DefinitionError(
                    f"Value derivation {source} -> {target} needs a function"
                )
            for existing in self._incoming[target]:
                if existing.effect is Effect.VALUE_DERIVATION and existing.rule is not rule:
                    raise DefinitionError(
                        f"Control id {target} already has a different derivation",
                        suggestion="Use one derivation function that reads every source",
                    )
        elif rule is None:
            rule = _truthy
        elif not callable(rule):
            raise DefinitionError(f"Rule for {source} -> {target} is not callable")

        if source == target or self._reaches(target, source):
            raise CycleDetectedError(
                f"Dependency {source} -> {target} would create a cycle",
                source=str(source),
                target=str(target),
            )

        edge = DependencyEdge(source, target, effect, rule)
        self._outgoing[source].append(edge)
        self._incoming[target].append(edge)
        self._order = None
        return edge

    def _reaches(self, start: ControlId, goal: ControlId) -> bool:
        stack = [start]
        seen = {start}
        while stack:
            node = stack.pop()
            if node == goal:
                return True
            for nxt in self._successors(node):
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        return False

    def dependents(self, control_id: ControlId) -> set[ControlId]:
        """Every node reachable from ``control_id``, excluding itself."""
        seen: set[ControlId] = set()
        stack = list(self._successors(control_id))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._successors(node))
        seen.discard(control_id)
        return seen

    def topological_order(self) -> list[ControlId]:
        """Kahn's algorithm, ties broken by lowest ControlId; cached."""
        if self._order is not None:
            return self._order

        in_degree = {node: 0 for node in self._nodes}
        for node in self._nodes:
            for nxt in self._successors(node):
                in_degree[nxt] += 1

        ready = [node for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[ControlId] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for nxt in self._successors(node):
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    heapq.heappush(ready, nxt)

        if len(order) != len(self._nodes):
            raise DefinitionError("Dependency graph contains a cycle")
        self._order = order
        return order

    # -- propagation ---------------------------------------------------------

    def propagate(
        self,
        changed: Union[ControlId, Iterable[ControlId]],
        store: ValueStore,
        controls: Sequence[Control],
    ) -> list[ControlId]:
        """Recompute everything downstream of ``changed`` (one id or several).

        Several ids are settled in a single pass, so a node downstream of
        more than one of them is still recomputed once.

        Returns:
            The recomputed ControlIds in visit order; each appears once
        """
        roots = [changed] if isinstance(changed, int) else list(changed)
        affected: set[ControlId] = set()
        for root in roots:
            affected |= self.dependents(root)
        visited = [node for node in self.topological_order() if node in affected]
        for node in visited:
            self._recompute(node, store, controls)
        logger.debug(
            "Propagated change of %s to %d control(s)",
            ", ".join(store.path_of(r) for r in roots),
            len(visited),
        )
        return visited

    def propagate_all(self, store: ValueStore, controls: Sequence[Control]) -> list[ControlId]:
        """Recompute every node once, in topological order."""
        visited = list(self.topological_order())
        for node in visited:
            self._recompute(node, store, controls)
        logger.debug("Full propagation pass over %d control(s)", len(visited))
        return visited

    def _recompute(
        self,
        node: ControlId,
        store: ValueStore,
        controls: Sequence[Control],
    ) -> None:
        visible = True
        enabled = True
        derivation: Optional[Derivation] = None
        sources: list[ControlId] = []
        failure: Optional[Exception] = None

        for edge in self._incoming[node]:
            source_value = store.value(edge.source)
            if edge.effect is Effect.VALUE_DERIVATION:
                derivation = edge.rule
                sources.append(edge.source)
                continue
            try:
                verdict = bool(edge.rule(source_value))
            except Exception as exc:  # user-supplied rule; a failing rule reads as False
                logger.warning("Rule %s failed: %s", edge.describe(), exc)
                verdict = False
                failure = failure or exc
            if edge.effect is Effect.VISIBILITY:
                visible = visible and verdict
            else:
                enabled = enabled and verdict

        parent = self._parent.get(node)
        if parent is not None:
            parent_state = store.state(parent)
            visible = visible and parent_state.is_visible
            enabled = enabled and parent_state.is_enabled

        store.apply_flags(node, visible, enabled)

        if derivation is not None:
            self._derive(node, derivation, sources, store, controls[node])

        if failure is not None:
            path = store.path_of(node)
            error = RuleFailedError(
                f"Could not evaluate the rules for {controls[node].label}",
                control=path,
                cause=failure,
            )
            store.record_error(node, error.reason)
            self._failed_rules.add(node)
        elif node in self._failed_rules:
            self._failed_rules.discard(node)
            # A derivation that ran above already settled the error state
            if derivation is None:
                store.clear_error(node)

    @staticmethod
    def _derive(
        node: ControlId,
        derivation: Derivation,
        sources: Iterable[ControlId],
        store: ValueStore,
        control: Control,
    ) -> None:
        inputs = {store.path_of(s): store.value(s) for s in sources}
        path = store.path_of(node)
        try:
            derived = derivation(inputs)
        except Exception as exc:  # user-supplied function; failure belongs to the target
            error = DerivationFailedError(
                f"Could not compute {control.label}", control=path, cause=exc
            )
            logger.warning("Derivation for %s failed: %s", path, exc)
            store.record_error(node, error.reason)
            return

        try:
            normalized = control.validate(derived)
        except ValidationError as exc:
            error = DerivationFailedError(
                f"Computed value rejected: {exc.reason}", control=path, cause=exc
            )
            logger.warning("Derived value for %s rejected: %s", path, exc.reason)
            store.record_error(node, error.reason)
            return

        state = store.state(node)
        expected_source = ValueSource.DERIVED if normalized is not None else ValueSource.DEFAULT
        if state.value == normalized and state.is_valid and state.source is expected_source:
            return
        store.commit(node, normalized, ValueSource.DERIVED)


@dataclass(frozen=True)
class Dependency:
    """A dependency as written in a form definition, by control path.

    The Form resolves paths to ControlIds and registers the edge.

    Examples:
        Dependency.show_when("scope", "type", Condition.not_equals("docs"))
        Dependency.enable_when("token", "use_auth")
        *Dependency.derive("full_name", ["first", "last"], join_names)
    """

    source: str
    target: str
    effect: Effect
    rule: Any = field(default=None, compare=False)

    @classmethod
    def show_when(cls, target: str, source: str, rule: Any = None) -> "Dependency":
        return cls(source, target, Effect.VISIBILITY, rule)

    @classmethod
    def enable_when(cls, target: str, source: str, rule: Any = None) -> "Dependency":
        return cls(source, target, Effect.ENABLEMENT, rule)

    @classmethod
    def derive(
        cls, target: str, sources: Sequence[str], function: Derivation
    ) -> list["Dependency"]:
        return [cls(source, target, Effect.VALUE_DERIVATION, function) for source in sources]
