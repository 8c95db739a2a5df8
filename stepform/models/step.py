"""Steps: ordered groups of controls presented together."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from stepform.lib.errors import DefinitionError
from stepform.models.conditions import Condition
from stepform.models.controls import Control
from stepform.models.value_store import ControlId, ValueStore

__all__ = ["StepStatus", "SkipWhen", "Step"]

CompletionRule = Callable[["Step", ValueStore], bool]
SkipPredicate = Callable[[Mapping[str, Any]], bool]


class StepStatus(str, Enum):
    """Navigation status of a step."""

    NOT_VISITED = "not_visited"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SkipWhen:
    """Skip rule bound to one control: skip when the condition holds for its value."""

    control: str
    condition: Condition

    def __call__(self, values: Mapping[str, Any]) -> bool:
        return self.condition(values.get(self.control))


@dataclass
class Step:
    """An ordered group of controls plus completion and skip rules.

    Attributes:
        key: Step identifier, unique in the form
        controls: Top-level controls of this step (groups carry their children)
        title: Heading shown above the step
        description: Longer help text for the step
        completion_rule: Replaces the default completion check when given
        skip_rule: Predicate over current values (path -> value); a skipped
            step is passed over during navigation. Evaluated on every
            navigation, never cached.
    """

    key: str
    controls: Sequence[Control]
    title: str = ""
    description: str = ""
    completion_rule: Optional[CompletionRule] = None
    skip_rule: Optional[Union[SkipPredicate, SkipWhen]] = None

    # Bound by the Form: every ControlId owned by this step, groups included
    control_ids: tuple[ControlId, ...] = field(default=(), init=False)

    def __post_init__(self) -> None:
        if not self.key:
            raise DefinitionError("Step key must not be empty")
        self.controls = tuple(self.controls)
        if not self.title:
            self.title = self.key.replace("_", " ").title()

    def bind(self, control_ids: Sequence[ControlId]) -> None:
        """Attach the ControlIds assigned by the Form."""
        if self.control_ids:
            raise DefinitionError(
                f"Step '{self.key}' already belongs to a form", step=self.key
            )
        self.control_ids = tuple(control_ids)

    def paths(self) -> list[str]:
        """Paths of every control in this step, depth first."""
        return [path for control in self.controls for path, _ in control.walk()]

    def entries(self) -> list[tuple[str, Control]]:
        return [entry for control in self.controls for entry in control.walk()]

    def incomplete_controls(self, store: ValueStore) -> list[str]:
        """Paths of visible, enabled controls that are invalid or missing a required value.

        Hidden and disabled controls are ignored whatever they hold.
        """
        problems: list[str] = []
        for path, control in self.entries():
            state = store.state(store.id_for(path))
            if not (state.is_visible and state.is_enabled):
                continue
            if not state.is_valid:
                problems.append(path)
            elif control.required and _is_missing(control, path, store):
                problems.append(path)
        return problems

    def is_complete(self, store: ValueStore) -> bool:
        """Evaluate the completion rule (default: nothing incomplete)."""
        if self.completion_rule is not None:
            return bool(self.completion_rule(self, store))
        return not self.incomplete_controls(store)

    def should_skip(self, store: ValueStore) -> bool:
        """Evaluate the skip rule against current values."""
        if self.skip_rule is None:
            return False
        return bool(self.skip_rule(store))


def _is_missing(control: Control, path: str, store: ValueStore) -> bool:
    if control.children:
        # A required group needs at least one visible child answered
        for child_path, child in control.walk(path.rpartition(".")[0]):
            if child is control:
                continue
            child_state = store.state(store.id_for(child_path))
            if child_state.is_visible and not child.is_empty(child_state.value):
                return False
        return True
    return control.is_empty(store[path])
