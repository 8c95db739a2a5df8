"""The single source of truth for control runtime state.

Validation, dependency resolution, step predicates and rendering all read
from here; nothing else keeps a copy of a control's value. Only the Form
writes to the store.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterator, Optional

from stepform.lib.errors import UnknownControlError, ValidationError
from stepform.models.controls import Control, ControlKind

logger = logging.getLogger(__name__)

ControlId = int

__all__ = ["ControlId", "ValueSource", "ControlState", "ValueStore"]


class ValueSource(str, Enum):
    """Where a control's current value came from."""

    DEFAULT = "default"  # Definition default or empty
    LOCAL = "local"  # Entered by the user
    DERIVED = "derived"  # Written by a value-derivation dependency


@dataclass
class ControlState:
    """Runtime state of one control.

    Attributes:
        control_id: Dense identifier assigned at form construction
        path: Human-readable path ("email", "address.city")
        kind: Control kind, for renderers and result consumers
        value: Current value, None when unset or cleared
        is_valid: False after a rejected edit or failed derivation
        is_visible: Result of the last propagation pass
        is_enabled: Result of the last propagation pass; never True while hidden
        validation_error: Inline error text for the last rejection
        source: Provenance of ``value``
    """

    control_id: ControlId
    path: str
    kind: ControlKind
    value: Any = None
    is_valid: bool = True
    is_visible: bool = True
    is_enabled: bool = True
    validation_error: Optional[str] = None
    source: ValueSource = ValueSource.DEFAULT

    def is_local(self) -> bool:
        """Check if this value was entered by the user."""
        return self.source == ValueSource.LOCAL

    def is_derived(self) -> bool:
        """Check if this value was written by a derivation."""
        return self.source == ValueSource.DERIVED

    def copy(self) -> "ControlState":
        return replace(self)

    def __str__(self) -> str:
        flags = []
        if not self.is_visible:
            flags.append("hidden")
        elif not self.is_enabled:
            flags.append("disabled")
        if not self.is_valid:
            flags.append(f"invalid: {self.validation_error}")
        suffix = f" ({'; '.join(flags)})" if flags else ""
        return f"{self.path}={self.value!r}{suffix}"


class ValueStore(Mapping):
    """Control states keyed by ControlId, readable as ``path -> value``.

    The Mapping interface is what skip rules and derivations see: a
    read-only view of current values by path.
    """

    def __init__(self) -> None:
        self._states: list[ControlState] = []
        self._paths: dict[str, ControlId] = {}
        self._dirty: set[ControlId] = set()

    # -- Mapping[str, Any] ----------------------------------------------------

    def __getitem__(self, path: str) -> Any:
        return self._states[self._id_for(path)].value

    def __iter__(self) -> Iterator[str]:
        return iter(self._paths)

    def __len__(self) -> int:
        return len(self._states)

    # -- registration --------------------------------------------------------

    def add(self, path: str, control: Control) -> ControlId:
        """Register a control and return its new ControlId."""
        control_id = len(self._states)
        self._states.append(
            ControlState(control_id=control_id, path=path, kind=control.kind)
        )
        self._paths[path] = control_id
        return control_id

    # -- lookups -------------------------------------------------------------

    def _id_for(self, path: str) -> ControlId:
        try:
            return self._paths[path]
        except KeyError:
            raise UnknownControlError(f"Unknown control '{path}'", control=path) from None

    def id_for(self, path: str) -> ControlId:
        return self._id_for(path)

    def state(self, control_id: ControlId) -> ControlState:
        if not 0 <= control_id < len(self._states):
            raise UnknownControlError(f"Unknown control id {control_id}")
        return self._states[control_id]

    def value(self, control_id: ControlId) -> Any:
        return self.state(control_id).value

    def path_of(self, control_id: ControlId) -> str:
        return self.state(control_id).path

    def states(self) -> list[ControlState]:
        return list(self._states)

    # -- writes --------------------------------------------------------------

    def set_value(
        self,
        control_id: ControlId,
        control: Control,
        value: Any,
        source: ValueSource = ValueSource.LOCAL,
    ) -> Any:
        """Validate then commit a value.

        On failure the previous value is kept, the state is flagged invalid
        with the error text, and the ValidationError is re-raised.

        Returns:
            The normalized value that was committed
        """
        state = self.state(control_id)
        try:
            normalized = control.validate(value)
        except ValidationError as exc:
            state.is_valid = False
            state.validation_error = exc.reason
            raise
        self.commit(control_id, normalized, source)
        return normalized

    def commit(
        self,
        control_id: ControlId,
        value: Any,
        source: ValueSource = ValueSource.LOCAL,
    ) -> None:
        """Store an already-validated value and mark the control dirty."""
        state = self.state(control_id)
        state.value = value
        state.source = source if value is not None else ValueSource.DEFAULT
        state.is_valid = True
        state.validation_error = None
        self._dirty.add(control_id)

    def record_error(self, control_id: ControlId, reason: str) -> None:
        """Flag a control invalid without touching its value."""
        state = self.state(control_id)
        state.is_valid = False
        state.validation_error = reason

    def clear_error(self, control_id: ControlId) -> None:
        state = self.state(control_id)
        state.is_valid = True
        state.validation_error = None

    def apply_flags(self, control_id: ControlId, visible: bool, enabled: bool) -> bool:
        """Set visibility/enablement; invisible always implies disabled.

        Returns:
            True if either flag changed
        """
        state = self.state(control_id)
        enabled = enabled and visible
        changed = state.is_visible != visible or state.is_enabled != enabled
        state.is_visible = visible
        state.is_enabled = enabled
        return changed

    def is_dirty(self, control_id: ControlId) -> bool:
        return control_id in self._dirty

    def take_dirty(self) -> set[ControlId]:
        """Return and clear the set of controls changed since the last call."""
        dirty, self._dirty = self._dirty, set()
        return dirty

    # -- snapshots -----------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Current values by path (controls without a value excluded)."""
        return {
            s.path: s.value for s in self._states if s.kind.has_value
        }

    def snapshot_by_id(self) -> dict[ControlId, Any]:
        """Current values by ControlId (controls without a value excluded)."""
        return {
            s.control_id: s.value
            for s in self._states
            if s.kind.has_value
        }

    def state_snapshot(self) -> list[ControlState]:
        """Deep copy of every state, for comparison and debugging."""
        return [s.copy() for s in self._states]
