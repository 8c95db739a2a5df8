"""Render bridge: turns form state into draw instructions.

The bridge reads the store and the focused control; it never writes
either. Renderers only ever receive DrawInstructions, so a terminal, a
test recorder or any other surface can sit behind the same form.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from stepform.models.value_store import ControlId
from stepform.settings import FormSettings

if TYPE_CHECKING:
    from stepform.models.form import Form

__all__ = ["DrawInstruction", "RenderBridge"]


@dataclass(frozen=True)
class DrawInstruction:
    """Everything a renderer needs to draw one control.

    Attributes:
        control_id: Control being drawn
        path: Control path ("address.city")
        step_index: Index of the step that owns the control
        label: Display label
        visible: Whether to draw the control at all
        enabled: Whether the control accepts input
        rendered_text: The value as text (masked, labelled, or a draft)
        cursor_hint: Cursor column inside ``rendered_text`` for the focused control
        focused: Whether the control has focus
        required: Whether the control must be answered
        error: Inline validation error, if any
    """

    control_id: ControlId
    path: str
    step_index: int
    label: str
    visible: bool
    enabled: bool
    rendered_text: str
    cursor_hint: Optional[int] = None
    focused: bool = False
    required: bool = False
    error: Optional[str] = None

    @property
    def depth(self) -> int:
        """Nesting depth: 0 for top-level controls, 1 inside a group, ..."""
        return self.path.count(".")


class RenderBridge:
    """Produces full or incremental draw instructions for a form."""

    def __init__(self, settings: FormSettings) -> None:
        self.settings = settings
        self._last: dict[ControlId, DrawInstruction] = {}
        self._stale = True

    def invalidate(self) -> None:
        """Make the next ``diff`` re-emit every control."""
        self._stale = True

    def instruction(self, form: "Form", control_id: ControlId) -> DrawInstruction:
        control = form.controls[control_id]
        state = form.store.state(control_id)
        focused = control_id == form.focused
        shown = form.display_value(control_id)
        return DrawInstruction(
            control_id=control_id,
            path=state.path,
            step_index=form.step_index_of(control_id),
            label=control.label,
            visible=state.is_visible,
            enabled=state.is_enabled,
            rendered_text=control.render_text(shown, self.settings),
            cursor_hint=control.cursor_hint(shown, form.cursor(control_id)) if focused else None,
            focused=focused,
            required=control.required,
            error=None if state.is_valid else state.validation_error,
        )

    def snapshot(self, form: "Form") -> list[DrawInstruction]:
        """Instructions for every control, in ControlId order."""
        return [self.instruction(form, control_id) for control_id in range(len(form.controls))]

    def diff(self, form: "Form") -> list[DrawInstruction]:
        """Instructions that changed since the last emission."""
        current = self.snapshot(form)
        if self._stale:
            changed = current
        else:
            changed = [i for i in current if self._last.get(i.control_id) != i]
        self._last = {i.control_id: i for i in current}
        self._stale = False
        return changed

    def full(self, form: "Form") -> list[DrawInstruction]:
        """Every instruction, regardless of what was emitted before."""
        self.invalidate()
        return self.diff(form)
