"""The Form: owns every control, step and value, and drives navigation.

Navigation is a small state machine. The form is ``in_progress`` while a
step is active, ``all_steps_complete`` once the last step has been
advanced past, and ends ``submitted`` or ``cancelled``. A refused
transition raises a NavigationError and leaves every status, value and
the current step index exactly as they were.

The Form is the only writer of the ValueStore. Edits are validated,
committed, and propagated through the DependencyGraph before ``edit``
returns, so observers never see a half-propagated state.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional, Sequence, Union

from stepform.lib.errors import (
    AtFirstStepError,
    ConstraintViolatedError,
    DefinitionError,
    DuplicateControlError,
    FormClosedError,
    NavigationError,
    StepIncompleteError,
    StepsRemainingError,
    TypeMismatchError,
    UnknownControlError,
    ValidationError,
)
from stepform.lib.observability import get_form_logger
from stepform.models.controls import Control, ControlKind
from stepform.models.dependency_graph import Dependency, DependencyGraph, Effect
from stepform.models.events import (
    NAVIGATION_KEYS,
    CancelRequested,
    Event,
    KeyPress,
    SelectionChange,
    SubmitRequested,
)
from stepform.models.result import FormResult, ResultEntry
from stepform.models.step import SkipWhen, Step, StepStatus
from stepform.models.value_store import ControlId, ControlState, ValueSource, ValueStore
from stepform.settings import FormSettings, get_settings

if TYPE_CHECKING:
    from stepform.render.bridge import DrawInstruction

__all__ = ["FormStatus", "Form"]

ControlRef = Union[ControlId, str]


class FormStatus(str, Enum):
    """Overall form status."""

    IN_PROGRESS = "in_progress"
    ALL_STEPS_COMPLETE = "all_steps_complete"
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"


_TERMINAL = (FormStatus.SUBMITTED, FormStatus.CANCELLED)


class Form:
    """A multi-step form and its navigation state.

    Args:
        steps: Ordered steps; each owns its controls
        dependencies: Path-based dependency definitions
        name: Form name, used in logs and the result
        settings: Engine settings (defaults to the project settings file)
        session_id: Identifier added to every log record

    Raises:
        DefinitionError: The definition is malformed (duplicate paths,
            unknown references, shared controls, cycles, bad defaults)
    """

    def __init__(
        self,
        steps: Sequence[Step],
        dependencies: Iterable[Dependency] = (),
        *,
        name: str = "form",
        settings: Optional[FormSettings] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.name = name
        self.settings = settings or get_settings()
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self._log = get_form_logger(__name__, form=name, session=self.session_id)

        self.steps: tuple[Step, ...] = tuple(steps)
        if not self.steps:
            raise DefinitionError(f"Form '{name}' has no steps")

        self.store = ValueStore()
        self.graph = DependencyGraph()
        self._controls: list[Control] = []
        self._step_of: dict[ControlId, int] = {}
        self._build_controls()
        self._check_skip_rules()
        for dependency in dependencies:
            self._register_dependency(dependency)
        self._apply_defaults()

        self.status = FormStatus.IN_PROGRESS
        self.statuses: list[StepStatus] = [StepStatus.NOT_VISITED] * len(self.steps)
        self.current_step_index: Optional[int] = None
        self.result: Optional[FormResult] = None
        self.notice: Optional[str] = None

        self.focused: Optional[ControlId] = None
        self._cursors: dict[ControlId, int] = {}
        self._drafts: dict[ControlId, str] = {}

        # Deferred: the bridge imports stepform.models, which imports this module
        from stepform.render.bridge import RenderBridge

        self.bridge = RenderBridge(self.settings)

        self.graph.propagate_all(self.store, self._controls)
        self.store.take_dirty()
        self._start()
        self._log.info(
            "Form '%s' built: %d step(s), %d control(s), %d dependency edge(s)",
            name,
            len(self.steps),
            len(self._controls),
            len(self.graph.edges),
        )

    def __repr__(self) -> str:
        return (
            f"Form({self.name!r}, status={self.status.value}, "
            f"step={self.current_step_index})"
        )

    # -- construction --------------------------------------------------------

    def _build_controls(self) -> None:
        seen_steps: set[str] = set()
        seen_controls: set[int] = set()
        for index, step in enumerate(self.steps):
            if step.key in seen_steps:
                raise DefinitionError(f"Duplicate step key '{step.key}'", step=step.key)
            seen_steps.add(step.key)
            ids: list[ControlId] = []
            for control in step.controls:
                self._register_control(control, "", None, index, ids, seen_controls)
            step.bind(ids)

    def _register_control(
        self,
        control: Control,
        prefix: str,
        parent: Optional[ControlId],
        step_index: int,
        ids: list[ControlId],
        seen_controls: set[int],
    ) -> None:
        path = f"{prefix}.{control.key}" if prefix else control.key
        step_key = self.steps[step_index].key
        if path in self.store:
            raise DuplicateControlError(
                f"Control path '{path}' is defined twice", control=path, step=step_key
            )
        if id(control) in seen_controls:
            raise DefinitionError(
                f"Control '{path}' is used in more than one place",
                control=path,
                step=step_key,
                suggestion="Create a separate control object for each field",
            )
        seen_controls.add(id(control))

        control_id = self.store.add(path, control)
        self._controls.append(control)
        self.graph.add_node(control_id, parent)
        self._step_of[control_id] = step_index
        ids.append(control_id)
        for child in control.children:
            self._register_control(child, path, control_id, step_index, ids, seen_controls)

    def _check_skip_rules(self) -> None:
        for index, step in enumerate(self.steps):
            rule = step.skip_rule
            if not isinstance(rule, SkipWhen):
                continue
            control_id = self.store.id_for(rule.control)
            if self._step_of[control_id] >= index:
                raise DefinitionError(
                    f"Skip rule of step '{step.key}' reads '{rule.control}', "
                    "which is not on an earlier step",
                    step=step.key,
                    control=rule.control,
                )

    def _register_dependency(self, dependency: Dependency) -> None:
        try:
            source = self.store.id_for(dependency.source)
            target = self.store.id_for(dependency.target)
        except UnknownControlError as exc:
            raise UnknownControlError(
                f"Dependency {dependency.source} -> {dependency.target} "
                f"references unknown control '{exc.control}'",
                control=exc.control,
            ) from None
        edge = self.graph.register_edge(
            source, target, Effect(dependency.effect), dependency.rule
        )
        self._log.debug(
            "Registered dependency %s (%s -> %s)",
            edge.describe(),
            dependency.source,
            dependency.target,
        )

    def _apply_defaults(self) -> None:
        for control_id, control in enumerate(self._controls):
            if control.default is None:
                continue
            try:
                self.store.set_value(control_id, control, control.default, ValueSource.DEFAULT)
            except ValidationError as exc:
                raise DefinitionError(
                    f"Invalid default for '{self.store.path_of(control_id)}': {exc.reason}",
                    control=self.store.path_of(control_id),
                ) from exc

    def _start(self) -> None:
        first = self._next_open_step(0)
        if first is None:
            self.status = FormStatus.ALL_STEPS_COMPLETE
            self._log.info("Every step is skipped; form is complete")
            return
        self._activate(first)

    # -- lookups -------------------------------------------------------------

    def resolve(self, ref: ControlRef) -> ControlId:
        """Turn a ControlId or path into a ControlId."""
        if isinstance(ref, str):
            return self.store.id_for(ref)
        if isinstance(ref, int) and 0 <= ref < len(self._controls):
            return ref
        raise UnknownControlError(f"Unknown control {ref!r}", control=str(ref))

    def control(self, ref: ControlRef) -> Control:
        return self._controls[self.resolve(ref)]

    @property
    def controls(self) -> Sequence[Control]:
        """Every control, indexed by ControlId."""
        return tuple(self._controls)

    def state(self, ref: ControlRef) -> ControlState:
        return self.store.state(self.resolve(ref))

    def value(self, ref: ControlRef) -> Any:
        return self.store.value(self.resolve(ref))

    def step_index_of(self, ref: ControlRef) -> int:
        """Index of the step that owns a control."""
        return self._step_of[self.resolve(ref)]

    @property
    def current_step(self) -> Optional[Step]:
        if self.current_step_index is None:
            return None
        return self.steps[self.current_step_index]

    def step_status(self, step: Union[int, str]) -> StepStatus:
        if isinstance(step, str):
            for index, candidate in enumerate(self.steps):
                if candidate.key == step:
                    return self.statuses[index]
            raise KeyError(step)
        return self.statuses[step]

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    def display_value(self, ref: ControlRef) -> Any:
        """Value to draw: a pending text draft if there is one, else the stored value."""
        control_id = self.resolve(ref)
        if control_id in self._drafts:
            return self._drafts[control_id]
        return self.store.value(control_id)

    def cursor(self, ref: ControlRef) -> int:
        control_id = self.resolve(ref)
        if control_id not in self._cursors:
            control = self._controls[control_id]
            self._cursors[control_id] = control.initial_cursor(self.display_value(control_id))
        return self._cursors[control_id]

    # -- editing -------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self.is_terminal:
            raise FormClosedError(f"Form '{self.name}' is already {self.status.value}")

    def edit(self, ref: ControlRef, value: Any) -> bool:
        """Validate, commit and propagate a new value.

        Returns:
            True if the value was committed. False if it was rejected (the
            control is flagged invalid) or the control is hidden or disabled.

        Raises:
            FormClosedError: The form was submitted or cancelled
            UnknownControlError: ``ref`` names no control
        """
        self._ensure_open()
        control_id = self.resolve(ref)
        control = self._controls[control_id]
        state = self.store.state(control_id)

        if not state.is_enabled:
            self._log.info(
                "Ignoring edit of %s control '%s'",
                "hidden" if not state.is_visible else "disabled",
                state.path,
            )
            return False

        if control.kind is ControlKind.GROUP:
            return self._edit_group(control_id, control, value)
        if not control.kind.has_value:
            self._log.debug("Ignoring edit of static text '%s'", state.path)
            return False

        try:
            self.store.set_value(control_id, control, value, ValueSource.LOCAL)
        except ValidationError as exc:
            self._log.info("Rejected value for '%s': %s", state.path, exc.reason)
            return False

        self._drafts.pop(control_id, None)
        self._log.debug("Committed %s", state)
        self._settle([control_id])
        return True

    def _edit_group(self, group_id: ControlId, group: Control, value: Any) -> bool:
        path = self.store.path_of(group_id)
        if value is None:
            value = {child.key: None for child in group.children}
        try:
            if not isinstance(value, Mapping):
                raise TypeMismatchError(
                    f"{group.label} expects a mapping of field values",
                    expected="mapping",
                    actual=value,
                )
            pending = self._flatten_group_value(path, group, value)
        except ValidationError as exc:
            self.store.record_error(group_id, exc.reason)
            self._log.info("Rejected value for '%s': %s", path, exc.reason)
            return False

        errors: dict[ControlId, str] = {}
        normalized: dict[ControlId, Any] = {}
        for control_id, raw in pending:
            state = self.store.state(control_id)
            if not state.is_enabled:
                self._log.debug("Skipping disabled field '%s' in group edit", state.path)
                continue
            try:
                normalized[control_id] = self._controls[control_id].validate(raw)
            except ValidationError as exc:
                errors[control_id] = exc.reason

        if errors:
            for control_id, reason in errors.items():
                self.store.record_error(control_id, reason)
            self.store.record_error(group_id, f"{len(errors)} field(s) need attention")
            self._log.info(
                "Rejected value for '%s': %s",
                path,
                ", ".join(self.store.path_of(c) for c in errors),
            )
            return False

        for control_id, child_value in normalized.items():
            self.store.commit(control_id, child_value, ValueSource.LOCAL)
            self._drafts.pop(control_id, None)
        self.store.clear_error(group_id)
        self._log.debug("Committed %d field(s) of group '%s'", len(normalized), path)
        self._settle(list(normalized))
        return True

    def _flatten_group_value(
        self, path: str, group: Control, value: Mapping[str, Any]
    ) -> list[tuple[ControlId, Any]]:
        known = {child.key for child in group.children}
        unknown = sorted(str(k) for k in value if k not in known)
        if unknown:
            raise ConstraintViolatedError(f"{group.label} has no field(s): {', '.join(unknown)}")

        pending: list[tuple[ControlId, Any]] = []
        for child in group.children:
            if child.key not in value:
                continue
            child_path = f"{path}.{child.key}"
            child_value = value[child.key]
            if child.kind is ControlKind.GROUP:
                if child_value is None:
                    child_value = {c.key: None for c in child.children}
                if not isinstance(child_value, Mapping):
                    raise TypeMismatchError(
                        f"{child.label} expects a mapping of field values",
                        expected="mapping",
                        actual=child_value,
                    )
                pending.extend(self._flatten_group_value(child_path, child, child_value))
            else:
                pending.append((self.store.id_for(child_path), child_value))
        return pending

    def _settle(self, changed: list[ControlId]) -> None:
        if changed:
            self.graph.propagate(changed, self.store, self._controls)
        # A derivation overwrote these; any stale keystroke draft goes
        for control_id in self.store.take_dirty():
            self._drafts.pop(control_id, None)
        self._repair_focus()

    # -- navigation ----------------------------------------------------------

    def _next_open_step(self, start: int) -> Optional[int]:
        """First non-skipped step at or after ``start``; marks passed steps Skipped."""
        for index in range(start, len(self.steps)):
            step = self.steps[index]
            if step.should_skip(self.store):
                self.statuses[index] = StepStatus.SKIPPED
                self._log.debug("Skipping step '%s'", step.key)
                continue
            return index
        return None

    def _previous_open_step(self, start: int) -> tuple[Optional[int], list[int]]:
        """Last non-skipped step at or before ``start``, plus the skipped ones passed."""
        skipped: list[int] = []
        for index in range(start, -1, -1):
            if self.steps[index].should_skip(self.store):
                skipped.append(index)
                continue
            return index, skipped
        return None, skipped

    def _active_index(self) -> int:
        index = self.current_step_index
        if index is None:
            raise NavigationError("No step is active")
        return index

    def _activate(self, index: int, focus_last: bool = False) -> None:
        self.statuses[index] = StepStatus.ACTIVE
        self.current_step_index = index
        self.status = FormStatus.IN_PROGRESS
        self._log.set_context(step=self.steps[index].key)
        focusable = self.focusable_ids()
        if not focusable:
            self.focused = None
        else:
            self.focused = focusable[-1] if focus_last else focusable[0]
        self.bridge.invalidate()

    def _require_complete(self, index: int) -> None:
        step = self.steps[index]
        if step.is_complete(self.store):
            return
        incomplete = step.incomplete_controls(self.store)
        raise StepIncompleteError(
            f"Step '{step.title}' is not complete",
            step=step.key,
            incomplete=incomplete,
            suggestion="Fill in the required fields and fix any errors",
        )

    def advance(self) -> FormStatus:
        """Complete the current step and move to the next non-skipped one.

        Raises:
            StepIncompleteError: The current step is not complete
            FormClosedError: The form was submitted or cancelled
        """
        self._ensure_open()
        if self.status is FormStatus.ALL_STEPS_COMPLETE:
            return self.status

        index = self._active_index()
        self._require_complete(index)

        self.statuses[index] = StepStatus.COMPLETED
        nxt = self._next_open_step(index + 1)
        self.notice = None
        if nxt is None:
            self.status = FormStatus.ALL_STEPS_COMPLETE
            self.focused = None
            self.bridge.invalidate()
            self._log.info("All steps complete after '%s'", self.steps[index].key)
        else:
            self._activate(nxt)
            self._log.info("Advanced to step '%s'", self.steps[nxt].key)
        return self.status

    def retreat(self) -> FormStatus:
        """Move back to the previous non-skipped step; values are untouched.

        From ``all_steps_complete`` this reopens the last completed step, or
        the nearest earlier one if its skip rule now holds.

        Raises:
            AtFirstStepError: No earlier non-skipped step exists
            FormClosedError: The form was submitted or cancelled
        """
        self._ensure_open()
        index = self.current_step_index
        if index is None:
            raise AtFirstStepError("There is no step to go back to")

        if self.status is FormStatus.ALL_STEPS_COMPLETE:
            # The last completed step may have become skipped since
            previous, skipped = self._previous_open_step(index)
            if previous is None:
                raise AtFirstStepError("Every step is now skipped; there is none to reopen")
            for candidate in skipped:
                self.statuses[candidate] = StepStatus.SKIPPED
            self._repropagate()
            self._activate(previous, focus_last=True)
            self.notice = None
            self._log.info("Reopened step '%s'", self.steps[previous].key)
            return self.status

        previous, skipped = self._previous_open_step(index - 1)
        if previous is None:
            raise AtFirstStepError(
                f"'{self.steps[index].title}' is the first step", step=self.steps[index].key
            )

        for candidate in skipped:
            self.statuses[candidate] = StepStatus.SKIPPED
        left = self.steps[index]
        self.statuses[index] = (
            StepStatus.COMPLETED if left.is_complete(self.store) else StepStatus.NOT_VISITED
        )
        self._repropagate()
        self._activate(previous, focus_last=True)
        self.notice = None
        self._log.info("Retreated from '%s' to '%s'", left.key, self.steps[previous].key)
        return self.status

    def _repropagate(self) -> None:
        if not self.settings.repropagate_on_retreat:
            return
        self.graph.propagate_all(self.store, self._controls)
        for control_id in self.store.take_dirty():
            self._drafts.pop(control_id, None)

    def submit(self) -> FormResult:
        """Finish the form and return its result.

        Every non-skipped step is re-checked first. From the last remaining
        step the step is then advanced.

        Raises:
            StepIncompleteError: The current (or any non-skipped) step is incomplete
            StepsRemainingError: Later non-skipped steps have not been visited
            FormClosedError: The form was submitted or cancelled
        """
        self._ensure_open()
        if self.status is FormStatus.IN_PROGRESS:
            index = self._active_index()
            self._require_complete(index)
            remaining = [
                self.steps[j].key
                for j in range(index + 1, len(self.steps))
                if not self.steps[j].should_skip(self.store)
            ]
            if remaining:
                raise StepsRemainingError(
                    f"{len(remaining)} step(s) remain after '{self.steps[index].title}'",
                    step=self.steps[index].key,
                    details={"remaining": ", ".join(remaining)},
                )

        # Nothing changes until every non-skipped step passes
        for index, step in enumerate(self.steps):
            if step.should_skip(self.store):
                continue
            self._require_complete(index)
        if self.status is FormStatus.IN_PROGRESS:
            self.advance()

        self.status = FormStatus.SUBMITTED
        self.focused = None
        self.notice = None
        self.result = self.build_result()
        self._log.info("Form submitted with %d value(s)", len(self.result))
        return self.result

    def cancel(self) -> None:
        """Abandon the form.

        Raises:
            FormClosedError: The form was already submitted or cancelled
        """
        self._ensure_open()
        self.status = FormStatus.CANCELLED
        self.focused = None
        self._log.info("Form cancelled")

    def build_result(self) -> FormResult:
        """Collect current values; controls on skipped steps count as not visible."""
        entries = []
        for control_id, control in enumerate(self._controls):
            if not control.kind.has_value:
                continue
            state = self.store.state(control_id)
            on_skipped_step = self.statuses[self._step_of[control_id]] is StepStatus.SKIPPED
            entries.append(
                ResultEntry(
                    control_id=control_id,
                    path=state.path,
                    label=control.label,
                    value=control.result_value(state.value),
                    text=control.render_text(state.value, self.settings),
                    visible=state.is_visible and not on_skipped_step,
                )
            )
        return FormResult(self.name, tuple(entries))

    # -- focus ---------------------------------------------------------------

    def focusable_ids(self) -> list[ControlId]:
        """Visible, enabled, non-group controls of the current step, in order."""
        step = self.current_step
        if step is None or self.status is not FormStatus.IN_PROGRESS:
            return []
        return [
            control_id
            for control_id in step.control_ids
            if self._controls[control_id].focusable and self.store.state(control_id).is_enabled
        ]

    def focus(self, ref: ControlRef) -> bool:
        """Focus a control on the current step; False if it cannot take focus."""
        control_id = self.resolve(ref)
        if control_id not in self.focusable_ids():
            return False
        self.focused = control_id
        return True

    def focus_next(self) -> bool:
        """Move focus forward; False when already on the last focusable control."""
        return self._move_focus(1)

    def focus_previous(self) -> bool:
        """Move focus back; False when already on the first focusable control."""
        return self._move_focus(-1)

    def _move_focus(self, offset: int) -> bool:
        focusable = self.focusable_ids()
        if self.focused not in focusable:
            self._repair_focus()
            return self.focused is not None
        position = focusable.index(self.focused) + offset
        if not 0 <= position < len(focusable):
            return False
        self.focused = focusable[position]
        return True

    def _repair_focus(self) -> None:
        focusable = self.focusable_ids()
        if self.focused in focusable:
            return
        step = self.current_step
        if not focusable or step is None:
            self.focused = None
            return
        if self.focused is None or self.focused not in step.control_ids:
            self.focused = focusable[0]
            return
        # Prefer the next focusable control after the one that disappeared
        order = list(step.control_ids)
        position = order.index(self.focused)
        after = [c for c in focusable if order.index(c) > position]
        self.focused = after[0] if after else focusable[-1]

    # -- events --------------------------------------------------------------

    def handle_event(self, event: Event) -> list["DrawInstruction"]:
        """Process one input event to completion and return the render diff.

        Navigation refusals become ``notice`` instead of propagating.
        Events that arrive after the form closed are dropped.
        """
        if self.is_terminal:
            self._log.debug("Dropping %s; form is %s", type(event).__name__, self.status.value)
            return []

        if isinstance(event, CancelRequested):
            self.cancel()
        elif isinstance(event, SubmitRequested):
            try:
                self.submit()
            except NavigationError as exc:
                self._set_notice(exc)
        elif isinstance(event, SelectionChange):
            self.notice = None
            self.edit(event.control, event.value)
        elif isinstance(event, KeyPress):
            self._handle_key(event.key)
        else:
            raise TypeError(f"Unsupported event: {event!r}")
        return self.render()

    def render(self, full: bool = False) -> list["DrawInstruction"]:
        """Draw instructions for changed controls (all controls when ``full``)."""
        if full:
            return self.bridge.full(self)
        return self.bridge.diff(self)

    def _set_notice(self, exc: NavigationError) -> None:
        self.notice = exc.message
        self._log.info("Navigation refused: %s", exc.message)
        if isinstance(exc, StepIncompleteError) and exc.incomplete:
            first = exc.incomplete[0]
            if first in self.store:
                self.focus(first)

    def _focused_consumes(self, key: str) -> bool:
        control_id = self.focused
        if control_id is None:
            return False
        control = self._controls[control_id]
        return control.consumes_key(key, self.display_value(control_id), self.cursor(control_id))

    def _handle_key(self, key: str) -> None:
        if key in NAVIGATION_KEYS and not self._focused_consumes(key):
            self._navigate(key)
            return

        control_id = self.focused
        if control_id is None:
            return
        control = self._controls[control_id]
        outcome = control.handle_key(key, self.display_value(control_id), self.cursor(control_id))
        if outcome is None:
            return
        self._cursors[control_id] = outcome.cursor
        if not outcome.changed:
            return
        accepted = self.edit(control_id, outcome.value)
        if not accepted and control.kind is ControlKind.TEXT:
            self._drafts[control_id] = outcome.value

    def _navigate(self, key: str) -> None:
        if key in ("enter", "tab"):
            self.notice = None
            if self.status is FormStatus.ALL_STEPS_COMPLETE:
                return
            if not self.focus_next():
                try:
                    self.advance()
                except StepIncompleteError as exc:
                    self._set_notice(exc)
            return

        if key in ("escape", "shift-tab"):
            self.notice = None
            if self.status is FormStatus.IN_PROGRESS and self.focus_previous():
                return
            try:
                self.retreat()
            except AtFirstStepError as exc:
                self._set_notice(exc)
