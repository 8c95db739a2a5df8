"""prompt_toolkit adapter: key decoding in, formatted text out.

This is the input source and renderer for interactive terminal sessions.
Raw prompt_toolkit key presses are decoded into logical events here, so
the form engine never sees terminal-specific keys.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from prompt_toolkit import Application
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.key_binding.key_processor import KeyPress as RawKeyPress
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import FormattedTextControl, HSplit, Layout, Window
from prompt_toolkit.layout.dimension import Dimension as D
from prompt_toolkit.styles import Style

from stepform.models.controls import ControlKind, MultiSelectControl, SingleSelectControl
from stepform.models.events import (
    CancelRequested,
    Event,
    KeyPress,
    SubmitRequested,
)
from stepform.models.form import Form, FormStatus
from stepform.models.result import FormResult
from stepform.lib.observability import setup_logging
from stepform.models.step import StepStatus
from stepform.render.bridge import DrawInstruction
from stepform.settings import FormSettings

logger = logging.getLogger(__name__)

__all__ = [
    "STYLE",
    "key_to_event",
    "format_instructions",
    "TerminalRenderer",
    "build_application",
    "run_terminal",
]


# Application style
STYLE = Style.from_dict({
    "title": "bold bg:#005f87 #ffffff",
    "step-title": "bold #00af00",
    "step-description": "#808080 italic",
    "section-header": "bold underline #00af00",
    "static-text": "#afafaf",
    "field-label": "#d7d700",
    "field-label.required": "#d7d700 bold",
    "field-label.disabled": "#606060",
    "field-input": "bg:#1e1e1e #ffffff",
    "field-input.focused": "bg:#2a2a2a #ffffff",
    "field-input.disabled": "bg:#1e1e1e #606060",
    "field-input.invalid": "bg:#3a1515 #ff6666",
    "field-help": "#808080 italic",
    "option": "#808080",
    "option.selected": "bold #00ff00",
    "option.highlighted": "bg:#404040 #ffffff",
    "error": "bold #ff0000",
    "notice": "bold #ff9900",
    "success": "bold #00ff00",
    "steps": "#808080",
    "steps.active": "bold #ffffff",
    "steps.completed": "#00af00",
    "status-bar": "bg:#005f87 #ffffff",
})

# Special keys -> logical key names
_KEY_NAMES = {
    Keys.ControlM: "enter",
    Keys.ControlJ: "enter",
    Keys.ControlI: "tab",
    Keys.BackTab: "shift-tab",
    Keys.Escape: "escape",
    Keys.ControlH: "backspace",
    Keys.Delete: "delete",
    Keys.Left: "left",
    Keys.Right: "right",
    Keys.Up: "up",
    Keys.Down: "down",
    Keys.Home: "home",
    Keys.End: "end",
}

_STEP_MARKS = {
    StepStatus.NOT_VISITED: ("class:steps", "○"),
    StepStatus.ACTIVE: ("class:steps.active", "●"),
    StepStatus.COMPLETED: ("class:steps.completed", "✓"),
    StepStatus.SKIPPED: ("class:steps", "-"),
}


def key_to_event(key_press: RawKeyPress) -> Optional[Event]:
    """Decode a prompt_toolkit key press into a logical event.

    Returns:
        The event, or None for keys the form has no use for
    """
    key = key_press.key
    if key == Keys.ControlC:
        return CancelRequested()
    if key == Keys.ControlS:
        return SubmitRequested()
    if key in _KEY_NAMES:
        return KeyPress(_KEY_NAMES[key])
    if isinstance(key, Keys):
        return None
    if key == " ":
        return KeyPress("space")
    if len(key) == 1 and key.isprintable():
        return KeyPress(key)
    return None


def _option_lines(form: Form, instruction: DrawInstruction, indent: str) -> list[tuple[str, str]]:
    control = form.control(instruction.control_id)
    if not isinstance(control, (SingleSelectControl, MultiSelectControl)):
        return []
    value = form.value(instruction.control_id)
    chosen = value if isinstance(control, MultiSelectControl) else (value,)
    highlighted = form.cursor(instruction.control_id)
    fragments: list[tuple[str, str]] = []
    for index, option in enumerate(control.options):
        selected = option.value in (chosen or ())
        if index == highlighted:
            style = "class:option.highlighted"
        elif selected:
            style = "class:option.selected"
        else:
            style = "class:option"
        mark = "[x]" if selected else "[ ]"
        if isinstance(control, SingleSelectControl):
            mark = "(•)" if selected else "( )"
        fragments.append((style, f"{indent}    {mark} {option.label}"))
        if option.description:
            fragments.append(("class:field-help", f"  {option.description}"))
        fragments.append(("", "\n"))
    return fragments


def format_instructions(
    form: Form, instructions: Iterable[DrawInstruction]
) -> FormattedText:
    """Lay out the current step as prompt_toolkit formatted text.

    Only instructions for the current step that are visible are drawn.
    A ``[SetCursorPosition]`` fragment marks the focused control's cursor.
    """
    fragments: list[tuple[str, str]] = []

    # Step progress line
    for index, step in enumerate(form.steps):
        style, mark = _STEP_MARKS[form.statuses[index]]
        fragments.append((style, f" {mark} {step.title} "))
    fragments.append(("", "\n\n"))

    if form.status is FormStatus.ALL_STEPS_COMPLETE:
        fragments.append(("class:success", "All steps complete.\n"))
        fragments.append(("class:field-help", "Ctrl+S to submit, Esc to go back.\n\n"))
        for line in form.build_result().summary_lines():
            fragments.append(("", f"  {line}\n"))
        return FormattedText(fragments)

    step = form.current_step
    if step is not None:
        fragments.append(("class:step-title", f"{step.title}\n"))
        if step.description:
            fragments.append(("class:step-description", f"{step.description}\n"))
        fragments.append(("", "\n"))

    for instruction in instructions:
        if not instruction.visible or instruction.step_index != form.current_step_index:
            continue
        indent = "  " * instruction.depth
        control = form.control(instruction.control_id)

        if control.kind is ControlKind.GROUP:
            fragments.append(("class:section-header", f"{indent}{instruction.label}\n"))
            continue
        if control.kind is ControlKind.STATIC_TEXT:
            style = "class:static-text" if instruction.enabled else "class:field-label.disabled"
            fragments.append((style, _indent_lines(instruction.rendered_text, indent) + "\n"))
            continue

        if not instruction.enabled:
            label_style = "class:field-label.disabled"
            input_style = "class:field-input.disabled"
        else:
            label_style = "class:field-label.required" if instruction.required else "class:field-label"
            input_style = "class:field-input.focused" if instruction.focused else "class:field-input"
        if instruction.error:
            input_style = "class:field-input.invalid"

        marker = " *" if instruction.required else ""
        fragments.append((label_style, f"{indent}{instruction.label}{marker}: "))
        text = instruction.rendered_text
        multiline = getattr(control, "multiline", False)
        if multiline:
            # The block starts below the label, one indented row per line
            pad = indent + "  "
            fragments.append(("", "\n" + pad))
        if instruction.cursor_hint is not None and control.kind is ControlKind.TEXT:
            cut = instruction.cursor_hint
            before, after = text[:cut], text[cut:] + " "
            if multiline:
                before = before.replace("\n", "\n" + pad)
                after = after.replace("\n", "\n" + pad)
            fragments.append((input_style, before))
            fragments.append(("[SetCursorPosition]", ""))
            fragments.append((input_style, after))
        elif multiline:
            fragments.append((input_style, text.replace("\n", "\n" + pad) or " "))
        else:
            fragments.append((input_style, text or " "))
        fragments.append(("", "\n"))

        if instruction.focused:
            fragments.extend(_option_lines(form, instruction, indent))
            if control.help_text:
                fragments.append(("class:field-help", f"{indent}  {control.help_text}\n"))
        if instruction.error:
            fragments.append(("class:error", f"{indent}  {instruction.error}\n"))

    if form.notice:
        fragments.append(("", "\n"))
        fragments.append(("class:notice", f"{form.notice}\n"))
    return FormattedText(fragments)


def _indent_lines(text: str, indent: str) -> str:
    return "\n".join(indent + line for line in text.split("\n"))


class TerminalRenderer:
    """Keeps the latest instruction per control and formats the current step.

    Each ``draw`` merges a diff; ``frames`` counts how many diffs were drawn.
    """

    def __init__(self) -> None:
        self.instructions: dict[int, DrawInstruction] = {}
        self.frames = 0

    def draw(self, form: Form, instructions: Iterable[DrawInstruction]) -> None:
        for instruction in instructions:
            self.instructions[instruction.control_id] = instruction
        self.frames += 1

    def formatted(self, form: Form) -> FormattedText:
        ordered = [self.instructions[k] for k in sorted(self.instructions)]
        return format_instructions(form, ordered)

    def plain_text(self, form: Form) -> str:
        """The formatted screen without styles."""
        return "".join(text for _, text in self.formatted(form))


def _status_bar(form: Form) -> FormattedText:
    shortcuts = "Tab/Enter:Next  Esc:Back  Space:Toggle  Ctrl+S:Submit  Ctrl+C:Cancel"
    return FormattedText([("class:status-bar", f"  {form.name}  │  {shortcuts}  ")])


def build_application(
    form: Form, renderer: Optional[TerminalRenderer] = None
) -> Application[Optional[FormResult]]:
    """Full-screen application whose key presses drive ``form.handle_event``.

    The application exits with the FormResult on submission, or None on
    cancellation.
    """
    renderer = renderer or TerminalRenderer()
    renderer.draw(form, form.render(full=True))

    kb = KeyBindings()

    @kb.add(Keys.Any)
    def on_key(event: Any) -> None:
        """Feed every key press to the form."""
        for key_press in event.key_sequence:
            logical = key_to_event(key_press)
            if logical is None:
                continue
            renderer.draw(form, form.handle_event(logical))
            if form.is_terminal:
                event.app.exit(result=form.result)
                return

    body = Window(
        content=FormattedTextControl(lambda: renderer.formatted(form), show_cursor=True),
        wrap_lines=True,
    )
    layout = Layout(
        HSplit([
            Window(
                content=FormattedTextControl(lambda: [("class:title", f" {form.name} ")]),
                style="class:title",
                height=1,
            ),
            Window(height=D.exact(1)),
            body,
            Window(
                content=FormattedTextControl(lambda: _status_bar(form)),
                style="class:status-bar",
                height=1,
            ),
        ])
    )
    return Application(
        layout=layout,
        key_bindings=kb,
        style=STYLE,
        full_screen=True,
    )


def _configure_logging(settings: FormSettings) -> None:
    log_file = settings.get_log_file()
    setup_logging(
        level=settings.log_level,
        json_format=settings.json_logs,
        log_file=str(log_file) if log_file else None,
        console=False,
    )


def run_terminal(form: Form, configure_logging: bool = True) -> Optional[FormResult]:
    """Run an interactive session in the terminal; None if cancelled.

    The screen belongs to the application, so logging is first pointed at
    the form's configured log file only (or nowhere). Pass
    ``configure_logging=False`` when the host has set logging up itself.
    """
    if configure_logging:
        _configure_logging(form.settings)
    app = build_application(form)
    result = app.run()
    logger.info("Terminal session ended: %s", form.status.value)
    return result
