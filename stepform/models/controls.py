"""Control definitions: the typed input units of a form.

A Control describes *what* a field accepts and how it edits and renders a
value. It holds no runtime state: current values, validity and
visibility live in the ValueStore, and every change goes through
``Form.edit``. This keeps one writer for all mutable state.

Every kind implements the same small contract:

    validate(value)        -> normalized value, or raises ValidationError
    render_text(value)     -> text the renderer draws
    cursor_hint(...)       -> cursor column inside that text, if any
    handle_key(key, ...)   -> KeyOutcome for a logical key, or None
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    ClassVar,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from stepform.lib.errors import (
    ConstraintViolatedError,
    DefinitionError,
    TypeMismatchError,
)
from stepform.models.conditions import is_empty_value
from stepform.settings import FormSettings

__all__ = [
    "ControlKind",
    "KeyOutcome",
    "Option",
    "Control",
    "TextControl",
    "SingleSelectControl",
    "MultiSelectControl",
    "BooleanControl",
    "GroupControl",
    "StaticTextControl",
]


class ControlKind(str, Enum):
    """Kinds of input control."""

    TEXT = "text"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    BOOLEAN = "boolean"
    GROUP = "group"
    STATIC_TEXT = "static_text"

    @property
    def has_value(self) -> bool:
        """Groups and static text hold no value of their own."""
        return self not in (ControlKind.GROUP, ControlKind.STATIC_TEXT)


@dataclass(frozen=True)
class KeyOutcome:
    """Result of feeding one logical key to a control.

    Attributes:
        value: Proposed new value (passed to ``Form.edit`` when changed)
        cursor: New cursor / highlight position
        changed: False when only the cursor moved
    """

    value: Any
    cursor: int
    changed: bool = True


@dataclass(frozen=True)
class Option:
    """A selectable option: stored value, display label, longer description."""

    value: Any
    label: str
    description: str = ""

    @classmethod
    def coerce(cls, raw: Union["Option", str, Sequence[Any], Mapping[str, Any]]) -> "Option":
        """Accept an Option, a bare value, a (value, label[, description]) tuple or a dict."""
        if isinstance(raw, Option):
            return raw
        if isinstance(raw, Mapping):
            if "value" not in raw:
                raise DefinitionError(f"Option is missing 'value': {dict(raw)!r}")
            value = raw["value"]
            return cls(value, str(raw.get("label", value)), str(raw.get("description", "")))
        if isinstance(raw, (tuple, list)):
            if not 1 <= len(raw) <= 3:
                raise DefinitionError(f"Option tuple must have 1-3 items: {raw!r}")
            value = raw[0]
            label = str(raw[1]) if len(raw) > 1 else str(value)
            description = str(raw[2]) if len(raw) > 2 else ""
            return cls(value, label, description)
        return cls(raw, str(raw))


class Control:
    """Base class for all control kinds.

    Args:
        key: Identifier, unique among its siblings; no dots
        label: Display label (defaults to the key, title-cased)
        help_text: Prompt/help shown while the control is focused
        required: Whether a non-empty value is needed to complete the step
        default: Initial value; validated when the form is built
    """

    kind: ClassVar[ControlKind]
    focusable: ClassVar[bool] = True

    def __init__(
        self,
        key: str,
        label: Optional[str] = None,
        *,
        help_text: str = "",
        required: bool = False,
        default: Any = None,
    ) -> None:
        if not isinstance(key, str) or not key or "." in key:
            raise DefinitionError(
                f"Invalid control key {key!r}",
                suggestion="Keys must be non-empty strings without '.'",
            )
        self.key = key
        self.label = label or key.replace("_", " ").title()
        self.help_text = help_text
        self.required = required
        self.default = default

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key!r})"

    @property
    def children(self) -> Sequence["Control"]:
        return ()

    def walk(self, prefix: str = "") -> Iterator[tuple[str, "Control"]]:
        """Yield (path, control) for this control and every descendant, depth first."""
        path = f"{prefix}.{self.key}" if prefix else self.key
        yield path, self
        for child in self.children:
            yield from child.walk(path)

    def validate(self, value: Any) -> Any:
        """Check a proposed value and return its normalized form.

        ``None`` always validates and means "cleared".

        Raises:
            TypeMismatchError: The value has the wrong shape for this kind
            ConstraintViolatedError: A kind-specific rule failed
        """
        raise NotImplementedError

    def is_empty(self, value: Any) -> bool:
        return is_empty_value(value)

    def render_text(self, value: Any, settings: FormSettings) -> str:
        if value is None:
            return settings.empty_placeholder
        return str(value)

    def cursor_hint(self, value: Any, cursor: int) -> Optional[int]:
        return None

    def initial_cursor(self, value: Any) -> int:
        return 0

    def handle_key(self, key: str, value: Any, cursor: int) -> Optional[KeyOutcome]:
        """Apply a logical key (a character or a name like "up")."""
        return None

    def consumes_key(self, key: str, value: Any, cursor: int) -> bool:
        """True if a navigation key (enter, tab, ...) is input for this control."""
        return False

    def result_value(self, value: Any) -> Any:
        """Value as exposed to the result consumer."""
        return value


# =============================================================================
# Text
# =============================================================================


class TextControl(Control):
    """Text input, single-line unless ``multiline`` is set.

    Args:
        pattern: Regular expression the whole value must match
        min_length / max_length: Length bounds
        numeric: Value must parse as a number; ``minimum`` / ``maximum`` bound it
        force_lowercase: Lowercase input as it is typed and validated
        secret: Render masked (passwords, tokens)
        validator: Function returning an error message, or None if valid
        multiline: Enter inserts a line break; enter on an empty last line
            moves on as usual
        max_line_length: Longest allowed line (multiline only)
        trim_trailing_whitespace: Strip trailing spaces and blank lines from
            the submitted value (multiline only)
    """

    kind = ControlKind.TEXT

    def __init__(
        self,
        key: str,
        label: Optional[str] = None,
        *,
        pattern: Optional[str] = None,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        numeric: bool = False,
        minimum: Optional[float] = None,
        maximum: Optional[float] = None,
        force_lowercase: bool = False,
        secret: bool = False,
        validator: Optional[Callable[[str], Optional[str]]] = None,
        multiline: bool = False,
        max_line_length: Optional[int] = None,
        trim_trailing_whitespace: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(key, label, **kwargs)
        if max_line_length is not None and not multiline:
            raise DefinitionError(
                f"max_line_length needs multiline=True for '{key}'", control=key
            )
        if multiline and (numeric or secret):
            raise DefinitionError(
                f"'{key}' cannot be both multiline and {'numeric' if numeric else 'secret'}",
                control=key,
            )
        try:
            self.pattern = re.compile(pattern) if pattern else None
        except re.error as exc:
            raise DefinitionError(
                f"Invalid pattern for '{key}': {exc}", control=key
            ) from exc
        if min_length is not None and max_length is not None and min_length > max_length:
            raise DefinitionError(
                f"min_length > max_length for '{key}'", control=key
            )
        if (minimum is not None or maximum is not None) and not numeric:
            raise DefinitionError(
                f"minimum/maximum need numeric=True for '{key}'", control=key
            )
        self.min_length = min_length
        self.max_length = max_length
        self.numeric = numeric
        self.minimum = minimum
        self.maximum = maximum
        self.force_lowercase = force_lowercase
        self.secret = secret
        self.validator = validator
        self.multiline = multiline
        self.max_line_length = max_line_length
        self.trim_trailing_whitespace = trim_trailing_whitespace

    def validate(self, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, str):
            raise TypeMismatchError(
                f"{self.label} expects text", expected="str", actual=value
            )
        if self.force_lowercase:
            value = value.lower()
        if value == "":
            return None

        if self.min_length is not None and len(value) < self.min_length:
            raise ConstraintViolatedError(
                f"{self.label} must be at least {self.min_length} characters"
            )
        if self.max_length is not None and len(value) > self.max_length:
            raise ConstraintViolatedError(
                f"{self.label} must be at most {self.max_length} characters"
            )
        if self.max_line_length is not None:
            for number, line in enumerate(value.split("\n"), start=1):
                if self.trim_trailing_whitespace:
                    line = line.rstrip()
                if len(line) > self.max_line_length:
                    raise ConstraintViolatedError(
                        f"Line {number} of {self.label} is longer than "
                        f"{self.max_line_length} characters"
                    )
        if self.pattern is not None and not self.pattern.fullmatch(value):
            raise ConstraintViolatedError(
                f"{self.label} does not match the expected format"
            )
        if self.numeric:
            number = _parse_number(value)
            if number is None:
                raise ConstraintViolatedError(f"{self.label} must be a number")
            if self.minimum is not None and number < self.minimum:
                raise ConstraintViolatedError(
                    f"{self.label} must be >= {_format_number(self.minimum)}"
                )
            if self.maximum is not None and number > self.maximum:
                raise ConstraintViolatedError(
                    f"{self.label} must be <= {_format_number(self.maximum)}"
                )
        if self.validator is not None:
            error = self.validator(value)
            if error:
                raise ConstraintViolatedError(error)
        return value

    def render_text(self, value: Any, settings: FormSettings) -> str:
        if value is None:
            return settings.empty_placeholder
        if self.secret:
            return settings.mask_char * len(value)
        return value

    def cursor_hint(self, value: Any, cursor: int) -> Optional[int]:
        return min(cursor, len(value or ""))

    def initial_cursor(self, value: Any) -> int:
        return len(value or "")

    def handle_key(self, key: str, value: Any, cursor: int) -> Optional[KeyOutcome]:
        text = value or ""
        cursor = max(0, min(cursor, len(text)))

        if len(key) == 1 and key.isprintable():
            ch = key.lower() if self.force_lowercase else key
            return KeyOutcome(text[:cursor] + ch + text[cursor:], cursor + 1)
        if key == "backspace":
            if cursor == 0:
                return None
            return KeyOutcome(text[: cursor - 1] + text[cursor:], cursor - 1)
        if key == "delete":
            if cursor >= len(text):
                return None
            return KeyOutcome(text[:cursor] + text[cursor + 1 :], cursor)
        if key == "left":
            return KeyOutcome(text, max(0, cursor - 1), changed=False)
        if key == "right":
            return KeyOutcome(text, min(len(text), cursor + 1), changed=False)
        if key == "home":
            return KeyOutcome(text, 0, changed=False)
        if key == "end":
            return KeyOutcome(text, len(text), changed=False)
        if self.multiline:
            if key == "enter":
                return KeyOutcome(text[:cursor] + "\n" + text[cursor:], cursor + 1)
            if key in ("up", "down"):
                return KeyOutcome(text, _vertical_move(text, cursor, key), changed=False)
        return None

    def consumes_key(self, key: str, value: Any, cursor: int) -> bool:
        if not self.multiline or key != "enter":
            return False
        text = value or ""
        # Enter on an empty trailing line finishes the block
        at_end = cursor >= len(text)
        return not (at_end and (text == "" or text.endswith("\n")))

    def result_value(self, value: Any) -> Any:
        if value is None:
            return None
        if self.numeric:
            return _parse_number(value)
        if self.multiline and self.trim_trailing_whitespace:
            trimmed = "\n".join(line.rstrip() for line in value.split("\n")).rstrip("\n")
            return trimmed or None
        return value


def _vertical_move(text: str, cursor: int, direction: str) -> int:
    """Cursor offset one line up or down, keeping the column where possible."""
    line_start = text.rfind("\n", 0, cursor) + 1
    column = cursor - line_start
    if direction == "up":
        if line_start == 0:
            return cursor
        prev_start = text.rfind("\n", 0, line_start - 1) + 1
        return min(prev_start + column, line_start - 1)
    line_end = text.find("\n", cursor)
    if line_end < 0:
        return cursor
    next_start = line_end + 1
    next_end = text.find("\n", next_start)
    if next_end < 0:
        next_end = len(text)
    return min(next_start + column, next_end)


def _parse_number(text: str) -> Optional[Union[int, float]]:
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def _format_number(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


# =============================================================================
# Selection
# =============================================================================


class _OptionsControl(Control):
    """Shared option handling for single and multi select."""

    def __init__(
        self,
        key: str,
        label: Optional[str] = None,
        *,
        options: Iterable[Any],
        **kwargs: Any,
    ) -> None:
        super().__init__(key, label, **kwargs)
        self.options: tuple[Option, ...] = tuple(Option.coerce(o) for o in options)
        if not self.options:
            raise DefinitionError(f"'{key}' needs at least one option", control=key)
        values = [o.value for o in self.options]
        if len(set(map(_hashable, values))) != len(values):
            raise DefinitionError(f"'{key}' has duplicate option values", control=key)

    def option_values(self) -> list[Any]:
        return [o.value for o in self.options]

    def index_of(self, value: Any) -> int:
        for i, option in enumerate(self.options):
            if option.value == value:
                return i
        return -1

    def label_for(self, value: Any) -> str:
        index = self.index_of(value)
        return self.options[index].label if index >= 0 else str(value)

    def _check_member(self, value: Any) -> None:
        if isinstance(value, (list, tuple, set, frozenset, dict)):
            raise TypeMismatchError(
                f"{self.label} expects a single option value",
                expected="scalar",
                actual=value,
            )
        if self.index_of(value) < 0:
            valid = ", ".join(str(v) for v in self.option_values())
            raise ConstraintViolatedError(
                f"'{value}' is not a valid choice for {self.label}. Must be one of: {valid}"
            )


def _hashable(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


class SingleSelectControl(_OptionsControl):
    """Choose exactly one option; arrow keys cycle through options."""

    kind = ControlKind.SINGLE_SELECT

    def validate(self, value: Any) -> Any:
        if value is None:
            return None
        self._check_member(value)
        return value

    def render_text(self, value: Any, settings: FormSettings) -> str:
        if value is None:
            return settings.empty_placeholder
        return self.label_for(value)

    def cursor_hint(self, value: Any, cursor: int) -> Optional[int]:
        return 0

    def initial_cursor(self, value: Any) -> int:
        return max(self.index_of(value), 0)

    def handle_key(self, key: str, value: Any, cursor: int) -> Optional[KeyOutcome]:
        count = len(self.options)
        current = self.index_of(value)
        if key in ("down", "right"):
            index = 0 if current < 0 else (current + 1) % count
        elif key in ("up", "left"):
            index = count - 1 if current < 0 else (current - 1) % count
        else:
            return None
        return KeyOutcome(self.options[index].value, index)


class MultiSelectControl(_OptionsControl):
    """Choose any number of options; up/down move the highlight, space toggles."""

    kind = ControlKind.MULTI_SELECT

    def __init__(
        self,
        key: str,
        label: Optional[str] = None,
        *,
        options: Iterable[Any],
        min_selected: Optional[int] = None,
        max_selected: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(key, label, options=options, **kwargs)
        if (
            min_selected is not None
            and max_selected is not None
            and min_selected > max_selected
        ):
            raise DefinitionError(
                f"min_selected > max_selected for '{key}'", control=key
            )
        self.min_selected = min_selected
        self.max_selected = max_selected

    def validate(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, (str, bytes, Mapping)) or not isinstance(
            value, (list, tuple, set, frozenset)
        ):
            raise TypeMismatchError(
                f"{self.label} expects a collection of option values",
                expected="sequence",
                actual=value,
            )
        for item in value:
            self._check_member(item)

        # Normalize to option order without duplicates
        chosen = tuple(o.value for o in self.options if o.value in value)
        if not chosen:
            return None

        if self.min_selected is not None and len(chosen) < self.min_selected:
            raise ConstraintViolatedError(
                f"Select at least {self.min_selected} for {self.label}"
            )
        if self.max_selected is not None and len(chosen) > self.max_selected:
            raise ConstraintViolatedError(
                f"Select at most {self.max_selected} for {self.label}"
            )
        return chosen

    def render_text(self, value: Any, settings: FormSettings) -> str:
        if not value:
            return settings.empty_placeholder
        return ", ".join(self.label_for(v) for v in value)

    def cursor_hint(self, value: Any, cursor: int) -> Optional[int]:
        return cursor

    def handle_key(self, key: str, value: Any, cursor: int) -> Optional[KeyOutcome]:
        count = len(self.options)
        selected = tuple(value or ())
        cursor = max(0, min(cursor, count - 1))
        if key == "down":
            return KeyOutcome(value, (cursor + 1) % count, changed=False)
        if key == "up":
            return KeyOutcome(value, (cursor - 1) % count, changed=False)
        if key in (" ", "space"):
            target = self.options[cursor].value
            if target in selected:
                chosen = tuple(v for v in selected if v != target)
            else:
                chosen = tuple(o.value for o in self.options if o.value in selected or o.value == target)
            return KeyOutcome(chosen or None, cursor)
        return None


# =============================================================================
# Boolean
# =============================================================================


class BooleanControl(Control):
    """Yes/no checkbox. Defaults to False unless another default is given."""

    kind = ControlKind.BOOLEAN

    def __init__(self, key: str, label: Optional[str] = None, **kwargs: Any) -> None:
        kwargs.setdefault("default", False)
        super().__init__(key, label, **kwargs)

    def validate(self, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, bool):
            raise TypeMismatchError(
                f"{self.label} expects true or false", expected="bool", actual=value
            )
        return value

    def render_text(self, value: Any, settings: FormSettings) -> str:
        if value is None:
            return settings.empty_placeholder
        yes, no = settings.boolean_labels
        return yes if value else no

    def cursor_hint(self, value: Any, cursor: int) -> Optional[int]:
        return 0

    def handle_key(self, key: str, value: Any, cursor: int) -> Optional[KeyOutcome]:
        if key in (" ", "space", "up", "down", "left", "right"):
            return KeyOutcome(not bool(value), 0)
        if key in ("y", "Y"):
            return KeyOutcome(True, 0, changed=value is not True)
        if key in ("n", "N"):
            return KeyOutcome(False, 0, changed=value is not False)
        return None


# =============================================================================
# Group
# =============================================================================


class GroupControl(Control):
    """Ordered container of child controls.

    A group has no value of its own. Editing a group with a mapping of
    child key -> value validates every child before any is committed.
    Children are hidden/disabled whenever the group is.
    """

    kind = ControlKind.GROUP
    focusable = False

    def __init__(
        self,
        key: str,
        label: Optional[str] = None,
        *,
        children: Iterable[Control],
        **kwargs: Any,
    ) -> None:
        if kwargs.get("default") is not None:
            raise DefinitionError(
                f"Group '{key}' cannot have a default; set defaults on its children",
                control=key,
            )
        super().__init__(key, label, **kwargs)
        self._children: tuple[Control, ...] = tuple(children)
        seen: set[str] = set()
        for child in self._children:
            if child.key in seen:
                raise DefinitionError(
                    f"Group '{key}' has two children named '{child.key}'", control=key
                )
            seen.add(child.key)

    @property
    def children(self) -> Sequence[Control]:
        return self._children

    def child(self, key: str) -> Control:
        for child in self._children:
            if child.key == key:
                return child
        raise KeyError(key)

    def validate(self, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise TypeMismatchError(
                f"{self.label} expects a mapping of field values",
                expected="mapping",
                actual=value,
            )
        unknown = sorted(str(k) for k in value if k not in {c.key for c in self._children})
        if unknown:
            raise ConstraintViolatedError(
                f"{self.label} has no field(s): {', '.join(unknown)}"
            )
        return {key: self.child(key).validate(v) for key, v in value.items()}

    def render_text(self, value: Any, settings: FormSettings) -> str:
        return ""


# =============================================================================
# Static text
# =============================================================================


class StaticTextControl(Control):
    """Read-only text drawn between fields (notes, warnings, instructions).

    It cannot take focus and holds no value, but rules can still show,
    hide or disable it like any other control.
    """

    kind = ControlKind.STATIC_TEXT
    focusable = False

    def __init__(
        self,
        key: str,
        label: Optional[str] = None,
        *,
        text: str,
        **kwargs: Any,
    ) -> None:
        if kwargs.get("required") or kwargs.get("default") is not None:
            raise DefinitionError(
                f"Static text '{key}' cannot be required or have a default",
                control=key,
            )
        super().__init__(key, label, **kwargs)
        if not isinstance(text, str):
            raise DefinitionError(f"Static text '{key}' needs a string", control=key)
        self.text = text

    def validate(self, value: Any) -> Any:
        if value is None:
            return None
        raise TypeMismatchError(
            f"{self.label} displays text only", expected="None", actual=value
        )

    def render_text(self, value: Any, settings: FormSettings) -> str:
        return self.text
