"""Logical input events delivered by an input source.

Raw key decoding belongs to the input source; the engine only sees these
events. Key names are lowercase ("enter", "tab", "shift-tab", "escape",
"backspace", "delete", "left", "right", "up", "down", "home", "end",
"space") or a single printable character.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

__all__ = [
    "KeyPress",
    "SelectionChange",
    "SubmitRequested",
    "CancelRequested",
    "Event",
    "NAVIGATION_KEYS",
]

# Keys the form interprets itself instead of passing to the focused control
NAVIGATION_KEYS = frozenset({"enter", "tab", "shift-tab", "escape"})


@dataclass(frozen=True)
class KeyPress:
    """A key for the focused control, or a focus/navigation key."""

    key: str


@dataclass(frozen=True)
class SelectionChange:
    """Set a control's value directly (mouse pick, paste, scripted input)."""

    control: Union[int, str]
    value: Any


@dataclass(frozen=True)
class SubmitRequested:
    """The user asked to finish the form."""


@dataclass(frozen=True)
class CancelRequested:
    """The user asked to abandon the form."""


Event = Union[KeyPress, SelectionChange, SubmitRequested, CancelRequested]
