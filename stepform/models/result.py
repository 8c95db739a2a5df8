"""The form result handed to the host application on submission."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterator

import yaml

from stepform.models.value_store import ControlId

__all__ = ["ResultEntry", "FormResult"]


@dataclass(frozen=True)
class ResultEntry:
    """One control's final value."""

    control_id: ControlId
    path: str
    label: str
    value: Any
    text: str
    visible: bool


@dataclass(frozen=True)
class FormResult(Mapping):
    """Final values keyed by path ("email", "address.city").

    Values are the controls' result values: numeric text controls
    yield numbers, multi-selects yield tuples.
    """

    form_name: str
    entries: tuple[ResultEntry, ...] = field(default=())

    def __getitem__(self, path: str) -> Any:
        for entry in self.entries:
            if entry.path == path:
                return entry.value
        raise KeyError(path)

    def __iter__(self) -> Iterator[str]:
        return (entry.path for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def by_id(self) -> dict[ControlId, Any]:
        return {entry.control_id: entry.value for entry in self.entries}

    def visible_only(self) -> dict[str, Any]:
        """Values of controls that were visible at submission."""
        return {e.path: e.value for e in self.entries if e.visible}

    def as_nested(self, visible_only: bool = False) -> dict[str, Any]:
        """Values as nested dicts, one level per group."""
        nested: dict[str, Any] = {}
        for entry in self.entries:
            if visible_only and not entry.visible:
                continue
            *parents, leaf = entry.path.split(".")
            node = nested
            for part in parents:
                node = node.setdefault(part, {})
            node[leaf] = entry.value
        return nested

    def summary_lines(self) -> list[str]:
        """``Label: text`` for every visible control that has a value."""
        return [
            f"{e.label}: {e.text}"
            for e in self.entries
            if e.visible and e.value not in (None, "", ())
        ]

    def to_yaml(self, visible_only: bool = True) -> str:
        """Serialize the (nested) result as YAML."""
        data = _plain(self.as_nested(visible_only=visible_only))
        return yaml.safe_dump(
            data,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )


def _plain(value: Any) -> Any:
    # safe_dump cannot represent tuples
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (tuple, list)):
        return [_plain(v) for v in value]
    return value
