"""Declarative rules over a single control value.

A Condition evaluates one source value and answers whether the dependent
control should be shown (or enabled). Conditions are plain callables, so
anywhere a rule is accepted a bare ``Callable[[Any], bool]`` works too.

Examples:
    Condition.equals(True)                  # show when source is True
    Condition.is_empty(action=Action.HIDE)  # hide while source is empty
    Condition.one_of(["api", "db"])
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Union

__all__ = [
    "Operator",
    "Action",
    "Condition",
    "Rule",
    "is_empty_value",
    "condition_from_dict",
]


class Operator(str, Enum):
    """How a condition evaluates its source value."""

    IS_EMPTY = "is_empty"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    ONE_OF = "one_of"
    TRUTHY = "truthy"


class Action(str, Enum):
    """What a true evaluation means for the target."""

    SHOW = "show"  # true -> visible/enabled
    HIDE = "hide"  # true -> hidden/disabled


def is_empty_value(value: Any) -> bool:
    """Check if a value counts as "no answer"."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (tuple, list, set, frozenset, dict)):
        return len(value) == 0
    return False


@dataclass(frozen=True)
class Condition:
    """A single-value predicate with a show/hide action."""

    operator: Operator
    operand: Any = None
    action: Action = Action.SHOW

    @classmethod
    def is_empty(cls, action: Action = Action.SHOW) -> "Condition":
        return cls(Operator.IS_EMPTY, None, action)

    @classmethod
    def equals(cls, value: Any, action: Action = Action.SHOW) -> "Condition":
        return cls(Operator.EQUALS, value, action)

    @classmethod
    def not_equals(cls, value: Any, action: Action = Action.SHOW) -> "Condition":
        return cls(Operator.NOT_EQUALS, value, action)

    @classmethod
    def one_of(cls, values: Iterable[Any], action: Action = Action.SHOW) -> "Condition":
        return cls(Operator.ONE_OF, tuple(values), action)

    @classmethod
    def truthy(cls, action: Action = Action.SHOW) -> "Condition":
        return cls(Operator.TRUTHY, None, action)

    def evaluate(self, value: Any) -> bool:
        """Evaluate the operator, ignoring the action."""
        if self.operator is Operator.IS_EMPTY:
            return is_empty_value(value)
        if self.operator is Operator.EQUALS:
            return value == self.operand
        if self.operator is Operator.NOT_EQUALS:
            return value != self.operand
        if self.operator is Operator.ONE_OF:
            return value in self.operand
        return bool(value) and not is_empty_value(value)

    def __call__(self, value: Any) -> bool:
        result = self.evaluate(value)
        return result if self.action is Action.SHOW else not result

    def describe(self) -> str:
        """Human-readable form, used in logs and error messages."""
        if self.operator in (Operator.IS_EMPTY, Operator.TRUTHY):
            text = self.operator.value
        else:
            text = f"{self.operator.value} {self.operand!r}"
        return text if self.action is Action.SHOW else f"not ({text})"


Rule = Union[Condition, Callable[[Any], bool]]


def condition_from_dict(data: Mapping[str, Any]) -> Condition:
    """Build a Condition from its declarative form.

    Exactly one operator key is expected, e.g. ``{"equals": "api"}``,
    ``{"one_of": [a, b]}`` or ``{"is_empty": true}``. An optional
    ``action: hide`` inverts the outcome.

    Raises:
        ValueError: If no operator or more than one operator is given
    """
    action = Action(data.get("action", Action.SHOW.value))
    operators = [op for op in Operator if op.value in data]
    if len(operators) != 1:
        valid = ", ".join(op.value for op in Operator)
        raise ValueError(f"Condition needs exactly one of: {valid}")

    operator = operators[0]
    operand = data[operator.value]
    if operator is Operator.ONE_OF:
        if not isinstance(operand, (list, tuple)):
            raise ValueError("one_of expects a list of values")
        return Condition.one_of(operand, action)
    if operator in (Operator.IS_EMPTY, Operator.TRUTHY):
        if operand is False:
            # "is_empty: false" reads as the negation
            action = Action.HIDE if action is Action.SHOW else Action.SHOW
        return Condition(operator, None, action)
    return Condition(operator, operand, action)
