"""Structured exception hierarchy for the form engine.

Three families, matching how the engine reacts to them:

- DefinitionError: the static form definition is broken. Fatal at
  construction time, surfaced to the host before any session starts.
- ValidationError: a value was rejected. Recoverable, attached to the
  offending control, never aborts a session.
- NavigationError: a step transition was refused. Recoverable, leaves all
  state intact.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "FormEngineError",
    "DefinitionError",
    "CycleDetectedError",
    "DuplicateControlError",
    "UnknownControlError",
    "DefinitionFormatError",
    "ValidationError",
    "TypeMismatchError",
    "ConstraintViolatedError",
    "DerivationFailedError",
    "RuleFailedError",
    "NavigationError",
    "StepIncompleteError",
    "AtFirstStepError",
    "StepsRemainingError",
    "FormClosedError",
]


class FormEngineError(Exception):
    """Base exception for all form engine errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        control: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.control = control
        self.step = step
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if step or control:
            context = f"{step or '?'}:{control or '*'}"
            parts.insert(0, f"[{context}]")

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "control": self.control,
            "step": self.step,
            "details": self.details,
            "suggestion": self.suggestion,
        }


# =============================================================================
# Definition errors
# =============================================================================


class DefinitionError(FormEngineError):
    """The form definition is invalid.

    Raised while building a Form, never during a session.
    """


class CycleDetectedError(DefinitionError):
    """Adding a dependency edge would create a cycle."""

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        target: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.source = source
        self.target = target

        details = kwargs.pop("details", {})
        if source:
            details["source"] = source
        if target:
            details["target"] = target

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Dependencies must form a directed acyclic graph. Remove one of "
                "the edges on the cycle, or derive both controls from a common source."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class DuplicateControlError(DefinitionError):
    """Two controls share the same path."""


class UnknownControlError(DefinitionError, KeyError):
    """A step, dependency or edit references a control that does not exist."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return Exception.__str__(self)


class DefinitionFormatError(DefinitionError):
    """A declarative (YAML) form definition is malformed."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.location = location

        details = kwargs.pop("details", {})
        if location:
            details["location"] = location

        super().__init__(message, details=details, **kwargs)


# =============================================================================
# Validation errors
# =============================================================================


class ValidationError(FormEngineError):
    """A value was rejected for a control.

    ``reason`` is the short, user-facing text shown inline next to the control.
    """

    def __init__(self, reason: str, **kwargs: Any) -> None:
        self.reason = reason
        super().__init__(reason, **kwargs)


class TypeMismatchError(ValidationError):
    """The value's shape does not match the control kind."""

    def __init__(
        self,
        reason: str,
        *,
        expected: Optional[str] = None,
        actual: Any = None,
        **kwargs: Any,
    ) -> None:
        self.expected = expected
        self.actual = actual

        details = kwargs.pop("details", {})
        if expected:
            details["expected"] = expected
        if actual is not None:
            details["actual"] = type(actual).__name__

        super().__init__(reason, details=details, **kwargs)


class ConstraintViolatedError(ValidationError):
    """A kind-specific rule (pattern, range, membership, ...) failed."""


class DerivationFailedError(ValidationError):
    """A value derivation raised or produced a value the target rejects."""

    def __init__(
        self,
        reason: str,
        *,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.cause = cause

        details = kwargs.pop("details", {})
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(reason, details=details, **kwargs)


class RuleFailedError(DerivationFailedError):
    """A visibility or enablement rule raised; the rule reads as False."""


# =============================================================================
# Navigation errors
# =============================================================================


class NavigationError(FormEngineError):
    """A navigation request was refused; form state is unchanged."""


class StepIncompleteError(NavigationError):
    """The current step has invalid or missing values."""

    def __init__(
        self,
        message: str,
        *,
        incomplete: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.incomplete = incomplete or []

        details = kwargs.pop("details", {})
        if incomplete:
            details["incomplete"] = ", ".join(incomplete)

        super().__init__(message, details=details, **kwargs)


class AtFirstStepError(NavigationError):
    """There is no earlier step to retreat to."""


class StepsRemainingError(NavigationError):
    """Submission was requested while later steps still need input."""


class FormClosedError(NavigationError):
    """The form was already submitted or cancelled."""
