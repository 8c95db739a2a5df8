"""Shared infrastructure: error hierarchy and logging helpers."""

from stepform.lib.errors import (
    AtFirstStepError,
    ConstraintViolatedError,
    CycleDetectedError,
    DefinitionError,
    DefinitionFormatError,
    DerivationFailedError,
    DuplicateControlError,
    FormClosedError,
    FormEngineError,
    NavigationError,
    RuleFailedError,
    StepIncompleteError,
    StepsRemainingError,
    TypeMismatchError,
    UnknownControlError,
    ValidationError,
)
from stepform.lib.observability import (
    FormLogger,
    JSONFormatter,
    get_form_logger,
    setup_logging,
)

__all__ = [
    "AtFirstStepError",
    "ConstraintViolatedError",
    "CycleDetectedError",
    "DefinitionError",
    "DefinitionFormatError",
    "DerivationFailedError",
    "DuplicateControlError",
    "FormClosedError",
    "FormEngineError",
    "NavigationError",
    "RuleFailedError",
    "StepIncompleteError",
    "StepsRemainingError",
    "TypeMismatchError",
    "UnknownControlError",
    "ValidationError",
    "FormLogger",
    "JSONFormatter",
    "get_form_logger",
    "setup_logging",
]
