"""Form engine models: controls, state, dependencies, steps and the Form.

Nothing here depends on a terminal; every class can be driven and tested
headless through ``Form.edit`` / ``Form.handle_event``.
"""

from stepform.models.conditions import Action, Condition, Operator, condition_from_dict
from stepform.models.controls import (
    BooleanControl,
    Control,
    ControlKind,
    GroupControl,
    KeyOutcome,
    MultiSelectControl,
    Option,
    SingleSelectControl,
    StaticTextControl,
    TextControl,
)
from stepform.models.dependency_graph import (
    Dependency,
    DependencyEdge,
    DependencyGraph,
    Effect,
)
from stepform.models.events import (
    CancelRequested,
    Event,
    KeyPress,
    SelectionChange,
    SubmitRequested,
)
from stepform.models.form import Form, FormStatus
from stepform.models.result import FormResult, ResultEntry
from stepform.models.step import SkipWhen, Step, StepStatus
from stepform.models.value_store import ControlId, ControlState, ValueSource, ValueStore

__all__ = [
    "Action",
    "Condition",
    "Operator",
    "condition_from_dict",
    "Control",
    "ControlKind",
    "KeyOutcome",
    "Option",
    "TextControl",
    "SingleSelectControl",
    "MultiSelectControl",
    "BooleanControl",
    "GroupControl",
    "StaticTextControl",
    "Dependency",
    "DependencyEdge",
    "DependencyGraph",
    "Effect",
    "Event",
    "KeyPress",
    "SelectionChange",
    "SubmitRequested",
    "CancelRequested",
    "Form",
    "FormStatus",
    "FormResult",
    "ResultEntry",
    "Step",
    "StepStatus",
    "SkipWhen",
    "ControlId",
    "ControlState",
    "ValueSource",
    "ValueStore",
]
