"""Terminal form engine: multi-step forms with dependent fields.

Forms are built from Python objects or YAML definitions, driven by logical
input events, and rendered through draw instructions. The prompt_toolkit
adapter runs them interactively.

Usage:
    from stepform import load_form, run_terminal

    form = load_form("setup.yaml")
    result = run_terminal(form)
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    "Form",
    "FormStatus",
    "Step",
    "Dependency",
    "Condition",
    "TextControl",
    "SingleSelectControl",
    "MultiSelectControl",
    "BooleanControl",
    "GroupControl",
    "StaticTextControl",
    "FormResult",
    "load_form",
    "run_session",
    "run_terminal",
]

_MODELS = {
    "Form",
    "FormStatus",
    "Step",
    "Dependency",
    "Condition",
    "TextControl",
    "SingleSelectControl",
    "MultiSelectControl",
    "BooleanControl",
    "GroupControl",
    "StaticTextControl",
    "FormResult",
}


def __getattr__(name: str):
    """Lazy import of engine components."""
    if name in _MODELS:
        from stepform import models

        return getattr(models, name)
    if name == "load_form":
        from stepform.utils.definition_loader import load_form
        return load_form
    if name == "run_session":
        from stepform.session import run_session
        return run_session
    if name == "run_terminal":
        from stepform.render.terminal import run_terminal
        return run_terminal
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
