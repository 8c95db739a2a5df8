"""Utilities for building forms from declarative definitions."""

from stepform.utils.definition_loader import (
    copy_derivation,
    form_from_dict,
    form_from_yaml,
    load_form,
    template_derivation,
)

__all__ = [
    "load_form",
    "form_from_yaml",
    "form_from_dict",
    "template_derivation",
    "copy_derivation",
]
