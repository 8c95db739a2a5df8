"""Build forms from YAML definitions.

A definition describes steps, their controls, dependencies, skip rules and
derivations declaratively:

    name: project-setup
    steps:
      - key: basics
        title: Basics
        controls:
          - {key: name, type: text, required: true, force_lowercase: true}
          - key: kind
            type: single_select
            options: [library, application, {value: docs, label: Documentation}]
          - {key: publish, type: boolean}
          - key: registry
            type: text
            visible_when: {control: publish, equals: true}
      - key: publishing
        skip_when: {control: publish, equals: false}
        controls:
          - {key: token, type: text, secret: true, required: true}
    dependencies:
      - {source: kind, target: registry, effect: enablement, not_equals: docs}
    derivations:
      - {target: slug, template: "{name}-{kind}"}
      - {target: display, copy: name}
      - {target: total, function: add_up, sources: [a, b]}

Named derivation functions come from a registry supplied by the host.
Control paths inside groups are written in full ("address.city").
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import yaml

from stepform.lib.errors import DefinitionError, DefinitionFormatError
from stepform.models.conditions import Condition, Operator, condition_from_dict
from stepform.models.controls import (
    BooleanControl,
    Control,
    GroupControl,
    MultiSelectControl,
    SingleSelectControl,
    StaticTextControl,
    TextControl,
)
from stepform.models.dependency_graph import Dependency, Derivation, Effect
from stepform.models.form import Form
from stepform.models.step import SkipWhen, Step
from stepform.settings import FormSettings

logger = logging.getLogger(__name__)

__all__ = ["load_form", "form_from_yaml", "form_from_dict", "template_derivation", "copy_derivation"]

# Keys every control accepts
_COMMON_KEYS = {"key", "type", "label", "help", "required", "default", "visible_when", "enabled_when"}

# Extra keys per control type, mapped to constructor arguments
_TYPE_KEYS: dict[str, set[str]] = {
    "text": {
        "pattern",
        "min_length",
        "max_length",
        "numeric",
        "minimum",
        "maximum",
        "force_lowercase",
        "secret",
        "multiline",
        "max_line_length",
        "trim_trailing_whitespace",
    },
    "single_select": {"options"},
    "multi_select": {"options", "min_selected", "max_selected"},
    "boolean": set(),
    "group": {"controls"},
    "static_text": {"text"},
}

_CONTROL_TYPES: dict[str, type[Control]] = {
    "text": TextControl,
    "single_select": SingleSelectControl,
    "multi_select": MultiSelectControl,
    "boolean": BooleanControl,
    "group": GroupControl,
    "static_text": StaticTextControl,
}

_STEP_KEYS = {"key", "title", "description", "controls", "skip_when"}

_CONDITION_KEYS = {"control", "action"} | {op.value for op in Operator}

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


def template_derivation(template: str) -> tuple[list[str], Derivation]:
    """Derivation that fills ``{path}`` placeholders from source values.

    Returns:
        (source paths, derivation function). Missing values render as "";
        an all-empty result derives None.
    """
    sources = list(dict.fromkeys(_PLACEHOLDER.findall(template)))
    if not sources:
        raise DefinitionError(f"Template {template!r} has no {{placeholders}}")

    def derive(values: Mapping[str, Any]) -> Any:
        if all(values.get(s) in (None, "", ()) for s in sources):
            return None

        def fill(match: "re.Match[str]") -> str:
            value = values.get(match.group(1))
            if value is None:
                return ""
            if isinstance(value, (tuple, list)):
                return ", ".join(str(v) for v in value)
            return str(value)

        return _PLACEHOLDER.sub(fill, template)

    return sources, derive


def copy_derivation(source: str) -> Derivation:
    """Derivation that mirrors one source value."""

    def derive(values: Mapping[str, Any]) -> Any:
        return values.get(source)

    return derive


def _require_mapping(data: Any, location: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise DefinitionFormatError(
            f"Expected a mapping, got {type(data).__name__}", location=location
        )
    return data


def _require_list(data: Any, location: str) -> list[Any]:
    if not isinstance(data, list):
        raise DefinitionFormatError(
            f"Expected a list, got {type(data).__name__}", location=location
        )
    return data


def _check_keys(data: Mapping[str, Any], allowed: set[str], location: str) -> None:
    unknown = sorted(str(k) for k in data if k not in allowed)
    if unknown:
        raise DefinitionFormatError(
            f"Unknown key(s): {', '.join(unknown)}",
            location=location,
            suggestion=f"Allowed keys: {', '.join(sorted(allowed))}",
        )


def _condition(data: Mapping[str, Any], location: str) -> tuple[str, Condition]:
    """Split ``{control: path, <operator>: operand}`` into path and Condition."""
    data = _require_mapping(data, location)
    _check_keys(data, _CONDITION_KEYS, location)
    if "control" not in data:
        raise DefinitionFormatError("Condition needs a 'control'", location=location)
    rule = {k: v for k, v in data.items() if k != "control"}
    if not any(op.value in rule for op in Operator):
        rule[Operator.TRUTHY.value] = True
    try:
        return str(data["control"]), condition_from_dict(rule)
    except ValueError as exc:
        raise DefinitionFormatError(str(exc), location=location) from exc


def _conditions(data: Any, location: str) -> list[tuple[str, Condition]]:
    # A single condition or a list of them (all must hold)
    if isinstance(data, list):
        return [_condition(item, f"{location}[{i}]") for i, item in enumerate(data)]
    return [_condition(data, location)]


class _Builder:
    """Accumulates controls and dependencies while walking a definition."""

    def __init__(self, derivations: Mapping[str, Callable[..., Any]]) -> None:
        self.registry = derivations
        self.dependencies: list[Dependency] = []

    def control(self, data: Any, prefix: str, location: str) -> Control:
        data = _require_mapping(data, location)
        kind = data.get("type")
        if not isinstance(kind, str) or kind not in _CONTROL_TYPES:
            raise DefinitionFormatError(
                f"Unknown control type {kind!r}",
                location=location,
                suggestion=f"Use one of: {', '.join(_CONTROL_TYPES)}",
            )
        _check_keys(data, _COMMON_KEYS | _TYPE_KEYS[kind], location)
        if "key" not in data:
            raise DefinitionFormatError("Control needs a 'key'", location=location)

        key = str(data["key"])
        path = f"{prefix}.{key}" if prefix else key
        kwargs: dict[str, Any] = {
            "help_text": str(data.get("help", "")),
            "required": bool(data.get("required", False)),
        }
        if "default" in data:
            kwargs["default"] = data["default"]
        for name in _TYPE_KEYS[kind] - {"controls"}:
            if name in data:
                kwargs[name] = data[name]
        if kind == "group":
            children = _require_list(data.get("controls", []), f"{location}.controls")
            kwargs["children"] = [
                self.control(child, path, f"{location}.controls[{i}]")
                for i, child in enumerate(children)
            ]
        if "options" in kwargs:
            kwargs["options"] = _require_list(kwargs["options"], f"{location}.options")

        try:
            control = _CONTROL_TYPES[kind](key, data.get("label"), **kwargs)
        except DefinitionError:
            raise
        except (TypeError, ValueError, re.error) as exc:
            raise DefinitionFormatError(str(exc), location=location) from exc

        if "visible_when" in data:
            for source, condition in _conditions(data["visible_when"], f"{location}.visible_when"):
                self.dependencies.append(Dependency.show_when(path, source, condition))
        if "enabled_when" in data:
            for source, condition in _conditions(data["enabled_when"], f"{location}.enabled_when"):
                self.dependencies.append(Dependency.enable_when(path, source, condition))
        return control

    def step(self, data: Any, location: str) -> Step:
        data = _require_mapping(data, location)
        _check_keys(data, _STEP_KEYS, location)
        if "key" not in data:
            raise DefinitionFormatError("Step needs a 'key'", location=location)
        controls = _require_list(data.get("controls", []), f"{location}.controls")
        skip_rule = None
        if "skip_when" in data:
            source, condition = _condition(data["skip_when"], f"{location}.skip_when")
            skip_rule = SkipWhen(source, condition)
        return Step(
            key=str(data["key"]),
            controls=[
                self.control(c, "", f"{location}.controls[{i}]") for i, c in enumerate(controls)
            ],
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            skip_rule=skip_rule,
        )

    def dependency(self, data: Any, location: str) -> None:
        data = _require_mapping(data, location)
        for required in ("source", "target", "effect"):
            if required not in data:
                raise DefinitionFormatError(f"Dependency needs '{required}'", location=location)
        try:
            effect = Effect(data["effect"])
        except ValueError:
            raise DefinitionFormatError(
                f"Unknown effect {data['effect']!r}",
                location=location,
                suggestion="Use visibility or enablement; value derivations go under 'derivations'",
            ) from None
        if effect is Effect.VALUE_DERIVATION:
            raise DefinitionFormatError(
                "Value derivations belong under 'derivations'", location=location
            )
        rule_data = {k: v for k, v in data.items() if k not in ("source", "target", "effect")}
        _check_keys(rule_data, _CONDITION_KEYS - {"control"}, location)
        _, condition = _condition({"control": data["source"], **rule_data}, location)
        self.dependencies.append(
            Dependency(str(data["source"]), str(data["target"]), effect, condition)
        )

    def derivation(self, data: Any, location: str) -> None:
        data = _require_mapping(data, location)
        _check_keys(data, {"target", "template", "copy", "function", "sources"}, location)
        if "target" not in data:
            raise DefinitionFormatError("Derivation needs a 'target'", location=location)
        modes = [m for m in ("template", "copy", "function") if m in data]
        if len(modes) != 1:
            raise DefinitionFormatError(
                "Derivation needs exactly one of: template, copy, function", location=location
            )

        target = str(data["target"])
        mode = modes[0]
        if mode == "template":
            try:
                sources, function = template_derivation(str(data["template"]))
            except DefinitionError as exc:
                raise DefinitionFormatError(exc.message, location=location) from exc
        elif mode == "copy":
            sources = [str(data["copy"])]
            function = copy_derivation(sources[0])
        else:
            name = str(data["function"])
            if name not in self.registry:
                raise DefinitionFormatError(
                    f"Unknown derivation function '{name}'",
                    location=location,
                    suggestion="Pass it in the derivations registry when loading",
                )
            sources = [str(s) for s in _require_list(data.get("sources", []), f"{location}.sources")]
            if not sources:
                raise DefinitionFormatError("Derivation needs 'sources'", location=location)
            function = self.registry[name]
        self.dependencies.extend(Dependency.derive(target, sources, function))


def form_from_dict(
    data: Any,
    *,
    derivations: Optional[Mapping[str, Callable[..., Any]]] = None,
    settings: Optional[FormSettings] = None,
    session_id: Optional[str] = None,
) -> Form:
    """Build a Form from a parsed definition.

    Raises:
        DefinitionFormatError: The document does not have the expected shape
        DefinitionError: The definition is inconsistent (cycles, unknown paths, ...)
    """
    data = _require_mapping(data, "<root>")
    _check_keys(data, {"name", "steps", "dependencies", "derivations"}, "<root>")
    builder = _Builder(derivations or {})

    steps = _require_list(data.get("steps"), "steps")
    built_steps = [builder.step(s, f"steps[{i}]") for i, s in enumerate(steps)]
    for i, dep in enumerate(_require_list(data.get("dependencies", []), "dependencies")):
        builder.dependency(dep, f"dependencies[{i}]")
    for i, derivation in enumerate(_require_list(data.get("derivations", []), "derivations")):
        builder.derivation(derivation, f"derivations[{i}]")

    name = str(data.get("name", "form"))
    logger.debug(
        "Parsed definition '%s': %d step(s), %d dependency definition(s)",
        name,
        len(built_steps),
        len(builder.dependencies),
    )
    return Form(
        built_steps,
        builder.dependencies,
        name=name,
        settings=settings,
        session_id=session_id,
    )


def form_from_yaml(text: str, **kwargs: Any) -> Form:
    """Build a Form from YAML text; keyword arguments as for ``form_from_dict``."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise DefinitionFormatError(f"Invalid YAML: {exc}") from exc
    return form_from_dict(data, **kwargs)


def load_form(path: Path | str, **kwargs: Any) -> Form:
    """Load a Form definition from a YAML file."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        text = f.read()
    logger.info("Loading form definition from %s", path)
    return form_from_yaml(text, **kwargs)
