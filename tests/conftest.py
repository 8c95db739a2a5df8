"""Shared fixtures for form engine tests."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

import pytest

from stepform.models import (
    BooleanControl,
    Condition,
    Dependency,
    Form,
    GroupControl,
    MultiSelectControl,
    SingleSelectControl,
    SkipWhen,
    Step,
    TextControl,
)
from stepform.settings import FormSettings


def display_name(values: Mapping[str, Any]) -> Optional[str]:
    """Derivation used by the signup form: "alice (personal)"."""
    if not values.get("username"):
        return None
    return f"{values['username']} ({values['kind']})"


def build_signup_form(settings: FormSettings, **kwargs: Any) -> Form:
    """Three-step signup form.

    ControlIds (depth first): username 0, kind 1, newsletter 2,
    company_name 3, vat 4, topics 5, address 6, address.street 7,
    address.city 8, display_name 9.
    """
    account = Step(
        "account",
        [
            TextControl("username", required=True, force_lowercase=True, min_length=3),
            SingleSelectControl(
                "kind",
                options=[("personal", "Personal"), ("business", "Business")],
                default="personal",
            ),
            BooleanControl("newsletter", "Send me news"),
        ],
    )
    company = Step(
        "company",
        [
            TextControl("company_name", "Company", required=True),
            TextControl("vat", "VAT number", pattern=r"[A-Z]{2}\d{8}"),
        ],
        skip_rule=SkipWhen("kind", Condition.not_equals("business")),
    )
    extras = Step(
        "extras",
        [
            MultiSelectControl("topics", options=["releases", "security", "events"]),
            GroupControl(
                "address",
                children=[TextControl("street"), TextControl("city", required=True)],
            ),
            TextControl("display_name"),
        ],
    )
    dependencies = [
        Dependency.show_when("topics", "newsletter"),
        *Dependency.derive("display_name", ["username", "kind"], display_name),
    ]
    return Form(
        [account, company, extras],
        dependencies,
        name="signup",
        settings=settings,
        session_id="test",
        **kwargs,
    )


@pytest.fixture
def settings() -> FormSettings:
    """Default settings, independent of any settings file in the cwd."""
    return FormSettings()


@pytest.fixture
def signup_form(settings: FormSettings) -> Form:
    """A fresh signup form on its first step."""
    return build_signup_form(settings)


@pytest.fixture
def make_signup_form(settings: FormSettings) -> Callable[..., Form]:
    """Factory for signup forms with custom settings."""

    def factory(**overrides: Any) -> Form:
        return build_signup_form(FormSettings(**overrides) if overrides else settings)

    return factory


@pytest.fixture
def tmp_definition(tmp_path):
    """A YAML form definition on disk."""
    path = tmp_path / "setup.yaml"
    path.write_text(
        """
name: project-setup
steps:
  - key: basics
    title: Basics
    controls:
      - {key: name, type: text, required: true, force_lowercase: true}
      - key: kind
        type: single_select
        options:
          - library
          - application
          - {value: docs, label: Documentation, description: Docs only}
        default: library
      - {key: publish, type: boolean}
      - key: registry
        type: text
        visible_when: {control: publish, equals: true}
      - {key: slug, type: text}
  - key: publishing
    skip_when: {control: publish, equals: false}
    controls:
      - {key: token, type: text, secret: true, required: true}
dependencies:
  - {source: kind, target: registry, effect: enablement, not_equals: docs}
derivations:
  - {target: slug, template: "{name}-{kind}"}
""",
        encoding="utf-8",
    )
    return path
