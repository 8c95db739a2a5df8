"""Tests for Form construction, editing and the navigation state machine."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from stepform.lib.errors import (
    AtFirstStepError,
    CycleDetectedError,
    DefinitionError,
    DuplicateControlError,
    FormClosedError,
    StepIncompleteError,
    StepsRemainingError,
    UnknownControlError,
)
from stepform.models import (
    BooleanControl,
    Condition,
    Dependency,
    Effect,
    Form,
    FormStatus,
    GroupControl,
    SkipWhen,
    StaticTextControl,
    Step,
    StepStatus,
    TextControl,
    ValueSource,
)
from stepform.settings import FormSettings


def complete_signup(form: Form) -> None:
    """Fill the signup form up to all_steps_complete."""
    form.edit("username", "alice")
    form.advance()
    form.edit("address.city", "Oslo")
    form.advance()


class TestConstruction:
    """Tests for definition checks at construction."""

    def test_initial_state(self, signup_form: Form) -> None:
        """The first non-skipped step is active and defaults are applied."""
        assert signup_form.status is FormStatus.IN_PROGRESS
        assert signup_form.current_step_index == 0
        assert signup_form.statuses == [
            StepStatus.ACTIVE,
            StepStatus.NOT_VISITED,
            StepStatus.NOT_VISITED,
        ]
        assert signup_form.value("kind") == "personal"
        assert signup_form.state("kind").source is ValueSource.DEFAULT
        assert signup_form.value("newsletter") is False
        assert signup_form.state("topics").is_visible is False
        assert signup_form.focused == signup_form.resolve("username")

    def test_ids_are_depth_first(self, signup_form: Form) -> None:
        """Children follow their group."""
        assert signup_form.resolve("address") == 6
        assert signup_form.resolve("address.street") == 7
        assert signup_form.resolve("address.city") == 8
        assert signup_form.resolve(9) == 9

    def test_no_steps(self, settings: FormSettings) -> None:
        """A form needs at least one step."""
        with pytest.raises(DefinitionError):
            Form([], settings=settings)

    def test_duplicate_step_key(self, settings: FormSettings) -> None:
        """Step keys are unique."""
        with pytest.raises(DefinitionError, match="Duplicate step key"):
            Form([Step("s", [TextControl("a")]), Step("s", [TextControl("b")])], settings=settings)

    def test_duplicate_path(self, settings: FormSettings) -> None:
        """Two controls may not share a path, even across steps."""
        with pytest.raises(DuplicateControlError):
            Form([Step("one", [TextControl("a")]), Step("two", [TextControl("a")])], settings=settings)

    def test_shared_control_object(self, settings: FormSettings) -> None:
        """One control object cannot appear twice."""
        shared = TextControl("a")
        with pytest.raises(DefinitionError, match="more than one place"):
            Form(
                [Step("one", [GroupControl("g", children=[shared]), shared])],
                settings=settings,
            )

    def test_unknown_dependency_path(self, settings: FormSettings) -> None:
        """Dependencies must name existing controls."""
        with pytest.raises(UnknownControlError, match="missing"):
            Form(
                [Step("s", [TextControl("a")])],
                [Dependency.show_when("a", "missing")],
                settings=settings,
            )

    def test_cycle_in_definition(self, settings: FormSettings) -> None:
        """Cyclic dependencies are rejected at construction."""
        with pytest.raises(CycleDetectedError):
            Form(
                [Step("s", [BooleanControl("a"), BooleanControl("b")])],
                [Dependency.show_when("a", "b"), Dependency.enable_when("b", "a")],
                settings=settings,
            )

    def test_invalid_default(self, settings: FormSettings) -> None:
        """Defaults are validated when the form is built."""
        with pytest.raises(DefinitionError, match="Invalid default"):
            Form([Step("s", [TextControl("code", pattern=r"\d+", default="abc")])], settings=settings)

    def test_all_steps_skipped(self, settings: FormSettings) -> None:
        """If every step is skipped the form starts complete."""
        form = Form(
            [
                Step("a", [TextControl("x")], skip_rule=lambda values: True),
                Step("b", [TextControl("y")], skip_rule=lambda values: True),
            ],
            settings=settings,
        )
        assert form.status is FormStatus.ALL_STEPS_COMPLETE
        assert form.current_step_index is None
        assert form.statuses == [StepStatus.SKIPPED, StepStatus.SKIPPED]
        with pytest.raises(AtFirstStepError):
            form.retreat()
        assert form.submit().visible_only() == {}


class TestEdit:
    """Tests for Form.edit."""

    def test_edit_commits_and_derives(self, signup_form: Form) -> None:
        """A valid edit is normalized and propagated before edit returns."""
        assert signup_form.edit("username", "Alice") is True
        assert signup_form.value("username") == "alice"
        assert signup_form.state("username").source is ValueSource.LOCAL
        assert signup_form.value("display_name") == "alice (personal)"
        assert signup_form.state("display_name").source is ValueSource.DERIVED

        signup_form.edit("kind", "business")
        assert signup_form.value("display_name") == "alice (business)"

    def test_rejected_edit_keeps_value(self, signup_form: Form) -> None:
        """Validation failures are recorded, not raised."""
        signup_form.edit("vat", "NO12345678")
        assert signup_form.edit("vat", "bad") is False

        state = signup_form.state("vat")
        assert state.value == "NO12345678"
        assert state.is_valid is False
        assert state.validation_error == "VAT number does not match the expected format"

    def test_type_mismatch_recorded(self, signup_form: Form) -> None:
        """Wrong-typed values flag the control."""
        assert signup_form.edit("newsletter", "yes") is False
        assert signup_form.state("newsletter").is_valid is False
        assert signup_form.value("newsletter") is False

    def test_hidden_edit_ignored(self, signup_form: Form) -> None:
        """Edits to hidden controls are dropped."""
        assert signup_form.edit("topics", ["releases"]) is False
        assert signup_form.value("topics") is None
        assert signup_form.state("topics").is_valid is True

    def test_hiding_retains_value(self, signup_form: Form) -> None:
        """Hiding a control never clears it."""
        signup_form.edit("newsletter", True)
        signup_form.edit("topics", ["security"])
        signup_form.edit("newsletter", False)

        state = signup_form.state("topics")
        assert state.is_visible is False
        assert state.is_enabled is False
        assert state.value == ("security",)

    def test_invisible_implies_disabled_everywhere(self, signup_form: Form) -> None:
        """No control is ever enabled while hidden."""
        signup_form.edit("newsletter", True)
        signup_form.edit("newsletter", False)
        for state in signup_form.store.states():
            assert state.is_visible or not state.is_enabled

    def test_unknown_control(self, signup_form: Form) -> None:
        """Unknown paths and ids raise."""
        with pytest.raises(UnknownControlError):
            signup_form.edit("nope", "x")
        with pytest.raises(UnknownControlError):
            signup_form.edit(99, "x")

    def test_manual_value_overwritten_by_derivation(self, signup_form: Form) -> None:
        """A later source change re-derives the target."""
        signup_form.edit("display_name", "Custom")
        assert signup_form.state("display_name").source is ValueSource.LOCAL

        signup_form.edit("username", "bob")
        assert signup_form.value("display_name") == "bob (personal)"
        assert signup_form.state("display_name").is_derived()

    def test_derivation_failure_isolated(self, settings: FormSettings) -> None:
        """A failing derivation invalidates only its target."""

        def shout(values: Mapping[str, Any]) -> str:
            if values["word"] == "boom":
                raise RuntimeError("exploded")
            return values["word"].upper() if values["word"] else None

        form = Form(
            [Step("s", [TextControl("word"), TextControl("loud"), TextControl("other")])],
            Dependency.derive("loud", ["word"], shout),
            settings=settings,
        )
        assert form.edit("word", "boom") is True
        assert form.state("word").is_valid is True
        assert form.state("loud").is_valid is False
        assert form.state("other").is_valid is True
        assert form.steps[0].is_complete(form.store) is False

        form.edit("word", "ok")
        assert form.value("loud") == "OK"
        assert form.state("loud").is_valid is True


class TestGroupEdit:
    """Tests for editing a group with a mapping."""

    def test_group_commits_all_children(self, signup_form: Form) -> None:
        """Every child in the mapping is committed."""
        assert signup_form.edit("address", {"street": "Main 1", "city": "Oslo"}) is True
        assert signup_form.value("address.street") == "Main 1"
        assert signup_form.value("address.city") == "Oslo"

    def test_group_is_all_or_nothing(self, signup_form: Form) -> None:
        """One bad child rejects the whole group edit."""
        signup_form.edit("address.street", "Old road")
        assert signup_form.edit("address", {"street": "New road", "city": 5}) is False

        assert signup_form.value("address.street") == "Old road"
        assert signup_form.state("address.city").is_valid is False
        assert signup_form.state("address").validation_error == "1 field(s) need attention"

    def test_group_rejects_unknown_keys(self, signup_form: Form) -> None:
        """Only child keys are accepted."""
        assert signup_form.edit("address", {"zip": "0150"}) is False
        assert "zip" in signup_form.state("address").validation_error

    def test_group_rejects_non_mapping(self, signup_form: Form) -> None:
        """Groups take a mapping."""
        assert signup_form.edit("address", "Oslo") is False
        assert signup_form.state("address").is_valid is False

    def test_group_none_clears_children(self, signup_form: Form) -> None:
        """None clears every child."""
        signup_form.edit("address", {"street": "Main 1", "city": "Oslo"})
        assert signup_form.edit("address", None) is True
        assert signup_form.value("address.street") is None
        assert signup_form.value("address.city") is None


class TestAdvance:
    """Tests for Form.advance."""

    def test_incomplete_step_refused(self, signup_form: Form) -> None:
        """Advancing an incomplete step raises and changes nothing."""
        statuses = list(signup_form.statuses)
        with pytest.raises(StepIncompleteError) as exc_info:
            signup_form.advance()

        assert exc_info.value.incomplete == ["username"]
        assert exc_info.value.step == "account"
        assert signup_form.statuses == statuses
        assert signup_form.current_step_index == 0

    def test_skipped_step_passed_over(self, signup_form: Form) -> None:
        """A step whose skip rule holds is marked Skipped."""
        signup_form.edit("username", "alice")
        signup_form.advance()

        assert signup_form.current_step_index == 2
        assert signup_form.statuses == [
            StepStatus.COMPLETED,
            StepStatus.SKIPPED,
            StepStatus.ACTIVE,
        ]
        assert signup_form.focused == signup_form.resolve("address.street")

    def test_skip_rule_evaluated_at_navigation(self, signup_form: Form) -> None:
        """Changing the skip source before advancing un-skips the step."""
        signup_form.edit("username", "alice")
        signup_form.edit("kind", "business")
        signup_form.advance()

        assert signup_form.current_step_index == 1
        assert signup_form.step_status("company") is StepStatus.ACTIVE

    def test_last_step_completes_form(self, signup_form: Form) -> None:
        """Advancing past the last step reaches all_steps_complete."""
        complete_signup(signup_form)
        assert signup_form.status is FormStatus.ALL_STEPS_COMPLETE
        assert signup_form.statuses[2] is StepStatus.COMPLETED
        assert signup_form.focused is None

    def test_advance_when_complete_is_noop(self, signup_form: Form) -> None:
        """advance() in all_steps_complete changes nothing."""
        complete_signup(signup_form)
        assert signup_form.advance() is FormStatus.ALL_STEPS_COMPLETE
        assert signup_form.current_step_index == 2


class TestRetreat:
    """Tests for Form.retreat."""

    def test_retreat_at_first_step(self, signup_form: Form) -> None:
        """Retreating from the first step raises and changes nothing."""
        with pytest.raises(AtFirstStepError):
            signup_form.retreat()
        assert signup_form.current_step_index == 0
        assert signup_form.statuses[0] is StepStatus.ACTIVE

    def test_retreat_skips_skipped_steps(self, signup_form: Form) -> None:
        """Retreat lands on the previous non-skipped step."""
        signup_form.edit("username", "alice")
        signup_form.advance()
        signup_form.retreat()

        assert signup_form.current_step_index == 0
        assert signup_form.statuses == [
            StepStatus.ACTIVE,
            StepStatus.SKIPPED,
            StepStatus.NOT_VISITED,
        ]
        assert signup_form.focused == signup_form.resolve("newsletter")

    def test_left_step_completed_if_complete(self, signup_form: Form) -> None:
        """The step being left keeps Completed when its rule holds."""
        signup_form.edit("username", "alice")
        signup_form.advance()
        signup_form.edit("address.city", "Oslo")
        signup_form.retreat()
        assert signup_form.statuses[2] is StepStatus.COMPLETED

    def test_retreat_then_advance_is_identical(self, signup_form: Form) -> None:
        """Going back and forward again restores the same state."""
        signup_form.edit("username", "alice")
        signup_form.advance()
        signup_form.edit("address.city", "Oslo")
        states = signup_form.store.state_snapshot()
        statuses = list(signup_form.statuses)
        index = signup_form.current_step_index

        signup_form.retreat()
        signup_form.advance()

        assert signup_form.store.state_snapshot() == states
        assert signup_form.statuses == statuses
        assert signup_form.current_step_index == index

    def test_retreat_keeps_values(self, signup_form: Form) -> None:
        """Values entered on later steps survive a retreat."""
        signup_form.edit("username", "alice")
        signup_form.advance()
        signup_form.edit("address.street", "Main 1")
        signup_form.retreat()
        assert signup_form.value("address.street") == "Main 1"

    def test_retreat_from_complete_reopens_last_step(self, signup_form: Form) -> None:
        """From all_steps_complete, retreat reopens the last completed step."""
        complete_signup(signup_form)
        signup_form.retreat()

        assert signup_form.status is FormStatus.IN_PROGRESS
        assert signup_form.current_step_index == 2
        assert signup_form.statuses[2] is StepStatus.ACTIVE

    def test_reopen_skips_newly_skipped_step(self, settings: FormSettings) -> None:
        """From all_steps_complete, a last step that is now skipped is passed over."""
        form = Form(
            [
                Step("one", [TextControl("mode")]),
                Step("two", [TextControl("x")], skip_rule=SkipWhen("mode", Condition.equals("skip"))),
            ],
            settings=settings,
        )
        form.advance()
        form.advance()
        assert form.status is FormStatus.ALL_STEPS_COMPLETE
        form.edit("mode", "skip")

        form.retreat()

        assert form.current_step.key == "one"
        assert form.statuses == [StepStatus.ACTIVE, StepStatus.SKIPPED]
        assert form.focused == form.resolve("mode")

    def test_reopen_refused_when_every_step_skipped(self, settings: FormSettings) -> None:
        """With nothing left to reopen, retreat raises and changes nothing."""
        form = Form(
            [Step("only", [TextControl("mode")], skip_rule=lambda values: values["mode"] == "gone")],
            settings=settings,
        )
        form.advance()
        form.edit("mode", "gone")

        with pytest.raises(AtFirstStepError):
            form.retreat()
        assert form.status is FormStatus.ALL_STEPS_COMPLETE
        assert form.statuses == [StepStatus.COMPLETED]
        assert form.current_step_index == 0

    @pytest.mark.parametrize("enabled,expected", [(True, 1), (False, 0)])
    def test_repropagate_setting(self, make_signup_form, monkeypatch, enabled, expected) -> None:
        """repropagate_on_retreat controls the full pass on retreat."""
        form = make_signup_form(repropagate_on_retreat=enabled)
        form.edit("username", "alice")
        form.advance()

        calls = []
        original = form.graph.propagate_all
        monkeypatch.setattr(
            form.graph,
            "propagate_all",
            lambda *args: calls.append(1) or original(*args),
        )
        form.retreat()
        assert len(calls) == expected


class TestSubmit:
    """Tests for Form.submit and cancel."""

    def test_submit_from_last_step(self, signup_form: Form) -> None:
        """Submitting on the last step advances then submits."""
        signup_form.edit("username", "alice")
        signup_form.advance()
        signup_form.edit("address.city", "Oslo")

        result = signup_form.submit()

        assert signup_form.status is FormStatus.SUBMITTED
        assert signup_form.result is result
        assert result["username"] == "alice"
        assert result["display_name"] == "alice (personal)"
        assert "topics" not in result.visible_only()
        assert "company_name" not in result.visible_only()

    def test_submit_with_steps_remaining(self, signup_form: Form) -> None:
        """Submitting early raises and changes nothing."""
        signup_form.edit("username", "alice")
        with pytest.raises(StepsRemainingError) as exc_info:
            signup_form.submit()

        assert "extras" in exc_info.value.details["remaining"]
        assert signup_form.status is FormStatus.IN_PROGRESS
        assert signup_form.statuses[0] is StepStatus.ACTIVE

    def test_submit_incomplete_step(self, signup_form: Form) -> None:
        """The current step must be complete."""
        with pytest.raises(StepIncompleteError):
            signup_form.submit()

    def test_submit_rechecks_every_step(self, signup_form: Form) -> None:
        """Edits after completion are caught at submission."""
        complete_signup(signup_form)
        signup_form.edit("kind", "business")

        with pytest.raises(StepIncompleteError) as exc_info:
            signup_form.submit()
        assert exc_info.value.step == "company"
        assert signup_form.status is FormStatus.ALL_STEPS_COMPLETE

    def test_failed_submit_from_last_step_changes_nothing(self, settings: FormSettings) -> None:
        """An earlier step that became incomplete blocks submit before any transition."""
        form = Form(
            [
                Step("one", [TextControl("a", required=True)]),
                Step("two", [TextControl("b", required=True)]),
            ],
            settings=settings,
        )
        form.edit("a", "x")
        form.advance()
        form.edit("b", "y")
        form.edit("a", None)

        with pytest.raises(StepIncompleteError) as exc_info:
            form.submit()

        assert exc_info.value.step == "one"
        assert form.status is FormStatus.IN_PROGRESS
        assert form.current_step_index == 1
        assert form.statuses == [StepStatus.COMPLETED, StepStatus.ACTIVE]
        assert form.focused == form.resolve("b")

    def test_hidden_values_kept_in_result(self, signup_form: Form) -> None:
        """Hidden values are in the result but not in visible_only()."""
        signup_form.edit("newsletter", True)
        signup_form.edit("topics", ["events"])
        signup_form.edit("newsletter", False)
        complete_signup(signup_form)

        result = signup_form.submit()
        assert result["topics"] == ("events",)
        assert "topics" not in result.visible_only()

    def test_cancel(self, signup_form: Form) -> None:
        """Cancel is allowed from any non-terminal state."""
        signup_form.cancel()
        assert signup_form.status is FormStatus.CANCELLED
        assert signup_form.is_terminal
        assert signup_form.result is None

    @pytest.mark.parametrize(
        "action",
        [
            lambda f: f.edit("username", "x"),
            lambda f: f.advance(),
            lambda f: f.retreat(),
            lambda f: f.submit(),
            lambda f: f.cancel(),
        ],
    )
    def test_closed_form_refuses_everything(self, signup_form: Form, action) -> None:
        """Nothing is allowed after a terminal state."""
        signup_form.cancel()
        with pytest.raises(FormClosedError):
            action(signup_form)

    def test_submitted_form_is_closed(self, signup_form: Form) -> None:
        """Submitted is terminal too."""
        complete_signup(signup_form)
        signup_form.submit()
        with pytest.raises(FormClosedError):
            signup_form.edit("username", "bob")


class TestDependencyShorthands:
    """Tests for the Dependency helpers."""

    def test_effects(self) -> None:
        """Helpers build the right effect."""
        assert Dependency.show_when("t", "s").effect is Effect.VISIBILITY
        assert Dependency.enable_when("t", "s").effect is Effect.ENABLEMENT
        derived = Dependency.derive("t", ["a", "b"], lambda v: None)
        assert [d.source for d in derived] == ["a", "b"]
        assert all(d.effect is Effect.VALUE_DERIVATION for d in derived)


class TestScenarios:
    """End-to-end visibility and skip scenarios."""

    def test_visibility_across_steps(self, settings: FormSettings) -> None:
        """B on step two is shown, and required, only while A is true."""
        step_one = Step("one", [BooleanControl("a")])
        step_two = Step("two", [TextControl("b", required=True)])
        form = Form(
            [step_one, step_two],
            [Dependency.show_when("b", "a", Condition.equals(True))],
            settings=settings,
        )

        form.edit("a", False)
        assert form.state("b").is_visible is False
        assert step_two.is_complete(form.store) is True

        form.edit("a", True)
        assert form.state("b").is_visible is True
        assert step_two.is_complete(form.store) is False
        form.edit("b", "set")
        assert step_two.is_complete(form.store) is True

    def test_skip_on_prior_answer(self, settings: FormSettings) -> None:
        """Answering "skip" lands on the step after the skipped one."""
        form = Form(
            [
                Step("choose", [TextControl("route")]),
                Step("detour", [TextControl("notes", required=True)], skip_rule=SkipWhen("route", Condition.equals("skip"))),
                Step("finish", [TextControl("done")]),
            ],
            settings=settings,
        )

        form.edit("route", "skip")
        form.advance()

        assert form.current_step.key == "finish"
        assert form.step_status("detour") is StepStatus.SKIPPED


class TestRuleFailures:
    """Tests for visibility and enablement rules that raise during an edit."""

    @staticmethod
    def build(settings: FormSettings) -> Form:
        def needs_number(value: Any) -> bool:
            return int(value) > 10

        return Form(
            [
                Step(
                    "s",
                    [
                        TextControl("size"),
                        TextControl("big_note"),
                        TextControl("echo"),
                        TextControl("unrelated", required=True),
                    ],
                )
            ],
            [
                Dependency.show_when("big_note", "size", needs_number),
                *Dependency.derive("echo", ["size"], lambda values: values["size"]),
            ],
            settings=settings,
        )

    def test_failing_rule_does_not_crash_construction(self, settings: FormSettings) -> None:
        """int(None) raises while the form is built; the target starts hidden."""
        form = self.build(settings)
        assert form.status is FormStatus.IN_PROGRESS
        assert form.state("big_note").is_visible is False
        assert form.state("big_note").is_valid is False

    def test_edit_survives_failing_rule(self, settings: FormSettings) -> None:
        """The edit commits and other dependents still update."""
        form = self.build(settings)

        assert form.edit("size", "lots") is True

        assert form.value("size") == "lots"
        assert form.value("echo") == "lots"
        assert form.state("big_note").is_visible is False
        assert form.state("big_note").validation_error == (
            "Could not evaluate the rules for Big Note"
        )
        assert form.state("unrelated").validation_error is None

    def test_error_cleared_when_rule_recovers(self, settings: FormSettings) -> None:
        """Once the rule evaluates again the target is valid and shown."""
        form = self.build(settings)
        form.edit("size", "lots")

        form.edit("size", "12")

        assert form.state("big_note").is_visible is True
        assert form.state("big_note").is_valid is True
        assert form.state("big_note").validation_error is None


class TestStaticText:
    """Tests for static text inside a form."""

    @staticmethod
    def build(settings: FormSettings) -> Form:
        return Form(
            [
                Step(
                    "s",
                    [
                        StaticTextControl("intro", text="Fill in your name."),
                        TextControl("name", required=True),
                        BooleanControl("advanced"),
                        StaticTextControl("warning", text="Advanced mode is unsupported."),
                    ],
                )
            ],
            [Dependency.show_when("warning", "advanced")],
            settings=settings,
        )

    def test_never_focused(self, settings: FormSettings) -> None:
        """Focus starts on, and moves between, input controls only."""
        form = self.build(settings)
        assert form.focused == form.resolve("name")
        assert form.focusable_ids() == [form.resolve("name"), form.resolve("advanced")]
        assert form.focus("intro") is False

    def test_edit_ignored(self, settings: FormSettings) -> None:
        """Static text takes no value."""
        form = self.build(settings)
        assert form.edit("intro", "typed") is False
        assert form.value("intro") is None
        assert form.state("intro").is_valid is True

    def test_shown_and_hidden_by_rules(self, settings: FormSettings) -> None:
        """Visibility rules apply to static text like any control."""
        form = self.build(settings)
        assert form.state("warning").is_visible is False
        form.edit("advanced", True)
        assert form.state("warning").is_visible is True

    def test_not_in_result(self, settings: FormSettings) -> None:
        """Results and snapshots only hold controls that carry values."""
        form = self.build(settings)
        form.edit("name", "ada")

        result = form.submit()

        assert "intro" not in result.visible_only()
        assert "intro" not in [entry.path for entry in result.entries]
        assert "warning" not in form.store.snapshot()
        assert result["name"] == "ada"
