"""Tests for the session loop."""

from __future__ import annotations

from typing import Iterable, Iterator

from stepform.models import (
    CancelRequested,
    Event,
    Form,
    FormStatus,
    KeyPress,
    SelectionChange,
    SubmitRequested,
)
from stepform.render import DrawInstruction
from stepform.session import run_session


class RecordingRenderer:
    """Keeps every batch it is asked to draw."""

    def __init__(self) -> None:
        self.batches: list[list[DrawInstruction]] = []

    def draw(self, form: Form, instructions: Iterable[DrawInstruction]) -> None:
        self.batches.append(list(instructions))


def keys(text: str) -> list[Event]:
    return [KeyPress(ch) for ch in text]


class TestRunSession:
    """Tests for run_session."""

    def test_full_session_returns_result(self, signup_form: Form) -> None:
        """Typing through the form and submitting yields the result."""
        events = [
            *keys("alice"),
            KeyPress("enter"),  # -> kind
            KeyPress("enter"),  # -> newsletter
            KeyPress("enter"),  # advance, company is skipped
            SelectionChange("address.city", "Oslo"),
            SubmitRequested(),
        ]
        renderer = RecordingRenderer()

        result = run_session(signup_form, events, renderer)

        assert result is not None
        assert result["username"] == "alice"
        assert result["address.city"] == "Oslo"
        assert signup_form.status is FormStatus.SUBMITTED
        assert len(renderer.batches) == len(events) + 1

    def test_first_draw_is_full(self, signup_form: Form) -> None:
        """The renderer first receives every control."""
        renderer = RecordingRenderer()
        run_session(signup_form, [], renderer)
        assert [i.control_id for i in renderer.batches[0]] == list(range(10))

    def test_cancel_returns_none(self, signup_form: Form) -> None:
        """A cancelled session has no result."""
        assert run_session(signup_form, [*keys("bob"), CancelRequested()]) is None
        assert signup_form.status is FormStatus.CANCELLED

    def test_exhausted_events_return_none(self, signup_form: Form) -> None:
        """Running out of input leaves the form open."""
        assert run_session(signup_form, keys("bob")) is None
        assert signup_form.status is FormStatus.IN_PROGRESS
        assert signup_form.value("username") == "bob"

    def test_events_after_close_not_consumed(self, signup_form: Form) -> None:
        """The loop stops reading once the form is closed."""
        consumed: list[Event] = []

        def source() -> Iterator[Event]:
            for event in [CancelRequested(), KeyPress("a"), KeyPress("b")]:
                consumed.append(event)
                yield event

        run_session(signup_form, source())
        assert consumed == [CancelRequested(), KeyPress("a")]
        assert signup_form.value("username") is None

    def test_refused_navigation_keeps_session_alive(self, signup_form: Form) -> None:
        """Navigation errors become notices instead of ending the loop."""
        result = run_session(signup_form, [KeyPress("escape"), SubmitRequested(), *keys("amy")])
        assert result is None
        assert signup_form.value("username") == "amy"
        assert signup_form.status is FormStatus.IN_PROGRESS
