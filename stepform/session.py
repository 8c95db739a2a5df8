"""Session loop: feed events to a form and hand diffs to a renderer.

The loop is single-threaded. Each event is processed to completion
(validation, propagation, navigation) before the next one is read, and
a terminal state is only noticed at the top of the loop.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from stepform.models.events import Event
from stepform.models.form import Form, FormStatus
from stepform.models.result import FormResult
from stepform.render.bridge import DrawInstruction

logger = logging.getLogger(__name__)

__all__ = ["Renderer", "run_session"]


class Renderer(Protocol):
    """Anything that can draw a batch of instructions."""

    def draw(self, form: Form, instructions: Iterable[DrawInstruction]) -> None:
        ...


def run_session(
    form: Form,
    events: Iterable[Event],
    renderer: Optional[Renderer] = None,
) -> Optional[FormResult]:
    """Drive ``form`` with ``events`` until it closes or the events run out.

    Args:
        form: A freshly built (or partially filled) form
        events: Logical input events, consumed lazily
        renderer: Receives the initial full draw and one diff per event

    Returns:
        The FormResult if the form was submitted, otherwise None
    """
    if renderer is not None:
        renderer.draw(form, form.render(full=True))

    processed = 0
    for event in events:
        if form.is_terminal:
            break
        instructions = form.handle_event(event)
        processed += 1
        if renderer is not None:
            renderer.draw(form, instructions)

    logger.debug("Session processed %d event(s); form is %s", processed, form.status.value)
    if form.status is FormStatus.SUBMITTED:
        return form.result
    return None
