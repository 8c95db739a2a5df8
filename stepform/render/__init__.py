"""Rendering: draw instructions and the prompt_toolkit terminal adapter."""

from stepform.render.bridge import DrawInstruction, RenderBridge

__all__ = ["DrawInstruction", "RenderBridge"]
