"""System prompt composition."""

from prompts.composer import ComposedPrompt, compose, render_history
from prompts.verticals import builtin_overlay, VERTICAL_OVERLAYS

__all__ = ["ComposedPrompt", "compose", "render_history", "builtin_overlay", "VERTICAL_OVERLAYS"]
