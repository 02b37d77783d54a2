"""Handlebars rendering for text-completion transcripts."""

from collections.abc import Callable
from typing import Any

import pybars

from botticelli.models import Message


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# Completion backends (KoboldCpp) take one prompt string, so the
# conversation is flattened into instruction/response turns.
TRANSCRIPT_TEMPLATE = (
    "{{#each messages}}"
    "{{#if user}}### Instruction:\n{{else}}### Response:\n{{/if}}"
    "{{{text}}}\n\n"
    "{{/each}}"
    "### Response:\n"
)


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return compiled(context)
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def build_context(messages: list[Message]) -> dict[str, Any]:
    """Template variables for a transcript: one entry per message."""
    return {
        "messages": [
            {"user": m.role == "user", "role": m.role, "text": m.text}
            for m in messages
        ],
    }


def render_transcript(messages: list[Message], template_str: str = TRANSCRIPT_TEMPLATE) -> str:
    return render_prompt(template_str, build_context(messages))
