"""Conversation history for one carousel iteration.

Each part is stored according to its retention:

    full     stored verbatim (prompt text over the size threshold is summarized anyway)
    summary  replaced by a short fixed-format placeholder
    drop     used for the current call only, never stored

The executor calls reset() once at the start of every iteration.
"""

from __future__ import annotations

import logging

from botticelli.models import ContentPart, Message, Role

logger = logging.getLogger(__name__)

AUTO_SUMMARY_THRESHOLD = 10 * 1024  # characters


def summarize(part: ContentPart) -> ContentPart:
    """Return the placeholder that stands in for `part` in later prompts."""
    if part.kind == "table":
        text = f"[Table: {part.name}, {part.row_count or 0} rows]"
    elif part.kind == "bot":
        text = f"[Bot command: {part.platform}.{part.command}]"
    elif part.kind == "media":
        text = f"[Media: {part.name or part.source}]"
    elif part.kind == "narrative":
        text = f"[Narrative: {part.name}]"
    else:
        text = f"[Text: {len(part.text)} chars]"
    return ContentPart(kind="text", text=text, name=part.name, retention="summary")


class ConversationHistory:
    def __init__(self, threshold: int = AUTO_SUMMARY_THRESHOLD) -> None:
        self._threshold = threshold
        self._messages: list[Message] = []

    def __len__(self) -> int:
        return len(self._messages)

    def reset(self) -> None:
        self._messages = []

    def snapshot(self) -> list[Message]:
        return [m.model_copy(deep=True) for m in self._messages]

    def append(self, role: Role, parts: list[ContentPart]) -> None:
        stored: list[ContentPart] = []
        for part in parts:
            if part.retention == "drop":
                continue
            if part.retention == "summary":
                stored.append(summarize(part))
            elif role == "user" and len(part.text) > self._threshold:
                logger.debug(
                    "auto-summarizing %s part %s (%d chars)", part.kind, part.name, len(part.text)
                )
                stored.append(summarize(part))
            else:
                stored.append(part.model_copy())
        if stored:
            self._messages.append(Message(role=role, parts=stored))
