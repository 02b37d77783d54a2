"""Tests for ConversationHistory retention rules."""

from botticelli.history import ConversationHistory, summarize
from botticelli.models import ContentPart


def _text(text: str, retention: str = "full") -> ContentPart:
    return ContentPart(kind="text", text=text, retention=retention)


def test_full_parts_stored_verbatim():
    history = ConversationHistory()
    history.append("user", [_text("hello")])
    history.append("assistant", [_text("hi there")])
    snapshot = history.snapshot()
    assert [m.role for m in snapshot] == ["user", "assistant"]
    assert snapshot[0].parts[0].text == "hello"


def test_drop_parts_never_stored():
    history = ConversationHistory()
    history.append("user", [_text("secret", "drop"), _text("keep")])
    texts = [p.text for m in history.snapshot() for p in m.parts]
    assert texts == ["keep"]


def test_all_dropped_message_not_stored():
    history = ConversationHistory()
    history.append("user", [_text("secret", "drop")])
    assert len(history) == 0


def test_summary_placeholders():
    table = ContentPart(kind="table", name="posts", text="[...]", row_count=4, retention="summary")
    bot = ContentPart(kind="bot", name="stats", platform="discord", command="server.get_stats",
                      text="{}", retention="summary")
    history = ConversationHistory()
    history.append("user", [table, bot])
    texts = [p.text for p in history.snapshot()[0].parts]
    assert texts == ["[Table: posts, 4 rows]", "[Bot command: discord.server.get_stats]"]


def test_oversized_prompt_part_auto_summarized():
    history = ConversationHistory(threshold=100)
    history.append("user", [_text("x" * 101)])
    assert history.snapshot()[0].parts[0].text == "[Text: 101 chars]"


def test_oversized_assistant_response_kept():
    history = ConversationHistory(threshold=100)
    history.append("assistant", [_text("y" * 500)])
    assert history.snapshot()[0].parts[0].text == "y" * 500


def test_reset_clears():
    history = ConversationHistory()
    history.append("user", [_text("a")])
    history.reset()
    assert history.snapshot() == []


def test_snapshot_is_a_copy():
    history = ConversationHistory()
    history.append("user", [_text("a")])
    snapshot = history.snapshot()
    snapshot[0].parts[0].text = "mutated"
    assert history.snapshot()[0].parts[0].text == "a"


def test_summarize_media_and_narrative():
    media = ContentPart(kind="media", name="logo", source="https://x/logo.png")
    sub = ContentPart(kind="narrative", name="research", text="long answer")
    assert summarize(media).text == "[Media: logo]"
    assert summarize(sub).text == "[Narrative: research]"
