"""Tests for ResourceResolver: text, media, bots, tables, sub-narratives."""

import json
from datetime import datetime, timezone

import pytest

from botticelli.bots import BotRegistry
from botticelli.loader import parse
from botticelli.models import ActExecution, ResourceRefInput, SubNarrativeInput
from botticelli.resolver import ResourceResolver, format_rows
from botticelli.schema import infer_schema
from botticelli.storage import InMemoryRepository
from botticelli.templates import ResolutionError

NARRATIVE = parse("""
[narrative]
name = "resolver_demo"
allowed_writes = ["announce"]

[toc]
order = ["a"]

[bots.stats]
platform = "discord"
command = "server.get_stats"
args = { guild_id = "{{previous}}" }

[bots.optional_stats]
platform = "discord"
command = "server.get_stats"
required = false

[bots.announce]
platform = "discord"
command = "messages.send"
args = { content = "{{draft}}" }

[bots.purge]
platform = "discord"
command = "messages.delete"

[tables.posts]
table = "posts"
where = { topic = "{{previous}}" }
columns = ["title"]

[tables.missing]
table = "nope"

[media.logo]
source = "https://example.com/logo.png"

[acts]
a = "go"
""")


def _exec(act: str, response: str) -> ActExecution:
    return ActExecution(
        act_name=act, iteration=1, sequence_number=0, inputs=[],
        response=response, started_at=datetime.now(timezone.utc),
    )


def _ref(name: str) -> ResourceRefInput:
    namespace, res = name.split(".")
    return ResourceRefInput(namespace=namespace, name=res)


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def bots(calls: list) -> BotRegistry:
    registry = BotRegistry()

    async def discord(command: str, args: dict):
        calls.append((command, args))
        if args.get("guild_id") == "boom":
            raise RuntimeError("guild unavailable")
        return {"command": command, "members": 42}

    registry.register("discord", discord)
    return registry


@pytest.fixture
def repo() -> InMemoryRepository:
    repo = InMemoryRepository()
    repo.ensure_table(infer_schema("posts", {"title": "x", "topic": "y"}))
    repo.insert_rows("posts", [
        {"title": "Tides", "topic": "sea"},
        {"title": "Peaks", "topic": "mountains"},
    ])
    return repo


@pytest.fixture
def resolver(bots: BotRegistry, repo: InMemoryRepository) -> ResourceResolver:
    return ResourceResolver(NARRATIVE, bots=bots, tables=repo)


# ── Text and media ─────────────────────────────────────────


async def test_text_input(resolver: ResourceResolver) -> None:
    parts = await resolver.resolve(NARRATIVE.acts["a"].inputs[0], [])
    assert parts[0].kind == "text"
    assert parts[0].text == "go"


async def test_media_resource_mime_guessed(resolver: ResourceResolver) -> None:
    (part,) = await resolver.resolve(_ref("media.logo"), [])
    assert part.kind == "media"
    assert part.mime == "image/png"
    assert part.source == "https://example.com/logo.png"


# ── Bot commands ───────────────────────────────────────────


async def test_bot_args_rendered_from_prior_act(resolver: ResourceResolver, calls: list) -> None:
    (part,) = await resolver.resolve(_ref("bots.stats"), [_exec("pick", "guild-7")])
    assert calls == [("server.get_stats", {"guild_id": "guild-7"})]
    assert part.kind == "bot"
    assert part.platform == "discord"
    assert json.loads(part.text)["members"] == 42


async def test_required_bot_failure_is_fatal(resolver: ResourceResolver) -> None:
    with pytest.raises(ResolutionError, match="required bot command 'stats' failed"):
        await resolver.resolve(_ref("bots.stats"), [_exec("pick", "boom")])


async def test_optional_bot_failure_becomes_text() -> None:
    registry = BotRegistry()

    async def broken(command: str, args: dict):
        raise RuntimeError("rate limited")

    registry.register("discord", broken)
    resolver = ResourceResolver(NARRATIVE, bots=registry)
    (part,) = await resolver.resolve(_ref("bots.optional_stats"), [])
    assert part.text.startswith("[Bot command 'server.get_stats' failed:")
    assert "rate limited" in part.text


async def test_unresolved_placeholder_is_fatal(resolver: ResourceResolver) -> None:
    with pytest.raises(ResolutionError, match="before any act"):
        await resolver.resolve(_ref("bots.stats"), [])


async def test_allow_listed_write_runs(resolver: ResourceResolver, calls: list) -> None:
    await resolver.resolve(_ref("bots.announce"), [_exec("draft", "Hello all")])
    assert calls == [("messages.send", {"content": "Hello all"})]


async def test_unlisted_write_refused(resolver: ResourceResolver, calls: list) -> None:
    with pytest.raises(ResolutionError, match="not listed in allowed_writes"):
        await resolver.resolve(_ref("bots.purge"), [])
    assert calls == []


async def test_missing_registry() -> None:
    resolver = ResourceResolver(NARRATIVE)
    with pytest.raises(ResolutionError, match="needs a bot registry"):
        await resolver.resolve(_ref("bots.optional_stats"), [])


# ── Tables ─────────────────────────────────────────────────


async def test_table_query_with_placeholder(resolver: ResourceResolver) -> None:
    (part,) = await resolver.resolve(_ref("tables.posts"), [_exec("pick", "sea")])
    assert part.kind == "table"
    assert part.row_count == 1
    assert json.loads(part.text) == [{"title": "Tides"}]


async def test_missing_table_is_empty(resolver: ResourceResolver) -> None:
    (part,) = await resolver.resolve(_ref("tables.missing"), [])
    assert part.row_count == 0
    assert json.loads(part.text) == []


def test_format_rows_markdown_and_csv() -> None:
    rows = [{"title": "A|B", "n": 1}, {"title": "C", "n": None}]
    markdown = format_rows(rows, "markdown")
    assert markdown.splitlines()[0] == "| title | n |"
    assert "A\\|B" in markdown
    assert format_rows(rows, "csv") == "title,n\nA|B,1\nC,\n"


# ── Sub-narratives ─────────────────────────────────────────


async def test_sub_narrative_runs_callback() -> None:
    seen = []

    async def run_sub(spec: SubNarrativeInput, depth: int) -> str:
        seen.append((spec.name, depth))
        return "research notes"

    resolver = ResourceResolver(NARRATIVE, run_sub=run_sub)
    (part,) = await resolver.resolve(SubNarrativeInput(name="research"), [], depth=2)
    assert seen == [("research", 3)]
    assert part.kind == "narrative"
    assert part.text == "research notes"


async def test_composition_depth_guard() -> None:
    async def run_sub(spec: SubNarrativeInput, depth: int) -> str:
        return "never"

    resolver = ResourceResolver(NARRATIVE, run_sub=run_sub, max_depth=2)
    with pytest.raises(ResolutionError, match="maximum composition depth of 2"):
        await resolver.resolve(SubNarrativeInput(name="research"), [], depth=2)
