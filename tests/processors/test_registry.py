"""Tests for ProcessorRegistry failure isolation."""

from datetime import datetime, timezone

from botticelli.loader import parse
from botticelli.models import ActExecution, NarrativeExecution
from botticelli.processors import ProcessorContext, ProcessorRegistry

NARRATIVE = parse('[narrative]\nname = "n"\n[toc]\norder = ["a"]\n[acts]\na = "go"')


def _context(response: str = "response text") -> ProcessorContext:
    execution = ActExecution(
        act_name="a", iteration=2, sequence_number=0, inputs=[],
        response=response, started_at=datetime.now(timezone.utc),
    )
    return ProcessorContext(
        execution=execution,
        narrative=NARRATIVE,
        run=NarrativeExecution(narrative_name="n"),
        is_last_act=True,
        is_iteration_end=True,
    )


class Recorder:
    def __init__(self, name: str, relevant: bool = True, fail: bool = False) -> None:
        self.name = name
        self.relevant = relevant
        self.fail = fail
        self.seen: list[str] = []

    def should_process(self, context: ProcessorContext) -> bool:
        return self.relevant

    async def process(self, context: ProcessorContext) -> None:
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")
        self.seen.append(context.execution.act_name)


async def test_runs_relevant_processors_in_order() -> None:
    first, skipped, second = Recorder("first"), Recorder("skipped", relevant=False), Recorder("second")
    registry = ProcessorRegistry([first, skipped])
    registry.register(second)
    assert len(registry) == 3
    assert await registry.process(_context()) == []
    assert first.seen == ["a"]
    assert skipped.seen == []
    assert second.seen == ["a"]


async def test_failure_isolated_and_reported(caplog) -> None:
    broken, after = Recorder("broken", fail=True), Recorder("after")
    registry = ProcessorRegistry([broken, after])
    failures = await registry.process(_context("x" * 300))
    assert after.seen == ["a"]
    (failure,) = failures
    assert failure.processor == "broken"
    assert failure.act_name == "a"
    assert failure.iteration == 2
    assert failure.message == "broken exploded"
    assert failure.preview == "x" * 200 + "..."
    assert "processor broken failed on act a" in caplog.text


async def test_should_process_error_isolated() -> None:
    class Picky(Recorder):
        def should_process(self, context: ProcessorContext) -> bool:
            raise KeyError("missing field")

    registry = ProcessorRegistry([Picky("picky"), Recorder("ok")])
    failures = await registry.process(_context())
    assert [f.processor for f in failures] == ["picky"]


def test_close_run_calls_optional_hook() -> None:
    closed = []

    class Closing(Recorder):
        def close_run(self, run: NarrativeExecution, error: str | None = None) -> None:
            closed.append((run.narrative_name, error))

    registry = ProcessorRegistry([Recorder("plain"), Closing("closing")])
    assert registry.close_run(NarrativeExecution(narrative_name="n"), "boom") == []
    assert closed == [("n", "boom")]
