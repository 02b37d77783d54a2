"""Post-act processor protocol and registry."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from botticelli.models import ActExecution, Narrative, NarrativeExecution, ProcessorFailure

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


def preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass(frozen=True)
class ProcessorContext:
    """What a processor sees after one act has run.

    `execution` and `run` are borrowed from the executor; processors must
    not mutate them.
    """

    execution: ActExecution
    narrative: Narrative
    run: NarrativeExecution
    is_last_act: bool  # last act of the last carousel iteration
    is_iteration_end: bool  # last act of the current iteration
    depth: int = 0  # sub-narrative nesting; 0 for the narrative being run
    extract_output: bool | None = None  # the act's own extraction override, if set


class ActProcessor(Protocol):
    name: str

    def should_process(self, context: ProcessorContext) -> bool: ...

    async def process(self, context: ProcessorContext) -> None: ...


class ProcessorRegistry:
    """Runs processors in registration order, isolating their failures.

    A processor that raises never stops the others, and never stops the
    run: each failure is logged and returned as a ProcessorFailure.
    """

    def __init__(self, processors: list[ActProcessor] | None = None) -> None:
        self._processors: list[ActProcessor] = list(processors or [])

    def register(self, processor: ActProcessor) -> None:
        self._processors.append(processor)

    def __len__(self) -> int:
        return len(self._processors)

    def __iter__(self) -> Iterator[ActProcessor]:
        return iter(self._processors)

    async def process(self, context: ProcessorContext) -> list[ProcessorFailure]:
        failures: list[ProcessorFailure] = []
        execution = context.execution
        for processor in self._processors:
            name = getattr(processor, "name", type(processor).__name__)
            try:
                if not processor.should_process(context):
                    continue
                logger.debug("processor %s on act %s", name, execution.act_name)
                await processor.process(context)
            except Exception as e:
                logger.warning(
                    "processor %s failed on act %s (iteration %d): %s; response starts: %r",
                    name,
                    execution.act_name,
                    execution.iteration,
                    e,
                    preview(execution.response),
                )
                failures.append(
                    ProcessorFailure(
                        act_name=execution.act_name,
                        iteration=execution.iteration,
                        processor=name,
                        message=str(e),
                        preview=preview(execution.response),
                    )
                )
        return failures

    def close_run(self, run: NarrativeExecution, error: str | None = None) -> list[ProcessorFailure]:
        """Let processors that keep per-run state finish it. `error` is set when the run did not complete."""
        failures: list[ProcessorFailure] = []
        for processor in self._processors:
            close = getattr(processor, "close_run", None)
            if close is None:
                continue
            name = getattr(processor, "name", type(processor).__name__)
            try:
                close(run, error)
            except Exception as e:
                logger.warning("processor %s failed to close run %s: %s", name, run.run_id, e)
                last = run.act_executions[-1] if run.act_executions else None
                failures.append(
                    ProcessorFailure(
                        act_name=last.act_name if last else "",
                        iteration=last.iteration if last else 0,
                        processor=name,
                        message=str(e),
                    )
                )
        return failures


class MatchingProcessor:
    """Base for processors selected by act name or response content.

    Subclasses set `act_keywords` (matched against the act name) and
    `content_markers` (matched against the response), then implement
    process(). Matching is case-insensitive.
    """

    name = "matching"
    act_keywords: tuple[str, ...] = ()
    content_markers: tuple[str, ...] = ()

    def should_process(self, context: ProcessorContext) -> bool:
        act_name = context.execution.act_name.lower()
        if any(k.lower() in act_name for k in self.act_keywords):
            return True
        response = context.execution.response.lower()
        return any(m.lower() in response for m in self.content_markers)

    async def process(self, context: ProcessorContext) -> None:
        raise NotImplementedError
