"""Narrative executor: drives one narrative run end-to-end.

Run flow:
  1. For each carousel iteration (1..carousel_count):
       reset the conversation history.
  2. For each act in `order`:
       a. check for cancellation
       b. resolve every input (text, media, bot commands, table queries,
          sub-narratives) into content parts
       c. call the driver with history + the new user message
          (acts without any text input skip the call and use the resolved
          content as their response)
       d. record an immutable ActExecution, update history per retention
       e. hand the execution to the processor registry
  3. Close per-run processor state and return a RunResult.

Resolution and driver errors abort the run; the partial execution is still
returned. Processor errors never abort it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from botticelli.bots import BotRegistry
from botticelli.history import AUTO_SUMMARY_THRESHOLD, ConversationHistory
from botticelli.llm import Driver, DriverError, GenerateRequest
from botticelli.loader import NarrativeLibrary
from botticelli.models import (
    Act,
    ActExecution,
    ContentPart,
    Message,
    Narrative,
    NarrativeExecution,
    ProcessorFailure,
    RunResult,
    SubNarrativeInput,
    utcnow,
)
from botticelli.processors import ProcessorContext, ProcessorRegistry
from botticelli.resolver import MAX_COMPOSITION_DEPTH, ResourceResolver, TableSource
from botticelli.templates import ResolutionError

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation, checked before each act starts."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _Cancelled(Exception):
    pass


class _ActFailed(Exception):
    def __init__(self, act: str, stage: str, cause: Exception) -> None:
        self.act = act
        self.stage = stage
        self.cause = cause
        super().__init__(str(cause))


def _first(*values: Any) -> Any:
    return next((v for v in values if v is not None), None)


class NarrativeExecutor:
    """Executes narratives against a driver.

    Args:
        driver:                 Anything with `async generate(GenerateRequest)`.
        processors:             Registry run after every act.
        bots:                   Bot command registry for `bots.x` inputs.
        tables:                 Repository (or any TableSource) for `tables.x` inputs.
        library:                Narratives available to `narrative:x` inputs.
        default_model:          Used when neither the act nor the narrative names a model.
        default_temperature:    Likewise for temperature.
        default_max_tokens:     Likewise for max_tokens.
        max_composition_depth:  Deepest allowed sub-narrative nesting.
        summary_threshold:      Prompt parts longer than this are summarized in history.
    """

    def __init__(
        self,
        driver: Driver,
        *,
        processors: ProcessorRegistry | None = None,
        bots: BotRegistry | None = None,
        tables: TableSource | None = None,
        library: NarrativeLibrary | None = None,
        default_model: str | None = None,
        default_temperature: float | None = None,
        default_max_tokens: int | None = None,
        max_composition_depth: int = MAX_COMPOSITION_DEPTH,
        summary_threshold: int = AUTO_SUMMARY_THRESHOLD,
    ) -> None:
        self._driver = driver
        self._processors = processors or ProcessorRegistry()
        self._bots = bots
        self._tables = tables
        self._library = library or NarrativeLibrary()
        self._default_model = default_model
        self._default_temperature = default_temperature
        self._default_max_tokens = default_max_tokens
        self._max_depth = max_composition_depth
        self._summary_threshold = summary_threshold

    async def run(self, narrative: Narrative, cancel: CancelToken | None = None) -> RunResult:
        """Execute every act of every carousel iteration and return the result."""
        return await self._run(narrative, cancel, depth=0)

    async def _run(
        self, narrative: Narrative, cancel: CancelToken | None, depth: int
    ) -> RunResult:
        execution = NarrativeExecution(narrative_name=narrative.name)
        failures: list[ProcessorFailure] = []

        async def run_sub(spec: SubNarrativeInput, sub_depth: int) -> str:
            sub = self._library.get(spec.name)
            if sub is None:
                raise ResolutionError(f"narrative '{spec.name}' is not loaded")
            result = await self._run(sub, cancel, sub_depth)
            failures.extend(result.processor_errors)
            if result.status == "cancelled":
                raise _Cancelled()
            if result.status != "completed":
                raise ResolutionError(
                    f"narrative '{spec.name}' did not complete ({result.status}): {result.error}"
                )
            return result.final_response or ""

        resolver = ResourceResolver(
            narrative,
            bots=self._bots,
            tables=self._tables,
            run_sub=run_sub,
            max_depth=self._max_depth,
        )
        history = ConversationHistory(self._summary_threshold)
        result = RunResult(execution=execution, status="completed")

        started = time.perf_counter()
        logger.info(
            "narrative %s started run=%s acts=%d carousel=%d depth=%d",
            narrative.name, execution.run_id, len(narrative.order),
            narrative.carousel_count, depth,
        )
        try:
            for iteration in range(1, narrative.carousel_count + 1):
                history.reset()
                logger.info("narrative %s iteration %d/%d", narrative.name, iteration, narrative.carousel_count)
                for seq, act_name in enumerate(narrative.order):
                    if cancel is not None and cancel.cancelled:
                        raise _Cancelled()
                    act = narrative.acts[act_name]
                    record = await self._run_act(
                        narrative, act, iteration, seq, execution, history, resolver, depth
                    )
                    execution.act_executions.append(record)
                    if record.usage is not None:
                        execution.total_tokens += record.usage.total_tokens

                    is_iteration_end = seq == len(narrative.order) - 1
                    context = ProcessorContext(
                        execution=record,
                        narrative=narrative,
                        run=execution,
                        is_last_act=is_iteration_end and iteration == narrative.carousel_count,
                        is_iteration_end=is_iteration_end,
                        depth=depth,
                        extract_output=act.extract_output,
                    )
                    failures.extend(await self._processors.process(context))
        except _Cancelled:
            result.status = "cancelled"
            result.error = "run cancelled"
            logger.info("narrative %s cancelled after %d act(s)", narrative.name, len(execution.act_executions))
        except _ActFailed as e:
            result.status = "aborted"
            result.error = str(e.cause)
            result.failed_act = e.act
            result.failed_stage = e.stage
            logger.error(
                "narrative %s aborted at act %s (%s): %s", narrative.name, e.act, e.stage, e.cause
            )

        failures.extend(self._processors.close_run(execution, result.error))
        execution.finished_at = utcnow()
        execution.duration_ms = int((time.perf_counter() - started) * 1000)
        result.processor_errors = failures
        logger.info(
            "narrative %s finished status=%s acts=%d tokens=%d duration_ms=%d processor_errors=%d",
            narrative.name, result.status, len(execution.act_executions),
            execution.total_tokens, execution.duration_ms, len(failures),
        )
        return result

    async def _run_act(
        self,
        narrative: Narrative,
        act: Act,
        iteration: int,
        seq: int,
        execution: NarrativeExecution,
        history: ConversationHistory,
        resolver: ResourceResolver,
        depth: int,
    ) -> ActExecution:
        logger.info("act %s started (iteration %d, #%d)", act.name, iteration, seq)
        started_at = utcnow()
        t0 = time.perf_counter()
        prior = execution.for_iteration(iteration)

        parts: list[ContentPart] = []
        try:
            for spec in act.inputs:
                parts.extend(await resolver.resolve(spec, prior, depth))
        except ResolutionError as e:
            raise _ActFailed(act.name, "resolving", e) from e

        model = _first(act.model, narrative.model, self._default_model)
        temperature = _first(act.temperature, narrative.temperature, self._default_temperature)
        max_tokens = _first(act.max_tokens, narrative.max_tokens, self._default_max_tokens)

        if act.has_text_input:
            request = GenerateRequest(
                messages=history.snapshot() + [Message(role="user", parts=parts)],
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
            try:
                response = await self._driver.generate(request)
            except DriverError as e:
                raise _ActFailed(act.name, "invoking", e) from e
            except Exception as e:
                # any driver failure ends the run as aborted
                logger.exception("driver raised %s on act %s", type(e).__name__, act.name)
                raise _ActFailed(act.name, "invoking", e) from e
            text = response.text
            usage = response.usage
            model = response.model or model
        else:
            logger.info("act %s has no text input, skipping model call", act.name)
            text = "\n\n".join(p.text for p in parts if p.text)
            usage = None
            model = None

        record = ActExecution(
            act_name=act.name,
            iteration=iteration,
            sequence_number=seq,
            inputs=parts,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response=text,
            started_at=started_at,
            duration_ms=int((time.perf_counter() - t0) * 1000),
            usage=usage,
        )
        # Parts keep their own retention. Action-only acts store no assistant
        # turn, since their response is those same parts joined.
        history.append("user", parts)
        if act.has_text_input:
            history.append("assistant", [ContentPart(kind="text", text=text)])
        logger.debug("act %s response: %.200s", act.name, text)
        return record
