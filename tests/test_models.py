"""Tests for botticelli.models."""

from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter, ValidationError

from botticelli.models import (
    Act,
    ActExecution,
    BotCommand,
    ContentPart,
    InputSpec,
    Message,
    NarrativeExecution,
    ResourceRefInput,
    RunResult,
    SubNarrativeInput,
    TextInput,
)


def _execution(act: str, iteration: int, response: str = "r") -> ActExecution:
    return ActExecution(
        act_name=act, iteration=iteration, sequence_number=0, inputs=[],
        response=response, started_at=datetime.now(timezone.utc),
    )


class TestInputSpec:
    def test_discriminated_by_kind(self) -> None:
        adapter = TypeAdapter(InputSpec)
        assert isinstance(adapter.validate_python({"kind": "text", "text": "hi"}), TextInput)
        ref = adapter.validate_python({"kind": "ref", "namespace": "bots", "name": "stats"})
        assert isinstance(ref, ResourceRefInput)
        assert ref.ref == "bots.stats"

    def test_unknown_namespace_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ResourceRefInput(namespace="files", name="x")

    def test_invalid_retention_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TextInput(text="x", history_retention="forever")

    def test_definitions_are_frozen(self) -> None:
        bot = BotCommand(name="stats", platform="discord", command="server.get_stats")
        with pytest.raises(ValidationError):
            bot.command = "messages.send"


class TestAct:
    def test_has_text_input(self) -> None:
        assert Act(name="a", inputs=[TextInput(text="go")]).has_text_input
        assert not Act(name="a", inputs=[ResourceRefInput(namespace="bots", name="x")]).has_text_input
        assert not Act(name="a", inputs=[SubNarrativeInput(name="child")]).has_text_input


class TestMessage:
    def test_text_joins_non_empty_parts(self) -> None:
        message = Message(role="user", parts=[
            ContentPart(kind="table", text="| a |"),
            ContentPart(kind="media", text=""),
            ContentPart(kind="text", text="Summarize."),
        ])
        assert message.text == "| a |\n\nSummarize."


class TestExecutionRecords:
    def test_run_ids_are_unique(self) -> None:
        assert NarrativeExecution(narrative_name="n").run_id != NarrativeExecution(narrative_name="n").run_id

    def test_for_iteration(self) -> None:
        run = NarrativeExecution(narrative_name="n", act_executions=[
            _execution("a", 1), _execution("b", 1), _execution("a", 2),
        ])
        assert [e.act_name for e in run.for_iteration(1)] == ["a", "b"]
        assert run.for_iteration(3) == []

    def test_run_result_final_response(self) -> None:
        run = NarrativeExecution(narrative_name="n")
        assert RunResult(execution=run, status="completed").final_response is None
        run.act_executions.append(_execution("a", 1, "last words"))
        result = RunResult(execution=run, status="completed")
        assert result.final_response == "last words"
        assert result.ok
        assert not RunResult(execution=run, status="cancelled").ok

    def test_act_execution_serialises(self) -> None:
        data = _execution("a", 1).model_dump(mode="json")
        assert data["act_name"] == "a"
        assert isinstance(data["started_at"], str)
        assert ActExecution.model_validate(data).iteration == 1
