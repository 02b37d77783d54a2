"""Core domain models.

Definitions (Narrative, Act, resources, input specs) are produced by the loader
and are read-only once loaded. Execution records (ActExecution,
NarrativeExecution, RunResult) are produced by the executor.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

Retention = Literal["full", "summary", "drop"]
PartKind = Literal["text", "table", "bot", "media", "narrative"]
Role = Literal["user", "assistant"]
TableFormat = Literal["json", "markdown", "csv"]
RunStatus = Literal["completed", "aborted", "cancelled"]
FailedStage = Literal["resolving", "invoking"]
GenerationStatus = Literal["running", "success", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Resources: named things an act can reference as `bots.x`, `tables.x`, `media.x`
# ---------------------------------------------------------------------------

class BotCommand(BaseModel):
    """A bot command executed against an external platform."""

    model_config = ConfigDict(frozen=True)

    name: str
    platform: str
    command: str
    args: dict[str, Any] = Field(default_factory=dict)
    required: bool = True
    write: bool = False  # mutates external state; must be allow-listed


class TableQuery(BaseModel):
    """A read query against the repository."""

    model_config = ConfigDict(frozen=True)

    name: str
    table: str
    columns: list[str] | None = None
    where: dict[str, Any] | None = None  # column -> equality value
    order_by: str | None = None
    limit: int = 10
    offset: int | None = None
    alias: str | None = None
    format: TableFormat = "json"


class MediaResource(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    source: str  # url, file path, or base64 payload
    mime: str | None = None


ResourceNamespace = Literal["bots", "tables", "media"]


# ---------------------------------------------------------------------------
# Input specs: one entry of an act's input list
# ---------------------------------------------------------------------------

class TextInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str
    history_retention: Retention = "full"


class ResourceRefInput(BaseModel):
    """Reference to a named resource, written `namespace.name`."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["ref"] = "ref"
    namespace: ResourceNamespace
    name: str
    history_retention: Retention = "full"

    @property
    def ref(self) -> str:
        return f"{self.namespace}.{self.name}"


class MediaInput(BaseModel):
    """Inline media attached to an act (image, audio, video or document)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["media"] = "media"
    media_type: str = "image"
    source: str
    mime: str | None = None
    history_retention: Retention = "full"


class SubNarrativeInput(BaseModel):
    """Runs another narrative and feeds its final response into this act."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["narrative"] = "narrative"
    name: str
    path: str | None = None
    history_retention: Retention = "full"


InputSpec = Annotated[
    Union[TextInput, ResourceRefInput, MediaInput, SubNarrativeInput],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------

class Act(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    inputs: list[InputSpec]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extract_output: bool | None = None  # None: the content gate decides

    @property
    def has_text_input(self) -> bool:
        return any(isinstance(i, TextInput) for i in self.inputs)


class Narrative(BaseModel):
    """A fully validated workflow definition."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    order: list[str]
    carousel_count: int = 1
    acts: dict[str, Act]
    bots: dict[str, BotCommand] = Field(default_factory=dict)
    tables: dict[str, TableQuery] = Field(default_factory=dict)
    media: dict[str, MediaResource] = Field(default_factory=dict)
    template_table: str | None = None
    target_table: str | None = None
    skip_content_generation: bool = False
    allowed_writes: list[str] = Field(default_factory=list)
    source_path: str | None = None

    def sub_narrative_refs(self) -> list[SubNarrativeInput]:
        return [
            spec
            for act in self.acts.values()
            for spec in act.inputs
            if isinstance(spec, SubNarrativeInput)
        ]


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class ContentPart(BaseModel):
    """One typed part of a message sent to (or received from) the backend."""

    kind: PartKind
    text: str = ""
    name: str | None = None
    platform: str | None = None  # bot parts
    command: str | None = None  # bot parts
    row_count: int | None = None  # table parts
    source: str | None = None  # media parts
    mime: str | None = None  # media parts
    retention: Retention = "full"


class Message(BaseModel):
    role: Role
    parts: list[ContentPart]

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.parts if p.text)


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------

class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ActExecution(BaseModel):
    """Immutable record of one act run within one carousel iteration."""

    model_config = ConfigDict(frozen=True)

    act_name: str
    iteration: int  # 1-based
    sequence_number: int  # 0-based position within `order`
    inputs: list[ContentPart]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    response: str
    started_at: datetime
    duration_ms: int = 0
    usage: TokenUsage | None = None


class NarrativeExecution(BaseModel):
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    narrative_name: str
    act_executions: list[ActExecution] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    duration_ms: int = 0
    total_tokens: int = 0

    def for_iteration(self, iteration: int) -> list[ActExecution]:
        return [e for e in self.act_executions if e.iteration == iteration]


class ProcessorFailure(BaseModel):
    act_name: str
    iteration: int
    processor: str
    message: str
    preview: str = ""


class RunResult(BaseModel):
    execution: NarrativeExecution
    status: RunStatus
    error: str | None = None
    failed_act: str | None = None
    failed_stage: FailedStage | None = None
    processor_errors: list[ProcessorFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    @property
    def final_response(self) -> str | None:
        if not self.execution.act_executions:
            return None
        return self.execution.act_executions[-1].response


class ContentGenerationRecord(BaseModel):
    """Tracks one batch of rows written into a generated table."""

    id: int | None = None
    table_name: str
    source_narrative: str
    source_act: str
    generation_model: str | None = None
    status: GenerationStatus = "running"
    generated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    row_count: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
