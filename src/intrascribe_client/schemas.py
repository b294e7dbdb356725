"""Pydantic schemas for Intrascribe HTTP and realtime payloads."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .models import (
    Accepted,
    Deferred,
    EventKind,
    Immediate,
    RealtimeEvent,
    SessionRecord,
    Submission,
    TaskHandle,
    TaskStatus,
    TranscriptionRecord,
)


class TaskStatusPayload(BaseModel):
    """Response body of ``GET /v2/tasks/{task_id}``."""

    model_config = ConfigDict(extra="ignore")

    task_id: str | None = Field(default=None, description="Identifier echoed by the backend.")
    status: str = Field(description="Raw task status string.")
    progress: Any = Field(default=None, description="Optional backend progress indicator.")
    result: Any = Field(default=None, description="Result payload once completed.")
    error: str | None = Field(default=None, description="Failure message when failed.")

    def to_handle(self, task_id: str) -> TaskHandle:
        """Convert the payload into a :class:`TaskHandle` for *task_id*."""
        return TaskHandle(
            task_id=self.task_id or task_id,
            status=TaskStatus.parse(self.status),
            raw_status=self.status,
            progress=self.progress,
            result=self.result,
            error=self.error,
        )


class SubmissionPayload(BaseModel):
    """Response body of job submission endpoints (async or synchronous shape)."""

    model_config = ConfigDict(extra="ignore")

    task_id: str | None = Field(default=None, description="Background task id when deferred.")
    poll_url: str | None = Field(default=None, description="Status URL for deferred tasks.")
    status: str | None = Field(default=None, description="Submission status string.")
    message: str | None = Field(default=None, description="Human-readable acknowledgement.")
    success: bool | None = Field(default=None, description="Explicit success flag (v1 APIs).")
    result: Any = Field(
        default=None,
        validation_alias=AliasChoices("result", "data"),
        description="Synchronous result payload.",
    )

    def to_submission(self, *, fallback_result: Any = None) -> Submission:
        """Classify the payload as an immediate, deferred or acknowledged submission."""
        if self.task_id:
            return Deferred(task_id=self.task_id, poll_url=self.poll_url)
        result = self.result if self.result is not None else fallback_result
        if result is not None:
            return Immediate(result=result)
        return Accepted(message=self.message, status=self.status)


class TranscriptionPayload(BaseModel):
    """Transcription row embedded in a session response."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    content: str | None = None
    segments: list[Any] | str | None = None

    def to_record(self) -> TranscriptionRecord:
        """Convert into the immutable record used for signatures."""
        segments = tuple(self.segments) if isinstance(self.segments, list) else self.segments
        return TranscriptionRecord(id=self.id, content=self.content, segments=segments)


class SessionPayload(BaseModel):
    """Response body of ``GET /v1/sessions/{session_id}``."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(description="Session identifier.")
    status: str = Field(description="Session lifecycle status.")
    title: str | None = None
    transcriptions: list[TranscriptionPayload] = Field(default_factory=list)

    def to_record(self) -> SessionRecord:
        """Convert into the :class:`SessionRecord` consumed by the state machine."""
        return SessionRecord(
            id=self.id,
            status=self.status,
            title=self.title,
            transcriptions=tuple(item.to_record() for item in self.transcriptions),
        )


class PostgresChangeData(BaseModel):
    """Row-change body carried by a ``postgres_changes`` realtime message."""

    model_config = ConfigDict(extra="ignore")

    schema_name: str = Field(validation_alias=AliasChoices("schema", "schema_name"))
    table: str
    kind: str = Field(
        default="*", validation_alias=AliasChoices("type", "eventType", "kind")
    )
    record: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("record", "new")
    )
    old_record: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("old_record", "old")
    )
    commit_timestamp: str | None = None

    def to_event(self) -> RealtimeEvent:
        """Convert into a transient :class:`RealtimeEvent`."""
        return RealtimeEvent(
            kind=EventKind.parse(self.kind),
            schema=self.schema_name,
            table=self.table,
            new_row=dict(self.record or {}),
            old_row=dict(self.old_record or {}),
            commit_timestamp=self.commit_timestamp,
        )


class PhoenixMessage(BaseModel):
    """Envelope of a Phoenix channel message."""

    model_config = ConfigDict(extra="ignore")

    topic: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ref: str | None = None
    join_ref: str | None = None
