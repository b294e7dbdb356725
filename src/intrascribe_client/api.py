"""Typed wrappers around the Intrascribe task, session and job-submission endpoints."""

from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import AuthenticationError, NetworkError, ResponseParsingError
from .http import AsyncHttpClientProtocol
from .models import Accepted, SessionRecord, Submission, TaskHandle
from .schemas import SessionPayload, SubmissionPayload, TaskStatusPayload

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class TaskStatusSource(Protocol):
    """Protocol for fetching a fresh task status snapshot."""

    async def get_task(self, task_id: str) -> TaskHandle:  # pragma: no cover - protocol
        """Return the current status of *task_id*."""
        ...


class SessionSource(Protocol):
    """Protocol for fetching the current state of a watched session record."""

    async def get_session(self, session_id: str) -> SessionRecord:  # pragma: no cover - protocol
        """Return the latest record for *session_id*."""
        ...


class IntrascribeApi(TaskStatusSource, SessionSource):
    """Thin API adapter translating JSON responses into typed models.

    Submission responses come in two historical shapes (a background task id or a
    synchronous body). They are classified here, once, into the
    :data:`~intrascribe_client.models.Submission` variants so nothing downstream
    probes response structure.
    """

    def __init__(self, http_client: AsyncHttpClientProtocol) -> None:
        """Create the adapter on top of *http_client*."""
        self._http = http_client

    async def get_task(self, task_id: str) -> TaskHandle:
        """Fetch ``/v2/tasks/{task_id}``."""
        payload = await self._http.get_json(f"/v2/tasks/{task_id}")
        return _validate(TaskStatusPayload, payload, "task status").to_handle(task_id)

    async def get_session(self, session_id: str) -> SessionRecord:
        """Fetch ``/v1/sessions/{session_id}``."""
        payload = await self._http.get_json(f"/v1/sessions/{session_id}")
        return _validate(SessionPayload, payload, "session").to_record()

    async def retranscribe_session(self, session_id: str) -> Submission:
        """Start re-transcription, falling back to the synchronous v1 endpoint."""
        try:
            payload = await self._http.post_json(f"/v2/sessions/{session_id}/retranscribe")
        except AuthenticationError:
            raise
        except NetworkError as exc:
            logger.warning(
                "v2 retranscribe for session %s failed (%s); falling back to v1", session_id, exc
            )
            payload = await self._http.post_json(f"/v1/sessions/{session_id}/retranscribe")
            submission = _validate(SubmissionPayload, payload, "retranscribe").to_submission()
            return _require_success(payload, submission)
        submission = _validate(SubmissionPayload, payload, "retranscribe").to_submission()
        logger.info("Retranscription submitted for session %s: %s", session_id, submission)
        return submission

    async def request_ai_summary(
        self, session_id: str, *, template_id: str | None = None
    ) -> Submission:
        """Submit an AI summary job for *session_id*."""
        payload = await self._http.post_json(
            f"/v2/sessions/{session_id}/ai-summary", {"template_id": template_id}
        )
        return _validate(SubmissionPayload, payload, "ai-summary").to_submission()

    async def summarize(
        self, session_id: str, transcription: str, *, template_id: str | None = None
    ) -> Submission:
        """Summarize *transcription* text in the context of *session_id*."""
        body: dict[str, Any] = {"transcription_text": transcription}
        if template_id:
            body["template_id"] = template_id
        payload = await self._http.post_json(f"/v2/sessions/{session_id}/summarize", body)
        return _validate(SubmissionPayload, payload, "summarize").to_submission(
            fallback_result=_summary_body(payload)
        )

    async def finalize_session(self, session_id: str) -> Submission:
        """Finalize a recording session, which may start background processing."""
        payload = await self._http.post_json(f"/v2/sessions/{session_id}/finalize")
        return _validate(SubmissionPayload, payload, "finalize").to_submission()

    async def generate_title(
        self, session_id: str, transcription: str, *, summary: str | None = None
    ) -> Submission:
        """Generate a title from *transcription* and optional *summary*."""
        payload = await self._http.post_json(
            f"/v2/sessions/{session_id}/generate-title",
            {"transcription_text": transcription, "summary_text": summary},
        )
        return _validate(SubmissionPayload, payload, "generate-title").to_submission(
            fallback_result=payload
        )


def _validate(
    model: type[ModelT], payload: Any, label: str
) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ResponseParsingError(f"Unexpected {label} payload: {exc}") from exc


def _summary_body(payload: Any) -> Any:
    """Return the payload when it already is a synchronous summary body."""
    if isinstance(payload, dict) and "summary" in payload:
        return payload
    return None


def _require_success(payload: Any, submission: Submission) -> Submission:
    """Reject v1 acknowledgements that explicitly report failure."""
    if isinstance(payload, dict) and payload.get("success") is False:
        message = payload.get("message") or "retranscription request rejected"
        raise NetworkError(str(message))
    if isinstance(submission, Accepted):
        logger.info("v1 retranscribe acknowledged: %s", submission.message)
    return submission
