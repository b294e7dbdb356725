"""Configuration schemas for the Intrascribe job-tracking client."""

from __future__ import annotations

import os
from collections.abc import Mapping
from datetime import timedelta
from typing import TypedDict

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    NonNegativeFloat,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
)


class _PollerOverrides(TypedDict, total=False):
    """Typed override map for :class:`PollerConfig` initialisation."""

    base_delay: float
    max_attempts: int


class HttpClientConfig(BaseModel):
    """HTTP client tuning parameters for Intrascribe API requests."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: HttpUrl = Field(
        default=HttpUrl("http://localhost:3000/api"),
        description="Root URL of the API; versioned paths (/v1, /v2) are appended to it",
    )
    timeout: PositiveFloat = Field(
        default=30.0, description="Per-request timeout in seconds"
    )
    user_agent: str = Field(
        default="intrascribe-client/0.1", description="User agent sent with every request"
    )
    max_connections: NonNegativeInt = Field(
        default=10, description="Maximum concurrent HTTP connections"
    )
    enable_http2: bool = Field(
        default=True, description="Whether HTTP/2 should be attempted when available"
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> HttpClientConfig:
        """Build a configuration from environment variables.

        Recognised variables:
            - ``INTRASCRIBE_API_URL`` overrides ``base_url``
            - ``INTRASCRIBE_HTTP_TIMEOUT`` overrides ``timeout`` (float seconds)
        """
        source = dict(os.environ if env is None else env)
        base_url = source.get("INTRASCRIBE_API_URL")
        timeout_raw = source.get("INTRASCRIBE_HTTP_TIMEOUT")
        if base_url is None and timeout_raw is None:
            return cls()
        base = cls()
        timeout = base.timeout
        if timeout_raw is not None:
            try:
                timeout = float(timeout_raw)
            except ValueError as exc:
                raise ValueError("INTRASCRIBE_HTTP_TIMEOUT must be a floating point value") from exc
        return cls(
            base_url=HttpUrl(base_url) if base_url else base.base_url,
            timeout=timeout,
        )


class PollerConfig(BaseModel):
    """Retry and cadence parameters for the task status poller."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_delay: NonNegativeFloat = Field(
        default=3.0, description="Delay (seconds) between regular status fetches"
    )
    auth_retry_delay: NonNegativeFloat = Field(
        default=1.0, description="Short delay (seconds) applied after an authorization failure"
    )
    max_attempts: PositiveInt = Field(
        default=120, description="Default attempt budget for a single poll"
    )
    auth_retry_limit: NonNegativeInt = Field(
        default=5,
        description="Consecutive authorization failures tolerated before the poll fails",
    )
    final_attempts_margin: NonNegativeInt = Field(
        default=3,
        description=(
            "Network errors are re-raised once fewer than this many attempts remain "
            "in the budget"
        ),
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> PollerConfig:
        """Build a configuration from environment variables.

        Recognised variables:
            - ``INTRASCRIBE_POLL_INTERVAL`` overrides ``base_delay`` (float seconds)
            - ``INTRASCRIBE_POLL_MAX_ATTEMPTS`` overrides ``max_attempts`` (integer)
        """
        source = dict(os.environ if env is None else env)
        updates: _PollerOverrides = {}
        interval_raw = source.get("INTRASCRIBE_POLL_INTERVAL")
        if interval_raw is not None:
            try:
                updates["base_delay"] = float(interval_raw)
            except ValueError as exc:
                raise ValueError("INTRASCRIBE_POLL_INTERVAL must be a number") from exc
        attempts_raw = source.get("INTRASCRIBE_POLL_MAX_ATTEMPTS")
        if attempts_raw is not None:
            try:
                updates["max_attempts"] = int(attempts_raw)
            except ValueError as exc:
                raise ValueError("INTRASCRIBE_POLL_MAX_ATTEMPTS must be an integer") from exc
        return cls(**updates)


class RealtimeConfig(BaseModel):
    """Settings for the realtime channel transport and subscription bookkeeping."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str | None = Field(
        default=None,
        description="Realtime websocket endpoint (e.g. wss://host/supabase/realtime/v1)",
    )
    api_key: str | None = Field(
        default=None, description="Anonymous API key sent when connecting to the endpoint"
    )
    schema_name: str = Field(
        default="public", description="Database schema whose row changes are subscribed"
    )
    heartbeat_interval: PositiveFloat = Field(
        default=30.0, description="Seconds between websocket heartbeats"
    )
    join_timeout: PositiveFloat = Field(
        default=10.0, description="Seconds to wait for a channel join reply before timing out"
    )
    stale_after: timedelta = Field(
        default=timedelta(hours=1),
        description="Age after which the health check flags a channel as stale",
    )
    healthy_channel_limit: PositiveInt = Field(
        default=10, description="Channel count at or above which the manager reports unhealthy"
    )
    health_check_interval: PositiveFloat | None = Field(
        default=None,
        description="Optional period (seconds) for background health checks; None disables",
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> RealtimeConfig:
        """Build a configuration from environment variables.

        Recognised variables:
            - ``INTRASCRIBE_REALTIME_URL`` sets ``url``
            - ``INTRASCRIBE_ANON_KEY`` sets ``api_key``
        """
        source = dict(os.environ if env is None else env)
        return cls(
            url=source.get("INTRASCRIBE_REALTIME_URL") or None,
            api_key=source.get("INTRASCRIBE_ANON_KEY") or None,
        )


class CompletionConfig(BaseModel):
    """Markers and timing used to infer job completion from refreshed records."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    fallback_timeout: PositiveFloat = Field(
        default=4.0,
        description="Seconds after submission at which push-driven watches are forced terminal",
    )
    in_progress_status: str = Field(
        default="processing", description="Record status confirming the job was picked up"
    )
    success_status: str = Field(
        default="completed", description="Record status marking a successfully finished job"
    )

    @classmethod
    def from_environment(cls, *, env: Mapping[str, str] | None = None) -> CompletionConfig:
        """Build a configuration from environment variables.

        Recognised variables:
            - ``INTRASCRIBE_FALLBACK_TIMEOUT`` overrides ``fallback_timeout`` (float seconds)
        """
        source = dict(os.environ if env is None else env)
        raw = source.get("INTRASCRIBE_FALLBACK_TIMEOUT")
        if raw is None:
            return cls()
        try:
            return cls(fallback_timeout=float(raw))
        except ValueError as exc:
            raise ValueError("INTRASCRIBE_FALLBACK_TIMEOUT must be a floating point value") from exc


def load_access_token_from_environment(*, env: Mapping[str, str] | None = None) -> str:
    """Load the API bearer token from ``INTRASCRIBE_ACCESS_TOKEN``.

    The CLI loads ``.env`` via python-dotenv prior to calling this function, so no
    file parsing occurs here.

    Raises:
        ValueError: If the token is missing or empty.

    """
    resolved_env = dict(os.environ if env is None else env)
    token = resolved_env.get("INTRASCRIBE_ACCESS_TOKEN", "").strip()
    if not token:
        raise ValueError("Missing access token: set INTRASCRIBE_ACCESS_TOKEN")
    return token
