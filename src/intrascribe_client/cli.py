"""Command-line interface for submitting Intrascribe jobs and waiting for completion."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import traceback
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from dotenv import find_dotenv, load_dotenv

from .client import IntrascribeClient, IntrascribeClientDependencies
from .config import (
    CompletionConfig,
    HttpClientConfig,
    PollerConfig,
    RealtimeConfig,
    load_access_token_from_environment,
)
from .errors import AuthenticationError, IntrascribeError, JobRejectedError, TransportError
from .models import TerminalEvent
from .tracker import JobWatch

LOG_LEVELS: Final[dict[str, int]] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

COMMANDS: Final[tuple[str, ...]] = ("retranscribe", "ai-summary", "finalize")


@dataclass(frozen=True, slots=True)
class CliOptions:
    """Parsed command-line options for the job CLI."""

    command: str
    session_id: str
    dotenv_path: Path | None
    log_level: int
    max_attempts: int | None = None
    user_id: str | None = None
    realtime: bool = True
    template_id: str | None = None
    timeout: float | None = None


async def run_async(options: CliOptions) -> int:
    """Execute the CLI workflow and return the process exit code."""
    logger = _setup_logging(options.log_level)

    dotenv_file = (
        str(options.dotenv_path) if options.dotenv_path is not None else find_dotenv(usecwd=True)
    )
    if dotenv_file:
        load_dotenv(dotenv_file, override=True)
        logger.info("Loaded environment from %s (override=True)", dotenv_file)
    else:
        logger.debug("No .env file found; relying on process environment only")

    try:
        client = _build_client(options)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        await client.start()
        await _maybe_watch_sessions(client, options, logger)
        watch = await _submit(client, options)
        logger.info("Submitted %s for session %s", options.command, options.session_id)
        event = await watch.wait(options.timeout)
    except AuthenticationError as exc:
        logger.error("Authentication failed: %s", exc)
        print("Authentication failed. Sign in again and refresh the access token.", file=sys.stderr)
        return 1
    except JobRejectedError as exc:
        print(f"Job rejected: {exc}", file=sys.stderr)
        return 1
    except IntrascribeError as exc:
        logger.error("Intrascribe client error: %s", exc)
        print(f"Intrascribe client error: {exc}", file=sys.stderr)
        return 1
    except TimeoutError:
        print(f"Gave up waiting after {options.timeout} seconds", file=sys.stderr)
        return 1
    finally:
        await client.shutdown()

    print(format_terminal_event(event))
    return 0 if event.succeeded else 1


def format_terminal_event(event: TerminalEvent) -> str:
    """Return a one-line human readable summary of *event*."""
    line = f"{event.record_id}: {event.outcome.value} ({event.reason.value})"
    if event.error:
        line = f"{line} - {event.error}"
    return line


def _setup_logging(log_level: int) -> logging.Logger:
    """Configure logging and return the CLI logger.

    Reduces noise from network libraries at non-DEBUG levels.
    """
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)
    return logging.getLogger("intrascribe_client.cli")


def _build_client(options: CliOptions) -> IntrascribeClient:
    """Build the client from the environment, applying CLI overrides."""
    token = load_access_token_from_environment()
    poller_config = PollerConfig.from_environment()
    if options.max_attempts is not None:
        poller_config = poller_config.model_copy(update={"max_attempts": options.max_attempts})
    realtime_config = RealtimeConfig.from_environment() if options.realtime else RealtimeConfig()
    return IntrascribeClient(
        dependencies=IntrascribeClientDependencies(
            http_config=HttpClientConfig.from_environment(),
            token_provider=lambda: token,
            realtime_config=realtime_config,
            poller_config=poller_config,
            completion_config=CompletionConfig.from_environment(),
        )
    )


async def _maybe_watch_sessions(
    client: IntrascribeClient, options: CliOptions, logger: logging.Logger
) -> None:
    if options.user_id is None or not client.realtime_enabled:
        logger.debug("Realtime session updates disabled")
        return
    try:
        await client.watch_user_sessions(options.user_id)
    except TransportError as exc:
        logger.warning("Continuing without realtime updates: %s", exc)


async def _submit(client: IntrascribeClient, options: CliOptions) -> JobWatch:
    if options.command == "retranscribe":
        return await client.retranscribe(options.session_id)
    if options.command == "ai-summary":
        return await client.generate_ai_summary(options.session_id, template_id=options.template_id)
    return await client.finalize_session(options.session_id)


def parse_cli_args(argv: Sequence[str] | None = None) -> CliOptions:
    """Parse command-line arguments into :class:`CliOptions`."""
    parser = argparse.ArgumentParser(
        prog="intrascribe-jobs",
        description="Submit an Intrascribe session job and wait until it finishes.",
    )
    parser.add_argument("command", choices=COMMANDS, help="Job to submit")
    parser.add_argument(
        "--session-id",
        required=True,
        help="Recording session the job operates on",
    )
    parser.add_argument(
        "--user-id",
        default=None,
        help="Owner of the session; enables realtime refreshes of the user's sessions",
    )
    parser.add_argument(
        "--no-realtime",
        dest="realtime",
        action="store_false",
        help="Rely on polling and the fallback timer only",
    )
    parser.add_argument(
        "--template-id",
        default=None,
        help="Summary template for ai-summary jobs",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=None,
        help="Override the task poll attempt budget",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop waiting after this many seconds (the job keeps running server-side)",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file containing INTRASCRIBE_* settings",
    )
    parser.add_argument(
        "--log-level",
        choices=tuple(LOG_LEVELS.keys()),
        default="INFO",
        help="Log level for diagnostic output",
    )
    args = parser.parse_args(argv)
    if args.max_attempts is not None and args.max_attempts < 1:
        parser.error("--max-attempts must be at least 1")
    return CliOptions(
        command=args.command,
        session_id=args.session_id,
        dotenv_path=args.dotenv,
        log_level=LOG_LEVELS[args.log_level],
        max_attempts=args.max_attempts,
        user_id=args.user_id,
        realtime=args.realtime,
        template_id=args.template_id,
        timeout=args.timeout,
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the ``intrascribe-jobs`` console script."""
    options = parse_cli_args(argv)
    try:
        exit_code = asyncio.run(run_async(options))
    except KeyboardInterrupt:
        exit_code = 130
    except Exception:  # noqa: BLE001
        traceback.print_exc(limit=1)
        exit_code = 1
    raise SystemExit(exit_code)
