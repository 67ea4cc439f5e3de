"""
Command-line interface for eventchain.

Provides operator commands for the read side and the dead-letter store:
- fetch: Retrieve a subject's events (optionally with an integrity verdict)
- wait: Poll until an event about a subject is visible
- dead-letters: List, summarise, verify and review failed publishes
- config: Print the effective configuration with credentials masked

Usage:
    eventchain fetch BATCH-7 [--topic 0.0.12345] [--verify]
    eventchain wait BATCH-7 [--deadline-ms 5000]
    eventchain dead-letters list [--priority high] [--unreviewed]
    eventchain dead-letters review FAILURE_ID --notes "payload trimmed"
    eventchain config

Publishing needs a transport and is done from code, through
:class:`eventchain.pipeline.EventPipeline`.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

from eventchain.codec import MessageCodec, event_to_dict
from eventchain.config import LoggingSettings, PipelineConfig, load_config, print_config_summary
from eventchain.confirmation import ConfirmationWaiter
from eventchain.deadletter import DeadLetterRecorder
from eventchain.errors import ConfigError, EventChainError
from eventchain.integrity import IntegrityValidator
from eventchain.models import RetrievalResult
from eventchain.query import EventFilter, LogQueryService

logger = logging.getLogger(__name__)

LOG_FORMATS = {
    "simple": "%(levelname)s: %(message)s",
    "detailed": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
}


class JsonLogFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data)


def configure_logging(settings: LoggingSettings) -> None:
    """Install a stderr handler on the ``eventchain`` logger."""
    handler = logging.StreamHandler(sys.stderr)
    if settings.format == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMATS.get(settings.format, LOG_FORMATS["detailed"])))

    root = logging.getLogger("eventchain")
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.level.upper())


# =============================================================================
# OUTPUT HELPERS
# =============================================================================


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _result_to_dict(result: RetrievalResult) -> dict[str, Any]:
    return {
        "found": result.found,
        "events": [event_to_dict(e) for e in result.events],
        "metadata": asdict(result.metadata),
    }


def _require_topic(cfg: PipelineConfig, topic: str | None) -> str:
    topic_id = topic or cfg.log.topic_id
    if not topic_id:
        raise ConfigError("topic_id is required", detail="set [log] topic_id or pass --topic")
    return topic_id


# =============================================================================
# COMMANDS
# =============================================================================


async def _fetch(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    topic_id = _require_topic(cfg, args.topic)
    codec = MessageCodec(cfg.codec.max_payload_bytes)
    async with LogQueryService(cfg.log, codec, budget_ms=cfg.confirmation.budget_ms) as service:
        result = await service.fetch(topic_id, EventFilter(subject_id=args.subject))

    output = _result_to_dict(result)
    if args.verify:
        output["verdict"] = asdict(IntegrityValidator(cfg.integrity).verify(result.events))
    _print_json(output)
    return 0


def cmd_fetch(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    """
    Retrieve and print a subject's events as JSON.

    Returns:
        0 on success (even if nothing was found), 1 on error
    """
    return asyncio.run(_fetch(cfg, args))


async def _wait(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    topic_id = _require_topic(cfg, args.topic)
    codec = MessageCodec(cfg.codec.max_payload_bytes)
    async with LogQueryService(cfg.log, codec, budget_ms=cfg.confirmation.budget_ms) as service:
        waiter = ConfirmationWaiter(service, cfg.confirmation)
        confirmed = await waiter.wait_for_confirmation(args.subject, topic_id, args.deadline_ms)

    print("confirmed" if confirmed else "not confirmed")
    return 0 if confirmed else 1


def cmd_wait(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    """
    Poll until an event about the subject is visible.

    Returns:
        0 if confirmed within the deadline, 1 otherwise
    """
    return asyncio.run(_wait(cfg, args))


async def _dead_letters(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    recorder = DeadLetterRecorder(cfg.dead_letter.absolute_path)

    if args.action == "list":
        letters = await recorder.list_failures(
            priority=args.priority,
            category=args.category,
            reviewed=False if args.unreviewed else None,
            subject_id=args.subject,
            limit=args.limit,
        )
        _print_json([letter.to_dict() for letter in letters])
        return 0

    if args.action == "stats":
        _print_json(asdict(await recorder.statistics()))
        return 0

    if args.action == "verify":
        result = recorder.verify()
        _print_json(asdict(result))
        return 1 if result.status == "corrupt" else 0

    # review
    await recorder.mark_reviewed(args.failure_id, args.notes)
    print(f"Dead letter {args.failure_id} marked as reviewed.")
    return 0


def cmd_dead_letters(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    """
    Inspect or review the dead-letter store.

    Returns:
        0 on success, 1 on error or a failed verification
    """
    return asyncio.run(_dead_letters(cfg, args))


def cmd_config(cfg: PipelineConfig, args: argparse.Namespace) -> int:
    """Print the effective configuration."""
    print_config_summary(cfg)
    return 0


# =============================================================================
# ENTRY POINT
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        prog="eventchain",
        description="eventchain - tamper-evident lifecycle events on an append-only log",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to an INI config file (default: config/eventchain.ini)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # fetch command
    fetch_parser = subparsers.add_parser(
        "fetch",
        help="Retrieve a subject's events",
        description="Query the log for every event about SUBJECT and print them as JSON.",
    )
    fetch_parser.add_argument("subject", help="Subject id to retrieve")
    fetch_parser.add_argument("--topic", type=str, help="Topic id (default: configured topic)")
    fetch_parser.add_argument(
        "--verify",
        action="store_true",
        help="Also validate the retrieved events as a chain",
    )
    fetch_parser.set_defaults(func=cmd_fetch)

    # wait command
    wait_parser = subparsers.add_parser(
        "wait",
        help="Wait until a subject's event is visible",
        description="Poll the log until an event about SUBJECT appears or the deadline passes.",
    )
    wait_parser.add_argument("subject", help="Subject id to wait for")
    wait_parser.add_argument("--topic", type=str, help="Topic id (default: configured topic)")
    wait_parser.add_argument(
        "--deadline-ms",
        type=float,
        help="How long to wait (default: the configured confirmation budget)",
    )
    wait_parser.set_defaults(func=cmd_wait)

    # dead-letters command
    dl_parser = subparsers.add_parser(
        "dead-letters",
        help="Inspect failed publishes",
        description="List, summarise, verify or review entries in the dead-letter store.",
    )
    dl_sub = dl_parser.add_subparsers(dest="action", required=True)

    list_parser = dl_sub.add_parser("list", help="List open dead letters")
    list_parser.add_argument("--priority", choices=["critical", "high", "medium", "low"])
    list_parser.add_argument(
        "--category", choices=["network", "validation", "rate_limit", "service", "unknown"]
    )
    list_parser.add_argument("--unreviewed", action="store_true", help="Only unreviewed entries")
    list_parser.add_argument("--subject", type=str, help="Only entries for this subject")
    list_parser.add_argument("--limit", type=int, default=100)

    dl_sub.add_parser("stats", help="Summarise open dead letters")
    dl_sub.add_parser("verify", help="Check the store's last entry checksum")

    review_parser = dl_sub.add_parser("review", help="Mark a dead letter as reviewed")
    review_parser.add_argument("failure_id", help="Dead letter id")
    review_parser.add_argument("--notes", type=str, help="Reviewer notes")

    dl_parser.set_defaults(func=cmd_dead_letters)

    # config command
    config_parser = subparsers.add_parser("config", help="Show the effective configuration")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        cfg = load_config(args.config)
        cfg.logging.validate()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging(cfg.logging)

    try:
        return args.func(cfg, args)
    except EventChainError as e:
        logger.debug("Command %s failed: %r", args.command, e)
        print(f"Error [{e.code}]: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
