#!/usr/bin/env python3
"""
Run Session Script.

Replay a recorded multi-turn session through the request controller and
write the final program.  Each turn carries the analyzer answer (or error)
that was recorded for it, so the run is fully offline and repeatable.

Usage:
    python -m mill_assist.scripts.run_session --file turns.yaml
    python -m mill_assist.scripts.run_session --file turns.yaml --out part.mpf

Session file format (YAML):
    turns:
      - prompt: "Drill a 6 mm hole at 20,20, 10 deep"
        mode: accumulate
        result: {operation: {...}, stock: {...}, explanation: "..."}
      - prompt: "Add a pocket"
        error: {kind: quota, message: "429 Too Many Requests"}
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import yaml

from mill_assist.configs.loader import ConfigError, load_config
from mill_assist.session.analyzer import ReplayAnalyzer
from mill_assist.session.controller import RequestController
from mill_assist.session.schema import JobFileError, TurnRecord, load_session_script
from mill_assist.session.state import Session
from mill_assist.utils.fs import atomic_write_text
from mill_assist.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


async def replay(controller: RequestController, turns: list[TurnRecord]) -> None:
    """Submit every recorded turn in order and print the transcript."""
    for turn in turns:
        outcome = await controller.submit(turn.prompt, mode=turn.mode)
        status = outcome.state.name
        text = outcome.message.text if outcome.message else ""
        print(f"[{outcome.generation}] {turn.mode.value:<10} {status:<9} {text}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Replay a recorded assistant session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--file",
        "-f",
        type=str,
        required=True,
        help="Session script to replay (YAML format)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Configuration file path",
    )
    parser.add_argument(
        "--out",
        "-o",
        type=str,
        help="Write the final program here instead of stdout",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        help="Logging level",
    )

    args = parser.parse_args(argv)
    setup_logging(args.log_level, context={"app": "run_session"})

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError, yaml.YAMLError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        turns = load_session_script(args.file)
    except (JobFileError, FileNotFoundError, yaml.YAMLError) as e:
        print(f"Error loading session script: {e}", file=sys.stderr)
        return 1

    session = Session(config.session.default_stock)
    analyzer = ReplayAnalyzer(turn.record() for turn in turns)
    controller = RequestController(session, analyzer, config)
    asyncio.run(replay(controller, turns))

    if session.output is None:
        print("No turn produced a program.", file=sys.stderr)
        return 1

    print(f"Job holds {len(session.ledger)} operation(s)")
    if args.out:
        atomic_write_text(args.out, session.output.program)
        print(f"Program written to {args.out}")
    else:
        sys.stdout.write(session.output.program)
    return 0


if __name__ == "__main__":
    sys.exit(main())
