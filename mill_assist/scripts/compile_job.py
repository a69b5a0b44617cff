#!/usr/bin/env python3
"""
Compile Job Script.

Compile a job file (stock plus ordered operations) into a Sinumerik program.

Usage:
    python -m mill_assist.scripts.compile_job --file job.yaml
    python -m mill_assist.scripts.compile_job --file job.yaml --out part.mpf
    python -m mill_assist.scripts.compile_job --file job.yaml --dry-run

Job file format (YAML; JSON also accepted):
    stock: {shape: RECTANGULAR, width: 100, length: 100, height: 20}
    operations:
      - {type: DRILL, x: 20, y: 20, z_start: 0, z_depth: -10, diameter: 6,
         feed_rate: 200, spindle_speed: 3000, tool_diameter: 6,
         tool_type: DRILL, step_down: 3}
"""

from __future__ import annotations

import argparse
import logging
import sys

import yaml

from mill_assist.configs.loader import ConfigError, load_config
from mill_assist.gcode.generator import ProgramCompiler
from mill_assist.session.schema import JobFileError, load_job_file
from mill_assist.utils.fs import atomic_write_text
from mill_assist.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compile a job file to G-code",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--file",
        "-f",
        type=str,
        required=True,
        help="Job file to compile (YAML format)",
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
        help="Write the program here instead of stdout",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compile and report, but don't write any file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Logging level",
    )

    args = parser.parse_args(argv)
    setup_logging(args.log_level, context={"app": "compile_job"})

    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError, yaml.YAMLError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    try:
        stock, operations, explanation = load_job_file(args.file)
    except (JobFileError, FileNotFoundError, yaml.YAMLError) as e:
        print(f"Error loading job file: {e}", file=sys.stderr)
        return 1

    logger.info("Job contains %d operation(s)", len(operations))
    output = ProgramCompiler(config.compiler).compile(stock, operations, explanation)
    skipped = output.program.count("; SKIPPED:")
    if skipped:
        logger.warning("%d operation(s) skipped; see SKIPPED comments", skipped)

    if args.dry_run:
        print(f"Compiled {len(output.program.splitlines())} lines "
              f"from {len(operations)} operation(s)")
        return 0

    if args.out:
        atomic_write_text(args.out, output.program)
        print(f"Program written to {args.out}")
    else:
        sys.stdout.write(output.program)
    return 0


if __name__ == "__main__":
    sys.exit(main())
