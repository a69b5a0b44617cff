"""Logging setup for the CLI scripts and for hosts embedding a session.

One root configuration, two line formats, and per-turn context fields::

    setup_logging("INFO", context={"app": "run_session"})
    push_context(turn=3)       # RequestController does this for each turn
    pop_context(["turn"])

Line formats::

    human  2025-10-28T13:45:12.345Z | INFO     | app=run_session turn=3 | Turn committed
    json   {"t": "...", "lvl": "INFO", "name": "...", "msg": "...", "turn": 3}

Fields live in a ``contextvars.ContextVar``, so concurrent asyncio tasks
each log their own ``turn``.  Calling :func:`setup_logging` again replaces
the handlers it installed earlier instead of stacking new ones.
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

_fields: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "mill_assist_log_fields", default={}
)

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
_RESET = "\033[0m"

_installed: List[logging.Handler] = []


class ContextFormatter(logging.Formatter):
    """Render records with the active context fields appended.

    Parameters
    ----------
    fmt_mode : str
        ``"human"`` for pipe-separated text, ``"json"`` for one object per line.
    use_color : bool
        Colour the level name; only honoured when stderr is a terminal.
    tz : str
        ``"UTC"`` or ``"local"`` timestamps.
    """

    def __init__(self, fmt_mode: str = "human", use_color: bool = False, tz: str = "UTC"):
        super().__init__()
        if fmt_mode not in ("human", "json"):
            raise ValueError(f"fmt_mode must be 'human' or 'json', got {fmt_mode!r}")
        self.fmt_mode = fmt_mode
        self.use_color = use_color and sys.stderr.isatty()
        self.tz = tz

    def _timestamp(self, record: logging.LogRecord) -> str:
        if self.tz == "UTC":
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
            return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"
        return datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds")

    def format(self, record: logging.LogRecord) -> str:
        fields = _fields.get()
        stamp = self._timestamp(record)

        if self.fmt_mode == "json":
            entry: Dict[str, Any] = {
                "t": stamp,
                "lvl": record.levelname,
                "name": record.name,
                "msg": record.getMessage(),
            }
            entry.update(fields)
            if record.exc_info:
                entry["exc"] = self.formatException(record.exc_info)
            return json.dumps(entry, default=str)

        level = f"{record.levelname:8s}"
        if self.use_color:
            level = f"{_LEVEL_COLORS.get(record.levelname, '')}{level}{_RESET}"
        columns = [stamp, level]
        if fields:
            columns.append(" ".join(f"{k}={v}" for k, v in fields.items()))
        columns.append(record.getMessage())
        line = " | ".join(columns)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json_lines: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    tz: str = "UTC",
    capture_warnings: bool = True,
    quiet_libs: Optional[List[str]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> List[logging.Handler]:
    """Configure the root logger.

    Parameters
    ----------
    log_level : str
        Root level name, e.g. ``"INFO"``.
    log_file : str, optional
        Also log to this file (parent directories are created).
    json_lines : bool
        Use the JSON format for the file handler.
    color : bool
        Colour level names on the console.
    to_stderr : bool
        Attach a console handler on stderr.
    tz : str
        ``"UTC"`` (default) or ``"local"``.
    capture_warnings : bool
        Route ``warnings.warn`` through logging.
    quiet_libs : list[str], optional
        Logger names capped at WARNING.
    context : dict, optional
        Fields pushed before returning, e.g. ``{"app": "compile_job"}``.

    Returns
    -------
    list[logging.Handler]
        The handlers now installed on the root logger.
    """
    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()

    root.setLevel(getattr(logging, log_level.upper()))

    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ContextFormatter("human", use_color=color, tz=tz))
        _installed.append(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            ContextFormatter("json" if json_lines else "human", use_color=False, tz=tz)
        )
        _installed.append(file_handler)

    for handler in _installed:
        root.addHandler(handler)

    for name in quiet_libs or []:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.captureWarnings(capture_warnings)

    if context:
        push_context(**context)

    return list(_installed)


def push_context(**kwargs: Any) -> None:
    """Add fields to every record logged from the current context."""
    _fields.set({**_fields.get(), **kwargs})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Drop the given fields, or all of them when *keys* is None."""
    if keys is None:
        _fields.set({})
        return
    _fields.set({k: v for k, v in _fields.get().items() if k not in keys})


def get_context() -> Dict[str, Any]:
    """Return a copy of the active fields."""
    return dict(_fields.get())
