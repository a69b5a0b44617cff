"""Configuration loader for mill_assist.

Loads and validates ``defaults.yaml`` into typed, frozen dataclasses.
Compiler tunables (precision, clearances, stepover) and session texts come
from the config -- nothing is hardcoded in the compiler or controller.

Feed rates are mm/min throughout; they are emitted as-is in ``F`` words.

Usage::

    from mill_assist.configs.loader import load_config
    cfg = load_config()                        # default path
    cfg = load_config("/custom/assistant.yaml") # explicit path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mill_assist.job_ir.operations import StockDimensions, StockShape
from mill_assist.utils.fs import load_yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Dataclasses -- mirror the YAML structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompilerConfig:
    """Program compiler tunables.

    Parameters
    ----------
    program_name : str
        Name written into the program header comment.
    work_offset : str
        Work coordinate system selection, e.g. ``"G54"``.
    coordinate_decimals : int
        Decimal places for X/Y/Z/I/J words.
    feed_decimals : int
        Decimal places for ``F`` words.
    safe_clearance_mm : float
        Height added above ``max(z_start, stock.height)`` for rapids.
    peck_retract_mm : float
        Chip-breaking lift after each non-final drill peck.
    pocket_stepover : float
        Pocket ring spacing as a fraction of tool diameter, in (0, 1].
    face_overlap : float
        Face-mill pass overlap as a fraction of tool diameter, in [0, 1).
    coolant : bool
        Emit ``M8`` with spindle start and ``M9`` at program end.
    """

    program_name: str = "MILL_ASSIST"
    work_offset: str = "G54"
    coordinate_decimals: int = 3
    feed_decimals: int = 1
    safe_clearance_mm: float = 5.0
    peck_retract_mm: float = 1.0
    pocket_stepover: float = 0.5
    face_overlap: float = 0.3
    coolant: bool = True


@dataclass(frozen=True)
class MessagesConfig:
    """User-facing texts for non-success turn outcomes."""

    stopped: str
    quota: str
    parse: str
    generic: str


@dataclass(frozen=True)
class SessionConfig:
    """Session defaults and transcript texts."""

    default_model: str
    default_stock: StockDimensions
    default_prompts: dict[str, str]
    upload_label: str
    messages: MessagesConfig

    def default_prompt(self, media_type: str | None) -> str:
        """Prompt used when a turn carries an attachment but no text."""
        if media_type and media_type in self.default_prompts:
            return self.default_prompts[media_type]
        return self.default_prompts["fallback"]


@dataclass(frozen=True)
class AssistantConfig:
    """Complete configuration loaded from ``defaults.yaml``."""

    compiler: CompilerConfig
    session: SessionConfig


# ---------------------------------------------------------------------------
# Internal parsing helpers
# ---------------------------------------------------------------------------


def _parse_stock(data: dict[str, Any]) -> StockDimensions:
    """Parse a ``default_stock`` section."""
    shape = str(data.get("shape", "RECTANGULAR")).upper()
    try:
        stock_shape = StockShape(shape)
    except ValueError as exc:
        raise ConfigError(
            f"default_stock.shape must be RECTANGULAR or CYLINDRICAL, "
            f"got {shape!r}"
        ) from exc
    return StockDimensions(
        shape=stock_shape,
        width=float(data.get("width", 0.0)),
        length=float(data.get("length", 0.0)),
        height=float(data["height"]),
        diameter=float(data.get("diameter", 0.0)),
        material=str(data.get("material", "")),
    )


def _parse_compiler(data: dict[str, Any]) -> CompilerConfig:
    """Parse the ``compiler`` section."""
    return CompilerConfig(
        program_name=str(data.get("program_name", "MILL_ASSIST")),
        work_offset=str(data.get("work_offset", "G54")),
        coordinate_decimals=int(data["coordinate_decimals"]),
        feed_decimals=int(data["feed_decimals"]),
        safe_clearance_mm=float(data["safe_clearance_mm"]),
        peck_retract_mm=float(data["peck_retract_mm"]),
        pocket_stepover=float(data["pocket_stepover"]),
        face_overlap=float(data["face_overlap"]),
        coolant=bool(data.get("coolant", True)),
    )


def _parse_session(data: dict[str, Any]) -> SessionConfig:
    """Parse the ``session`` section."""
    md = data["messages"]
    messages = MessagesConfig(
        stopped=str(md["stopped"]),
        quota=str(md["quota"]),
        parse=str(md["parse"]),
        generic=str(md["generic"]),
    )
    prompts = {str(k): str(v) for k, v in data["default_prompts"].items()}
    return SessionConfig(
        default_model=str(data["default_model"]),
        default_stock=_parse_stock(data["default_stock"]),
        default_prompts=prompts,
        upload_label=str(data["upload_label"]),
        messages=messages,
    )


def _validate_config(cfg: AssistantConfig) -> None:
    """Cross-field checks that dataclass typing cannot express."""
    c = cfg.compiler
    if not 0 <= c.coordinate_decimals <= 6:
        raise ConfigError(
            f"coordinate_decimals must be in [0, 6], got {c.coordinate_decimals}"
        )
    if not 0 <= c.feed_decimals <= 3:
        raise ConfigError(
            f"feed_decimals must be in [0, 3], got {c.feed_decimals}"
        )
    if c.safe_clearance_mm <= 0:
        raise ConfigError(
            f"safe_clearance_mm must be > 0, got {c.safe_clearance_mm}"
        )
    if c.peck_retract_mm < 0:
        raise ConfigError(
            f"peck_retract_mm must be >= 0, got {c.peck_retract_mm}"
        )
    if not 0 < c.pocket_stepover <= 1:
        raise ConfigError(
            f"pocket_stepover must be in (0, 1], got {c.pocket_stepover}"
        )
    if not 0 <= c.face_overlap < 1:
        raise ConfigError(
            f"face_overlap must be in [0, 1), got {c.face_overlap}"
        )

    s = cfg.session
    if "fallback" not in s.default_prompts:
        raise ConfigError("session.default_prompts must define 'fallback'")
    if "{file_name}" not in s.upload_label:
        raise ConfigError("session.upload_label must contain '{file_name}'")
    if not s.default_stock.is_well_formed():
        raise ConfigError(
            f"session.default_stock is not a valid stock: {s.default_stock}"
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> AssistantConfig:
    """Load and validate assistant configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Path to a config YAML.  ``None`` loads the ``defaults.yaml``
        shipped alongside this module.

    Returns
    -------
    AssistantConfig
        Fully validated, frozen configuration object.

    Raises
    ------
    ConfigError
        If any field is missing or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    if path is None:
        path = Path(__file__).parent / "defaults.yaml"
    else:
        path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)

    data: dict[str, Any] = load_yaml(path)
    if data is None:
        raise ConfigError(f"Empty configuration file: {path}")

    try:
        config = AssistantConfig(
            compiler=_parse_compiler(data["compiler"]),
            session=_parse_session(data["session"]),
        )
    except KeyError as exc:
        raise ConfigError(
            f"Missing required configuration key: {exc}"
        ) from exc
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(
            f"Invalid configuration value: {exc}"
        ) from exc

    _validate_config(config)
    logger.info("Configuration loaded successfully")
    return config
