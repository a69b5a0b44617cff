"""Structured-result schemas for analyzer payloads and job files.

The analyzer answers with flat JSON in the shape below.  Pydantic models
validate it and convert it to the Job IR sum types::

    {
      "operation": {
        "type": "CIRCULAR_POCKET", "x": 50, "y": 50,
        "z_start": 0, "z_depth": -5, "diameter": 40,
        "feed_rate": 800, "spindle_speed": 8000,
        "tool_diameter": 6, "tool_type": "END_MILL", "step_down": 2
      },
      "stock": {"shape": "RECTANGULAR", "width": 100, "length": 100,
                "height": 20, "diameter": 0, "material": "Aluminum"},
      "explanation": "...",
      "optimized_gcode": null
    }

Tag-gated fields (``diameter``, ``width``, ``length``, ``path_segments``)
are optional in the payload.  When one is missing for its tag it becomes
``0`` / empty and the compiler emits a skipped block; that is the soft
failure path, not a parse error.  Unrecognised operation types become
``UNKNOWN``.  Only malformed JSON or wrong value types raise
:class:`AnalysisError` with kind ``PARSE``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from mill_assist.job_ir.operations import (
    CircularPocket,
    Contour,
    Drill,
    FaceMill,
    MachineOperationType,
    Operation,
    PathSegment,
    RectangularPocket,
    SegmentType,
    StockDimensions,
    StockShape,
    ToolType,
    UnknownOperation,
)
from mill_assist.session.analyzer import AnalysisResult
from mill_assist.session.errors import AnalysisError, FailureKind
from mill_assist.session.ledger import JobMode
from mill_assist.utils.fs import load_yaml

_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


class JobFileError(ValueError):
    """A job or session file failed validation."""

    pass


def _upper(v: Any) -> Any:
    return v.strip().upper() if isinstance(v, str) else v


# ============================================================================
# OPERATION PAYLOAD
# ============================================================================

class PathSegmentModel(BaseModel):
    """One contour move (end point plus optional arc data)."""
    type: SegmentType = SegmentType.LINE
    x: float
    y: float
    cx: Optional[float] = None
    cy: Optional[float] = None
    radius: Optional[float] = None

    @field_validator('type', mode='before')
    @classmethod
    def normalise_type(cls, v: Any) -> Any:
        return _upper(v)

    def to_segment(self) -> PathSegment:
        return PathSegment(
            type=self.type, x=self.x, y=self.y,
            cx=self.cx, cy=self.cy, radius=self.radius,
        )


class StockModel(BaseModel):
    """Raw material block, mm."""
    shape: StockShape = StockShape.RECTANGULAR
    width: float = 0.0
    length: float = 0.0
    height: float
    diameter: float = 0.0
    material: str = ""

    @field_validator('shape', mode='before')
    @classmethod
    def normalise_shape(cls, v: Any) -> Any:
        return _upper(v)

    def to_stock(self) -> StockDimensions:
        return StockDimensions(
            shape=self.shape,
            width=self.width,
            length=self.length,
            height=self.height,
            diameter=self.diameter,
            material=self.material,
        )


class OperationModel(BaseModel):
    """Flat operation record as produced by the analyzer."""
    type: MachineOperationType = MachineOperationType.UNKNOWN
    x: float = 0.0
    y: float = 0.0
    z_start: float = 0.0
    z_depth: float
    diameter: Optional[float] = None
    width: Optional[float] = None
    length: Optional[float] = None
    path_segments: List[PathSegmentModel] = Field(default_factory=list)
    feed_rate: float
    spindle_speed: float
    tool_diameter: float
    tool_type: ToolType
    step_down: float = 0.0

    @field_validator('tool_type', mode='before')
    @classmethod
    def normalise_tool(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator('type', mode='before')
    @classmethod
    def coerce_unknown_type(cls, v: Any) -> Any:
        v = _upper(v)
        known = {t.value for t in MachineOperationType}
        if isinstance(v, str) and v not in known:
            return MachineOperationType.UNKNOWN
        return v

    def to_operation(self) -> Operation:
        """Build the Job IR variant for ``type``; missing geometry becomes 0."""
        common = dict(
            x=self.x,
            y=self.y,
            z_start=self.z_start,
            z_depth=self.z_depth,
            feed_rate=self.feed_rate,
            spindle_speed=self.spindle_speed,
            tool_diameter=self.tool_diameter,
            tool_type=self.tool_type,
            step_down=self.step_down,
        )
        kind = self.type
        if kind is MachineOperationType.DRILL:
            return Drill(diameter=self.diameter or 0.0, **common)
        if kind is MachineOperationType.CIRCULAR_POCKET:
            return CircularPocket(diameter=self.diameter or 0.0, **common)
        if kind is MachineOperationType.RECTANGULAR_POCKET:
            return RectangularPocket(
                width=self.width or 0.0, length=self.length or 0.0, **common,
            )
        if kind is MachineOperationType.FACE_MILL:
            return FaceMill(**common)
        if kind is MachineOperationType.CONTOUR:
            return Contour(
                segments=tuple(s.to_segment() for s in self.path_segments),
                **common,
            )
        return UnknownOperation(**common)


class AnalysisPayload(BaseModel):
    """Top-level analyzer answer."""
    operation: OperationModel
    stock: StockModel
    explanation: str = ""
    optimized_gcode: Optional[str] = None

    def to_result(self) -> AnalysisResult:
        program = self.optimized_gcode if self.optimized_gcode else None
        return AnalysisResult(
            operation=self.operation.to_operation(),
            stock=self.stock.to_stock(),
            explanation=self.explanation,
            program=program,
        )


# ============================================================================
# FILE SCHEMAS
# ============================================================================

class JobFileV1(BaseModel):
    """Job file: a stock plus operations compiled in listed order."""
    stock: StockModel
    operations: List[OperationModel] = Field(default_factory=list)
    explanation: str = ""


class TurnRecord(BaseModel):
    """One recorded turn of a session script."""
    prompt: str = ""
    mode: JobMode = JobMode.ACCUMULATE
    result: Optional[dict] = None
    error: Optional[dict] = None

    @field_validator('mode', mode='before')
    @classmethod
    def parse_mode(cls, v: Any) -> JobMode:
        return JobMode.parse(v)

    def record(self) -> dict:
        """Payload handed to :class:`ReplayAnalyzer`."""
        if self.error is not None:
            return {"error": self.error}
        if self.result is None:
            raise ValueError("turn needs either 'result' or 'error'")
        return self.result


class SessionScriptV1(BaseModel):
    """Recorded multi-turn session replayed by ``run_session``."""
    turns: List[TurnRecord] = Field(..., min_length=1)


# ============================================================================
# PUBLIC API
# ============================================================================

def _strip_fence(text: str) -> str:
    match = _FENCE.match(text)
    return match.group(1) if match else text


def parse_analysis(raw: Union[str, bytes, Mapping[str, Any]]) -> AnalysisResult:
    """Validate an analyzer payload and convert it to an AnalysisResult.

    Parameters
    ----------
    raw : str | bytes | Mapping
        JSON text (optionally wrapped in a Markdown code fence) or an
        already-decoded mapping.

    Raises
    ------
    AnalysisError
        Kind ``PARSE`` if the JSON is malformed or fails the schema.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            data = json.loads(_strip_fence(raw))
        except json.JSONDecodeError as e:
            raise AnalysisError(FailureKind.PARSE, f"Analyzer returned invalid JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise AnalysisError(
            FailureKind.PARSE,
            f"Analyzer JSON must be an object, got {type(data).__name__}",
        )
    try:
        return AnalysisPayload.model_validate(dict(data)).to_result()
    except ValidationError as e:
        raise AnalysisError(FailureKind.PARSE, f"Analyzer JSON failed validation: {e}") from e


def load_job_file(path: Union[str, Path]) -> tuple[StockDimensions, list[Operation], str]:
    """Load and validate a job file from YAML (or JSON, a YAML subset).

    Returns
    -------
    tuple
        ``(stock, operations, explanation)``

    Raises
    ------
    FileNotFoundError
        If path doesn't exist
    JobFileError
        If validation fails (with the offending field in the message)
    """
    path = Path(path)
    data = load_yaml(path)
    try:
        job = JobFileV1.model_validate(data or {})
    except ValidationError as e:
        raise JobFileError(f"Job file validation failed at {path}: {e}") from e
    return (
        job.stock.to_stock(),
        [op.to_operation() for op in job.operations],
        job.explanation,
    )


def load_session_script(path: Union[str, Path]) -> list[TurnRecord]:
    """Load and validate a recorded session script from YAML."""
    path = Path(path)
    data = load_yaml(path)
    try:
        script = SessionScriptV1.model_validate(data or {})
        for turn in script.turns:
            turn.record()
    except (ValidationError, ValueError) as e:
        raise JobFileError(f"Session script validation failed at {path}: {e}") from e
    return script.turns
