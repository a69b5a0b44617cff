"""Job IR operations -- the vocabulary between analyzer results and G-code.

Every machining action is an immutable, slotted dataclass.  There is one
class per operation kind and each carries only the fields that kind needs,
so a drill can never hold path segments and a contour never has a pocket
diameter.

Validity
--------
Nothing here raises on ill-formed geometry.  Values coming from the
analyzer are accepted as-is and checked with the ``is_well_formed()``
predicates; the compiler decides how to degrade.  This keeps a bad
analyzer answer from stalling the session.

Coordinate frame
----------------
Millimetres, relative to the active work offset.  A rectangular stock
occupies ``[0, width] x [0, length]``; a cylindrical stock is centred on
the origin.  ``z_start`` / ``z_depth`` are absolute Z values.
"""

from __future__ import annotations

import math
from abc import ABC
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Iterator

ARC_TOLERANCE = 1e-3
"""Maximum radius mismatch (mm) between arc start and end."""

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class MachineOperationType(str, Enum):
    """Operation kinds the analyzer can report."""

    CIRCULAR_POCKET = "CIRCULAR_POCKET"
    RECTANGULAR_POCKET = "RECTANGULAR_POCKET"
    DRILL = "DRILL"
    FACE_MILL = "FACE_MILL"
    CONTOUR = "CONTOUR"
    UNKNOWN = "UNKNOWN"


class ToolType(str, Enum):
    """Cutter families.  The value doubles as the controller tool name."""

    END_MILL = "END_MILL"
    BALL_MILL = "BALL_MILL"
    DRILL = "DRILL"
    FACE_MILL = "FACE_MILL"


class StockShape(str, Enum):
    RECTANGULAR = "RECTANGULAR"
    CYLINDRICAL = "CYLINDRICAL"


class SegmentType(str, Enum):
    LINE = "LINE"
    ARC_CW = "ARC_CW"
    ARC_CCW = "ARC_CCW"


def _finite(*values: float) -> bool:
    return all(math.isfinite(v) for v in values)


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StockDimensions:
    """Raw material block.

    Parameters
    ----------
    shape : StockShape
        Selects which planar dimensions are meaningful.
    width, length : float
        X and Y extent of a rectangular block.
    height : float
        Z extent; the top face sits at ``Z = height``.
    diameter : float
        Diameter of a cylindrical blank.
    material : str
        Free-text material label (e.g. ``"Aluminum"``).
    """

    shape: StockShape
    width: float
    length: float
    height: float
    diameter: float
    material: str

    def footprint(self) -> tuple[float, float, float, float]:
        """Return ``(x_min, y_min, x_max, y_max)`` of the stock outline.

        A cylinder reports its bounding square.
        """
        if self.shape is StockShape.CYLINDRICAL:
            r = self.diameter / 2.0
            return (-r, -r, r, r)
        return (0.0, 0.0, self.width, self.length)

    def is_well_formed(self) -> bool:
        if not _finite(self.height) or self.height < 0:
            return False
        if self.shape is StockShape.CYLINDRICAL:
            return _finite(self.diameter) and self.diameter > 0
        return _finite(self.width, self.length) and self.width > 0 and self.length > 0


# ---------------------------------------------------------------------------
# Path segments
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PathSegment:
    """One move of a contour, starting where the previous one ended.

    Parameters
    ----------
    type : SegmentType
        Line, clockwise arc or counter-clockwise arc.
    x, y : float
        End point.
    cx, cy : float | None
        Absolute arc centre.  Takes precedence over ``radius``.
    radius : float | None
        Arc radius fallback.  Positive selects the minor arc, negative the
        major arc.
    """

    type: SegmentType
    x: float
    y: float
    cx: float | None = None
    cy: float | None = None
    radius: float | None = None

    @property
    def is_arc(self) -> bool:
        return self.type is not SegmentType.LINE

    @property
    def clockwise(self) -> bool:
        return self.type is SegmentType.ARC_CW


def arc_center(
    segment: PathSegment, start: tuple[float, float],
) -> tuple[float, float] | None:
    """Resolve the centre of an arc segment drawn from *start*.

    An explicit ``(cx, cy)`` is returned unchanged.  Otherwise the centre
    is derived from the radius: of the two circles through both end points,
    the one giving the minor arc in the segment's direction is chosen, or
    the major arc when the radius is negative.  A radius shorter than half
    the chord is clamped to half the chord (a semicircle).

    Returns
    -------
    tuple[float, float] | None
        ``None`` for lines, for arcs with neither centre nor radius, and for
        radius-only arcs whose start and end coincide.
    """
    if not segment.is_arc:
        return None
    if segment.cx is not None and segment.cy is not None:
        return (segment.cx, segment.cy)
    if segment.radius is None or segment.radius == 0 or not _finite(segment.radius):
        return None

    sx, sy = start
    dx = segment.x - sx
    dy = segment.y - sy
    chord = math.hypot(dx, dy)
    if chord < 1e-12:
        return None

    half = chord / 2.0
    r = max(abs(segment.radius), half)
    h = math.sqrt(max(r * r - half * half, 0.0))

    # Unit normal to the left of the chord direction
    nx, ny = -dy / chord, dx / chord
    side = -1.0 if segment.clockwise else 1.0
    if segment.radius < 0:
        side = -side

    mx = sx + dx / 2.0
    my = sy + dy / 2.0
    return (mx + side * h * nx, my + side * h * ny)


def segment_is_well_formed(
    segment: PathSegment,
    start: tuple[float, float],
    tolerance: float = ARC_TOLERANCE,
) -> bool:
    """Check a segment's tag-gated fields against its start point."""
    if not _finite(segment.x, segment.y):
        return False
    if not segment.is_arc:
        return True

    if segment.cx is not None and segment.cy is not None:
        r_start = math.hypot(start[0] - segment.cx, start[1] - segment.cy)
        r_end = math.hypot(segment.x - segment.cx, segment.y - segment.cy)
        return r_start > tolerance and abs(r_start - r_end) <= tolerance

    if segment.radius is None or segment.radius == 0:
        return False
    chord = math.hypot(segment.x - start[0], segment.y - start[1])
    return chord > 0 and abs(segment.radius) >= chord / 2.0 - tolerance


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Operation(ABC):
    """Fields shared by every machining operation.

    Parameters
    ----------
    x, y : float
        Reference point: hole / pocket centre, or contour start.
    z_start, z_depth : float
        Top of the cut and final depth (absolute Z).
    feed_rate : float
        Cutting feed in mm/min.
    spindle_speed : float
        Spindle speed in rpm.
    tool_diameter : float
        Cutter diameter in mm.
    tool_type : ToolType
        Cutter family.
    step_down : float
        Maximum depth per pass; ``0`` cuts in a single pass.
    """

    kind: ClassVar[MachineOperationType] = MachineOperationType.UNKNOWN

    x: float
    y: float
    z_start: float
    z_depth: float
    feed_rate: float
    spindle_speed: float
    tool_diameter: float
    tool_type: ToolType
    step_down: float

    def is_well_formed(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Operation kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Drill(Operation):
    """Single hole at ``(x, y)``, optionally peck drilled."""

    kind: ClassVar[MachineOperationType] = MachineOperationType.DRILL

    diameter: float

    def is_well_formed(self) -> bool:
        return _finite(self.diameter) and self.diameter > 0


@dataclass(frozen=True, slots=True)
class CircularPocket(Operation):
    """Round pocket centred on ``(x, y)``."""

    kind: ClassVar[MachineOperationType] = MachineOperationType.CIRCULAR_POCKET

    diameter: float

    def is_well_formed(self) -> bool:
        return _finite(self.diameter) and self.diameter >= self.tool_diameter > 0


@dataclass(frozen=True, slots=True)
class RectangularPocket(Operation):
    """Axis-aligned pocket centred on ``(x, y)``.

    ``width`` runs along X, ``length`` along Y.
    """

    kind: ClassVar[MachineOperationType] = MachineOperationType.RECTANGULAR_POCKET

    width: float
    length: float

    def is_well_formed(self) -> bool:
        return (
            _finite(self.width, self.length)
            and self.tool_diameter > 0
            and min(self.width, self.length) >= self.tool_diameter
        )


@dataclass(frozen=True, slots=True)
class FaceMill(Operation):
    """Skim the whole stock top down to ``z_depth``."""

    kind: ClassVar[MachineOperationType] = MachineOperationType.FACE_MILL

    def is_well_formed(self) -> bool:
        return _finite(self.tool_diameter) and self.tool_diameter > 0


@dataclass(frozen=True, slots=True)
class Contour(Operation):
    """Open or closed profile starting at ``(x, y)``.

    Parameters
    ----------
    segments : tuple[PathSegment, ...]
        Ordered moves; each starts at the previous end point.
    """

    kind: ClassVar[MachineOperationType] = MachineOperationType.CONTOUR

    segments: tuple[PathSegment, ...]

    def walk(self) -> Iterator[tuple[tuple[float, float], PathSegment]]:
        """Yield ``(start_point, segment)`` pairs in path order."""
        start = (self.x, self.y)
        for seg in self.segments:
            yield start, seg
            start = (seg.x, seg.y)

    def is_well_formed(self) -> bool:
        if not self.segments:
            return False
        return all(segment_is_well_formed(seg, start) for start, seg in self.walk())


@dataclass(frozen=True, slots=True)
class UnknownOperation(Operation):
    """Analyzer could not classify the request.  Carries no geometry."""

    kind: ClassVar[MachineOperationType] = MachineOperationType.UNKNOWN


# ---------------------------------------------------------------------------
# Compiled output
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CNCOutput:
    """Everything a renderer may read about one compilation.

    ``operations`` and ``stock`` are exactly the inputs that produced
    ``program``; consumers must not re-derive them.
    """

    program: str
    explanation: str
    operations: tuple[Operation, ...]
    stock: StockDimensions
