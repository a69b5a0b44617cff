"""Program compiler -- stock + operation list to Sinumerik G-code.

The compiler is a pure, deterministic, total function of its inputs:
the same ``(stock, operations, explanation)`` always yields byte-identical
program text, and no geometry problem ever raises.  Ill-formed operations
compile to a ``; SKIPPED`` comment plus a retract, so one bad analyzer
answer cannot block the session.

Program layout::

    ; <program name>            header: plane, absolute, metric, feed/min
    G17 G90 G71 G94             and the work offset
    G54
    ; --- OP 1: DRILL ---       one block per operation, in ledger order
    ...
    ; --- END ---
    G0 Z.. / M5 / M9 / M30      footer

Modal rules:
    - A tool change (``T="<TOOL_TYPE>" M6`` + spindle start) is written for
      the first cutting operation and whenever the tool type changes.  If
      only the spindle speed changes, just ``S.. M3`` is written.
    - ``F`` is written on the first feed move of each operation and again
      only when the value changes.

Numbers are rounded to ``coordinate_decimals`` / ``feed_decimals`` from
:class:`CompilerConfig`; spindle speed is an integer.  ``-0.000`` is
written as ``0.000``.
"""

from __future__ import annotations

import logging
import math
from io import StringIO
from typing import Sequence

from mill_assist.configs.loader import CompilerConfig
from mill_assist.gcode.toolpaths import (
    depth_layers,
    raster_offsets,
    rectangle_rings,
    ring_radii,
)
from mill_assist.job_ir.operations import (
    CircularPocket,
    CNCOutput,
    Contour,
    Drill,
    FaceMill,
    Operation,
    RectangularPocket,
    StockDimensions,
    StockShape,
    ToolType,
    UnknownOperation,
    arc_center,
    segment_is_well_formed,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------


class ProgramCompiler:
    """Compile a job into a G-code program.

    Parameters
    ----------
    config : CompilerConfig | None
        Compiler tunables.  ``None`` uses the dataclass defaults, which
        match the shipped ``defaults.yaml``.

    Notes
    -----
    Per-program modal state (active tool, spindle speed, feed) is reset at
    the start of every :meth:`compile` call, so one instance can be reused.
    """

    def __init__(self, config: CompilerConfig | None = None) -> None:
        self._cfg = config or CompilerConfig()
        self._reset_state()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compile(
        self,
        stock: StockDimensions,
        operations: Sequence[Operation],
        explanation: str = "",
    ) -> CNCOutput:
        """Compile *operations* in order against *stock*.

        Parameters
        ----------
        stock : StockDimensions
            Raw material; its height bounds the safe Z.
        operations : Sequence[Operation]
            Job operations in program order.  Never mutated or retained.
        explanation : str
            Human-readable summary echoed into the output.

        Returns
        -------
        CNCOutput
            Program text plus the exact inputs that produced it.
        """
        ops = tuple(operations)
        buf = StringIO()
        self._reset_state()
        self._stock = stock
        self._stock_top = stock.height if math.isfinite(stock.height) else 0.0
        self._top_safe_z = self._stock_top + self._cfg.safe_clearance_mm

        self._write_header(buf, stock, len(ops))
        for index, op in enumerate(ops, start=1):
            self._generate_op(index, op, buf)
        self._write_footer(buf)

        return CNCOutput(
            program=buf.getvalue(),
            explanation=explanation,
            operations=ops,
            stock=stock,
        )

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def _num(self, value: float) -> str:
        text = f"{value:.{self._cfg.coordinate_decimals}f}"
        if float(text) == 0.0:
            text = f"{0.0:.{self._cfg.coordinate_decimals}f}"
        return text

    def _xy(self, x: float, y: float) -> str:
        return f"X{self._num(x)} Y{self._num(y)}"

    def _feed(self, feed: float) -> str:
        """Return ``" F.."`` when *feed* differs from the modal feed."""
        text = f"F{feed:.{self._cfg.feed_decimals}f}"
        if text == self._last_feed:
            return ""
        self._last_feed = text
        return f" {text}"

    @staticmethod
    def _speed(rpm: float) -> str:
        return f"S{int(round(rpm))}"

    # ------------------------------------------------------------------
    # Internal: per-operation dispatch
    # ------------------------------------------------------------------

    def _reset_state(self) -> None:
        self._stock: StockDimensions | None = None
        self._tool: ToolType | None = None
        self._spindle: str | None = None
        self._last_feed: str | None = None
        self._stock_top = 0.0
        self._top_safe_z = 0.0

    def _safe_z(self, op: Operation) -> float:
        top = op.z_start if math.isfinite(op.z_start) else self._stock_top
        z = max(top, self._stock_top) + self._cfg.safe_clearance_mm
        self._top_safe_z = max(self._top_safe_z, z)
        return z

    def _generate_op(self, index: int, op: Operation, buf: StringIO) -> None:
        buf.write(f"; --- OP {index}: {op.kind.value} ---\n")
        self._last_feed = None

        if isinstance(op, UnknownOperation):
            buf.write("; no geometry, nothing to machine\n")
            return

        reason = self._degenerate_reason(op)
        safe_z = self._safe_z(op)
        if reason is not None:
            logger.warning("Operation %d (%s) skipped: %s", index, op.kind.value, reason)
            buf.write(f"; SKIPPED: {reason}\n")
            buf.write(f"G0 Z{self._num(safe_z)}\n")
            return

        buf.write(f"G0 Z{self._num(safe_z)}\n")
        self._write_tool_change(op, buf)

        if isinstance(op, Drill):
            self._gen_drill(op, safe_z, buf)
        elif isinstance(op, CircularPocket):
            self._gen_circular_pocket(op, safe_z, buf)
        elif isinstance(op, RectangularPocket):
            self._gen_rectangular_pocket(op, safe_z, buf)
        elif isinstance(op, FaceMill):
            self._gen_face_mill(op, safe_z, buf)
        elif isinstance(op, Contour):
            self._gen_contour(op, safe_z, buf)
        else:
            logger.warning("Unsupported operation: %s", type(op).__name__)

        buf.write(f"G0 Z{self._num(safe_z)}\n")

    def _degenerate_reason(self, op: Operation) -> str | None:
        """Explain why *op* cannot be machined, or ``None`` if it can."""
        if self._stock is None or not math.isfinite(self._stock.height):
            return "stock height must be finite"
        if not all(math.isfinite(v) for v in (op.x, op.y, op.z_start, op.z_depth)):
            return "non-finite coordinates"
        if not math.isfinite(op.feed_rate) or op.feed_rate <= 0:
            return "feed rate must be positive"
        if not math.isfinite(op.spindle_speed) or op.spindle_speed <= 0:
            return "spindle speed must be positive"
        if isinstance(op, Drill):
            return None if op.is_well_formed() else "drill diameter must be positive"
        if isinstance(op, (CircularPocket, RectangularPocket)) and not op.tool_diameter > 0:
            return "tool diameter must be positive"
        if isinstance(op, CircularPocket):
            if not math.isfinite(op.diameter) or op.diameter <= 0:
                return "pocket diameter must be positive"
            if op.diameter < op.tool_diameter:
                return "tool is wider than the pocket"
            return None
        if isinstance(op, RectangularPocket):
            if not math.isfinite(op.width + op.length) or op.width <= 0 or op.length <= 0:
                return "pocket width and length must be positive"
            if min(op.width, op.length) < op.tool_diameter:
                return "tool is wider than the pocket"
            return None
        if isinstance(op, FaceMill):
            if not op.is_well_formed():
                return "tool diameter must be positive"
            if self._stock is None or not self._stock.is_well_formed():
                return "stock footprint is undefined"
            return None
        if isinstance(op, Contour):
            return None if op.segments else "contour has no path segments"
        return None

    def _write_tool_change(self, op: Operation, buf: StringIO) -> None:
        speed = self._speed(op.spindle_speed)
        if op.tool_type is not self._tool:
            if self._tool is not None:
                buf.write("M5\n")
            buf.write(f"; tool: {op.tool_type.value} D{self._num(op.tool_diameter)}\n")
            buf.write(f'T="{op.tool_type.value}"\n')
            buf.write("M6\n")
            buf.write(f"{speed} M3\n")
            if self._cfg.coolant:
                buf.write("M8\n")
        elif speed != self._spindle:
            buf.write(f"{speed} M3\n")
        self._tool = op.tool_type
        self._spindle = speed

    # ------------------------------------------------------------------
    # Individual generators
    # ------------------------------------------------------------------

    def _gen_drill(self, op: Drill, safe_z: float, buf: StringIO) -> None:
        buf.write(f"G0 {self._xy(op.x, op.y)}\n")
        layers = depth_layers(op.z_start, op.z_depth, op.step_down)
        retract = self._cfg.peck_retract_mm
        for n, z in enumerate(layers, start=1):
            buf.write(f"G1 Z{self._num(z)}{self._feed(op.feed_rate)}\n")
            if n < len(layers) and retract > 0:
                # Chip break: partial lift, never above the safe plane
                buf.write(f"G0 Z{self._num(min(z + retract, safe_z))}\n")

    def _gen_circular_pocket(
        self, op: CircularPocket, safe_z: float, buf: StringIO,
    ) -> None:
        limit = op.diameter / 2.0 - op.tool_diameter / 2.0
        radii = ring_radii(limit, op.tool_diameter * self._cfg.pocket_stepover)
        centre = self._xy(op.x, op.y)

        buf.write(f"G0 {centre}\n")
        for z in depth_layers(op.z_start, op.z_depth, op.step_down):
            buf.write(f"G1 Z{self._num(z)}{self._feed(op.feed_rate)}\n")
            for r in radii:
                start = self._xy(op.x + r, op.y)
                buf.write(f"G1 {start}{self._feed(op.feed_rate)}\n")
                buf.write(
                    f"G3 {start} I{self._num(-r)} J{self._num(0.0)}"
                    f"{self._feed(op.feed_rate)}\n"
                )
            if radii:
                buf.write(f"G1 {centre}{self._feed(op.feed_rate)}\n")

    def _gen_rectangular_pocket(
        self, op: RectangularPocket, safe_z: float, buf: StringIO,
    ) -> None:
        r_tool = op.tool_diameter / 2.0
        rings = rectangle_rings(
            op.width / 2.0 - r_tool,
            op.length / 2.0 - r_tool,
            op.tool_diameter * self._cfg.pocket_stepover,
        )
        centre = self._xy(op.x, op.y)

        buf.write(f"G0 {centre}\n")
        for z in depth_layers(op.z_start, op.z_depth, op.step_down):
            buf.write(f"G1 Z{self._num(z)}{self._feed(op.feed_rate)}\n")
            current = centre
            for a, b in rings:
                corners = [
                    (op.x - a, op.y - b),
                    (op.x + a, op.y - b),
                    (op.x + a, op.y + b),
                    (op.x - a, op.y + b),
                    (op.x - a, op.y - b),
                ]
                for cx, cy in corners:
                    target = self._xy(cx, cy)
                    if target == current:
                        continue
                    buf.write(f"G1 {target}{self._feed(op.feed_rate)}\n")
                    current = target
            if current != centre:
                buf.write(f"G1 {centre}{self._feed(op.feed_rate)}\n")

    def _gen_face_mill(self, op: FaceMill, safe_z: float, buf: StringIO) -> None:
        assert self._stock is not None
        x0, y0, x1, y1 = self._stock.footprint()
        r_tool = op.tool_diameter / 2.0
        x_lo, x_hi = x0 - r_tool, x1 + r_tool
        stepover = op.tool_diameter * (1.0 - self._cfg.face_overlap)
        passes = raster_offsets(y0, y1, stepover)

        buf.write(f"G0 {self._xy(x_lo, passes[0])}\n")
        buf.write(f"G1 Z{self._num(op.z_depth)}{self._feed(op.feed_rate)}\n")
        for n, y in enumerate(passes):
            if n > 0:
                buf.write(f"G1 Y{self._num(y)}{self._feed(op.feed_rate)}\n")
            x_end = x_hi if n % 2 == 0 else x_lo
            buf.write(f"G1 X{self._num(x_end)}{self._feed(op.feed_rate)}\n")

    def _gen_contour(self, op: Contour, safe_z: float, buf: StringIO) -> None:
        buf.write(f"G0 {self._xy(op.x, op.y)}\n")
        buf.write(f"G1 Z{self._num(op.z_depth)}{self._feed(op.feed_rate)}\n")
        start = (op.x, op.y)
        for seg in op.segments:
            if not (math.isfinite(seg.x) and math.isfinite(seg.y)):
                logger.warning("Contour segment with non-finite end point dropped")
                buf.write("; segment dropped: non-finite end point\n")
                continue
            target = self._xy(seg.x, seg.y)
            if not seg.is_arc:
                buf.write(f"G1 {target}{self._feed(op.feed_rate)}\n")
                start = (seg.x, seg.y)
                continue
            centre = arc_center(seg, start)
            explicit = seg.cx is not None and seg.cy is not None
            if centre is None or (explicit and not segment_is_well_formed(seg, start)):
                logger.warning(
                    "Arc to (%.3f, %.3f) has no usable centre; cutting a line",
                    seg.x, seg.y,
                )
                buf.write(f"G1 {target}{self._feed(op.feed_rate)}\n")
                start = (seg.x, seg.y)
                continue
            code = "G2" if seg.clockwise else "G3"
            i = self._num(centre[0] - start[0])
            j = self._num(centre[1] - start[1])
            buf.write(f"{code} {target} I{i} J{j}{self._feed(op.feed_rate)}\n")
            start = (seg.x, seg.y)

    # ------------------------------------------------------------------
    # Header / footer
    # ------------------------------------------------------------------

    def _write_header(
        self, buf: StringIO, stock: StockDimensions, n_ops: int,
    ) -> None:
        buf.write(f"; {self._cfg.program_name}\n")
        if stock.shape is StockShape.CYLINDRICAL:
            size = f"D{self._num(stock.diameter)}"
        else:
            size = f"W{self._num(stock.width)} L{self._num(stock.length)}"
        buf.write(
            f"; STOCK: {stock.shape.value} {size} H{self._num(stock.height)}"
            f" {stock.material}\n"
        )
        buf.write(f"; OPERATIONS: {n_ops}\n")
        buf.write("G17 G90 G71 G94\n")
        buf.write(f"{self._cfg.work_offset}\n")

    def _write_footer(self, buf: StringIO) -> None:
        buf.write("; --- END ---\n")
        buf.write(f"G0 Z{self._num(self._top_safe_z)}\n")
        buf.write("M5\n")
        if self._cfg.coolant:
            buf.write("M9\n")
        buf.write("M30\n")


def compile_program(
    stock: StockDimensions,
    operations: Sequence[Operation],
    explanation: str = "",
    config: CompilerConfig | None = None,
) -> CNCOutput:
    """Functional entry point: compile with a throwaway :class:`ProgramCompiler`."""
    return ProgramCompiler(config).compile(stock, operations, explanation)
