"""
Job Intermediate Representation module.

Defines stock, path segments and the machining operation kinds as immutable
dataclasses.  This vocabulary is the contract between the analyzer results
and the program compiler.

All coordinates are in millimetres, work-offset relative.
"""

from mill_assist.job_ir.operations import (
    ARC_TOLERANCE,
    CircularPocket,
    CNCOutput,
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
    arc_center,
    segment_is_well_formed,
)

__all__ = [
    "ARC_TOLERANCE",
    "CircularPocket",
    "CNCOutput",
    "Contour",
    "Drill",
    "FaceMill",
    "MachineOperationType",
    "Operation",
    "PathSegment",
    "RectangularPocket",
    "SegmentType",
    "StockDimensions",
    "StockShape",
    "ToolType",
    "UnknownOperation",
    "arc_center",
    "segment_is_well_formed",
]
