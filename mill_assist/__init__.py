"""
Mill Assist Package.

Turns AI-extracted machining operations into Sinumerik G-code and keeps the
running job state of a multi-turn assistant session.

Subpackages:
    job_ir: Stock, path segment and operation value types
    gcode: Deterministic program compiler
    session: Job ledger, request controller, analyzer boundary
    configs: Compiler and session configuration loading
    utils: Logging and filesystem helpers
"""

__all__ = ["job_ir", "gcode", "session", "configs", "utils"]
