"""
Session layer: job ledger, analyzer boundary and request controller.

A turn flows analyzer -> ledger preview -> compiler -> commit, guarded by a
generation-stamped cancel token so that cancelled or superseded turns never
change the session.
"""

from mill_assist.session.errors import (
    AnalysisCancelled,
    AnalysisError,
    FailureKind,
    RequestInFlightError,
    classify_failure,
)
from mill_assist.session.ledger import JobLedger, JobMode
from mill_assist.session.analyzer import (
    AnalysisRequest,
    AnalysisResult,
    Analyzer,
    Attachment,
    CancelToken,
    ReplayAnalyzer,
)
from mill_assist.session.state import Role, Session, SessionMessage
from mill_assist.session.schema import (
    JobFileError,
    load_job_file,
    load_session_script,
    parse_analysis,
)
from mill_assist.session.controller import (
    ControllerState,
    RequestController,
    TurnOutcome,
)

__all__ = [
    "AnalysisCancelled",
    "AnalysisError",
    "AnalysisRequest",
    "AnalysisResult",
    "Analyzer",
    "Attachment",
    "CancelToken",
    "ControllerState",
    "FailureKind",
    "JobFileError",
    "JobLedger",
    "JobMode",
    "ReplayAnalyzer",
    "RequestController",
    "RequestInFlightError",
    "Role",
    "Session",
    "SessionMessage",
    "TurnOutcome",
    "classify_failure",
    "load_job_file",
    "load_session_script",
    "parse_analysis",
]
