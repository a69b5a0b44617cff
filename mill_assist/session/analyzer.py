"""Analyzer boundary -- requests, results and cooperative cancellation.

The analyzer (an LLM call in production) is outside the core.  Its whole
contract is :class:`Analyzer`: take an :class:`AnalysisRequest` and a
:class:`CancelToken`, return an :class:`AnalysisResult` or raise
:class:`~mill_assist.session.errors.AnalysisError` /
:class:`~mill_assist.session.errors.AnalysisCancelled`.

Cancel tokens
-------------
Each turn gets a token stamped with the controller's generation number.
The controller bumps its generation on cancel or reset, so a result is
committed only if ``token.generation`` still matches.  The token also
carries a ``threading.Event`` the analyzer can poll (or wait on from a
worker thread) to stop early.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from mill_assist.job_ir.operations import Operation, StockDimensions
from mill_assist.session.errors import AnalysisCancelled, AnalysisError, FailureKind
from mill_assist.session.ledger import JobMode

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class CancelToken:
    """Per-turn cancellation handle.

    Parameters
    ----------
    generation : int
        Controller generation at the time the turn started.
    """

    generation: int
    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal the in-flight analyzer to stop."""
        self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`AnalysisCancelled` if :meth:`cancel` was called."""
        if self._event.is_set():
            raise AnalysisCancelled(f"turn {self.generation} cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        """Block a worker thread until cancelled or *timeout* elapses."""
        return self._event.wait(timeout)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Attachment:
    """Single file sent along with a prompt.

    Parameters
    ----------
    data : bytes | str
        Raw bytes or base64 text, passed through to the analyzer.
    media_type : str
        Declared MIME type, e.g. ``"application/pdf"``.
    file_name : str
        Original file name, shown in the transcript.
    """

    data: bytes | str
    media_type: str
    file_name: str


@dataclass(frozen=True)
class AnalysisRequest:
    prompt: str
    attachment: Attachment | None
    model: str
    mode: JobMode


@dataclass(frozen=True)
class AnalysisResult:
    """Structured answer for one turn.

    ``program`` is honoured only in replace mode, where it is used as the
    output program verbatim instead of compiling.
    """

    operation: Operation
    stock: StockDimensions
    explanation: str
    program: str | None = None


class Analyzer(Protocol):
    """Anything that can turn a request into an :class:`AnalysisResult`."""

    async def analyze(
        self, request: AnalysisRequest, token: CancelToken,
    ) -> AnalysisResult:
        ...


# ---------------------------------------------------------------------------
# Replay analyzer
# ---------------------------------------------------------------------------


class ReplayAnalyzer:
    """Analyzer that plays back recorded payloads, one per turn.

    Each record is either an analyzer payload (JSON text or mapping, see
    :func:`~mill_assist.session.schema.parse_analysis`) or an error record
    ``{"error": {"kind": "quota", "message": "..."}}``.

    Parameters
    ----------
    records : Iterable[str | Mapping[str, Any]]
        Recorded answers in turn order.
    """

    def __init__(self, records: Iterable[str | Mapping[str, Any]]) -> None:
        self._records: deque[str | Mapping[str, Any]] = deque(records)
        self.requests: list[AnalysisRequest] = []

    @property
    def remaining(self) -> int:
        return len(self._records)

    async def analyze(
        self, request: AnalysisRequest, token: CancelToken,
    ) -> AnalysisResult:
        # Imported here: schema depends on this module's result types
        from mill_assist.session.schema import parse_analysis

        self.requests.append(request)
        await asyncio.sleep(0)
        token.raise_if_cancelled()

        if not self._records:
            raise AnalysisError(FailureKind.OTHER, "no recorded result left to replay")
        record = self._records.popleft()

        if isinstance(record, Mapping) and "error" in record:
            err = record["error"] or {}
            kind = FailureKind(str(err.get("kind", "other")).lower())
            raise AnalysisError(kind, str(err.get("message", "")))

        logger.debug("Replaying recorded result for turn %d", token.generation)
        return parse_analysis(record)
