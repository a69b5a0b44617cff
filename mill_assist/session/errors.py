"""Turn failure taxonomy and the analyzer error channel.

Analyzers report failures through :class:`AnalysisError` with an explicit
:class:`FailureKind`, and cooperative cancellation through
:class:`AnalysisCancelled`.  Exceptions that arrive untyped (a client
library's HTTP error, a stray ``ValueError``) are classified by
:func:`classify_failure`, which inspects their content.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum


class FailureKind(str, Enum):
    """Why a turn ended without committing a result."""

    CANCELLED = "cancelled"
    QUOTA = "quota"
    PARSE = "parse"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AnalysisError(Exception):
    """Typed analyzer failure.

    Parameters
    ----------
    kind : FailureKind
        ``QUOTA`` for rate limiting, ``PARSE`` for an unusable structured
        result, ``OTHER`` for everything else.
    message : str
        Diagnostic text for logs; never shown to the user verbatim.
    """

    def __init__(self, kind: FailureKind, message: str = "") -> None:
        self.kind = FailureKind(kind)
        self.message = message or self.kind.value
        super().__init__(self.message)


class AnalysisCancelled(Exception):
    """The analyzer observed its cancel token and stopped."""

    pass


class RequestInFlightError(RuntimeError):
    """A turn was submitted while another is still being analyzed."""

    pass


# ---------------------------------------------------------------------------
# Content-based classification
# ---------------------------------------------------------------------------


def _payload_text(payload: object) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    if isinstance(payload, BaseException):
        attrs = {
            k: v for k, v in getattr(payload, "__dict__", {}).items()
            if not k.startswith("_")
        }
        parts = [type(payload).__name__, str(payload)]
        if attrs:
            parts.append(json.dumps(attrs, default=str, sort_keys=True))
        return " ".join(parts)
    if isinstance(payload, (Mapping, list, tuple)):
        return json.dumps(payload, default=str, sort_keys=True)
    return str(payload)


def classify_failure(payload: object) -> FailureKind:
    """Map a failure payload to a :class:`FailureKind`.

    Typed exceptions keep their own kind.  Anything else is serialised and
    searched, case-sensitively: ``"429"`` or ``"quota"`` means QUOTA,
    otherwise ``"JSON"`` means PARSE, otherwise OTHER.

    Examples
    --------
    >>> classify_failure({"code": 429})
    <FailureKind.QUOTA: 'quota'>
    >>> classify_failure("Unexpected token in JSON at position 4")
    <FailureKind.PARSE: 'parse'>
    >>> classify_failure("network down")
    <FailureKind.OTHER: 'other'>
    """
    if isinstance(payload, AnalysisCancelled):
        return FailureKind.CANCELLED
    if isinstance(payload, AnalysisError):
        return payload.kind

    text = _payload_text(payload)
    if "429" in text or "quota" in text:
        return FailureKind.QUOTA
    if "JSON" in text:
        return FailureKind.PARSE
    return FailureKind.OTHER
