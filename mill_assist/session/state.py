"""Session state: job ledger, last compiled output and the chat transcript.

A :class:`Session` is owned by exactly one
:class:`~mill_assist.session.controller.RequestController`.  Renderers read
``session.output`` and ``session.messages``; they never mutate them.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from enum import Enum

from mill_assist.job_ir.operations import CNCOutput, StockDimensions
from mill_assist.session.errors import FailureKind
from mill_assist.session.ledger import JobLedger

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class SessionMessage:
    """One transcript entry.

    Parameters
    ----------
    id : str
        Unique within the session, e.g. ``"msg-3"``.
    role : Role
        Who produced the message.
    text : str
        Display text.
    attachment_name : str | None
        File name of the attachment sent with a user message.
    result : CNCOutput | None
        Compiled output carried by a successful assistant message.
    failure : FailureKind | None
        Why the turn ended without a result, for failure messages.
    """

    id: str
    role: Role
    text: str
    attachment_name: str | None = None
    result: CNCOutput | None = None
    failure: FailureKind | None = None


class Session:
    """Mutable state of one conversation.

    Parameters
    ----------
    default_stock : StockDimensions
        Stock the ledger starts with and returns to on :meth:`reset`.
    """

    def __init__(self, default_stock: StockDimensions) -> None:
        self.default_stock = default_stock
        self.ledger = JobLedger(default_stock)
        self.output: CNCOutput | None = None
        self.messages: list[SessionMessage] = []
        self._ids = itertools.count(1)

    def add_message(self, role: Role, text: str, **kwargs) -> SessionMessage:
        """Append a message and return it."""
        message = SessionMessage(id=f"msg-{next(self._ids)}", role=role, text=text, **kwargs)
        self.messages.append(message)
        return message

    def reset(self, stock: StockDimensions | None = None) -> None:
        """Clear operations, output and transcript; restore the stock."""
        self.ledger.reset(stock or self.default_stock)
        self.output = None
        self.messages = []
        logger.info("Session reset")
