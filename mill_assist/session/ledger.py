"""Job ledger -- the session's ordered operation list and current stock.

The ledger never decides *how* a result is applied; the caller passes the
turn's :class:`JobMode`.  Mutation happens in two steps so the controller
can compile the prospective job before anything changes::

    ops = ledger.preview(mode, operation)   # no side effects
    output = compiler.compile(stock, ops)
    ledger.commit(ops, stock)               # single assignment

Operations are held in a tuple, so views handed to the compiler or to
renderers are read-only by construction.
"""

from __future__ import annotations

import logging
from enum import Enum

from mill_assist.job_ir.operations import Operation, StockDimensions

logger = logging.getLogger(__name__)


class JobMode(str, Enum):
    """Per-turn mutation policy.

    ``ACCUMULATE`` appends the new operation to the job; ``REPLACE``
    discards the job and keeps only the new operation.
    """

    ACCUMULATE = "accumulate"
    REPLACE = "replace"

    @classmethod
    def parse(cls, value: str | JobMode) -> JobMode:
        """Accept enum members, their values, or the legacy UI names.

        ``GENERATE`` maps to ``ACCUMULATE`` and ``OPTIMIZE`` to ``REPLACE``.
        """
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        aliases = {"generate": cls.ACCUMULATE, "optimize": cls.REPLACE}
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError as exc:
            raise ValueError(
                f"mode must be one of accumulate, replace, generate, optimize; "
                f"got {value!r}"
            ) from exc


class JobLedger:
    """Ordered operations plus the stock they are cut from.

    Parameters
    ----------
    stock : StockDimensions
        Initial stock; the ledger starts with no operations.
    """

    def __init__(self, stock: StockDimensions) -> None:
        self._operations: tuple[Operation, ...] = ()
        self._stock = stock

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def operations(self) -> tuple[Operation, ...]:
        return self._operations

    @property
    def stock(self) -> StockDimensions:
        return self._stock

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def preview(self, mode: JobMode, operation: Operation) -> tuple[Operation, ...]:
        """Return the operation list that applying *operation* would produce."""
        if mode is JobMode.REPLACE:
            return (operation,)
        return self._operations + (operation,)

    def commit(
        self, operations: tuple[Operation, ...], stock: StockDimensions,
    ) -> None:
        """Install *operations* and *stock*.  Stock is last-write-wins."""
        self._operations = tuple(operations)
        self._stock = stock
        logger.debug("Ledger now holds %d operation(s)", len(self._operations))

    def reset(self, stock: StockDimensions) -> None:
        """Drop every operation and restore *stock*."""
        self.commit((), stock)
