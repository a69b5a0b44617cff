"""Tests for the job ledger and per-turn mode semantics."""

from __future__ import annotations

import pytest

from mill_assist.job_ir.operations import (
    Drill,
    StockDimensions,
    StockShape,
    ToolType,
)
from mill_assist.session.ledger import JobLedger, JobMode

STOCK_A = StockDimensions(StockShape.RECTANGULAR, 100.0, 100.0, 20.0, 0.0, "Aluminum")
STOCK_B = StockDimensions(StockShape.CYLINDRICAL, 0.0, 0.0, 30.0, 60.0, "Brass")


def drill(x: float) -> Drill:
    return Drill(
        x=x, y=0.0, z_start=0.0, z_depth=-5.0, feed_rate=100.0,
        spindle_speed=2000.0, tool_diameter=5.0, tool_type=ToolType.DRILL,
        step_down=0.0, diameter=5.0,
    )


def apply(ledger: JobLedger, mode: JobMode, op: Drill, stock: StockDimensions) -> None:
    """Apply one turn the way the controller does: preview, then commit."""
    ledger.commit(ledger.preview(mode, op), stock)


@pytest.fixture()
def ledger() -> JobLedger:
    return JobLedger(STOCK_A)


class TestJobMode:
    @pytest.mark.parametrize(
        "value, mode",
        [
            ("accumulate", JobMode.ACCUMULATE),
            ("REPLACE", JobMode.REPLACE),
            ("generate", JobMode.ACCUMULATE),
            ("OPTIMIZE", JobMode.REPLACE),
            (JobMode.REPLACE, JobMode.REPLACE),
        ],
    )
    def test_parse(self, value: object, mode: JobMode) -> None:
        assert JobMode.parse(value) is mode

    def test_parse_rejects_unknown(self) -> None:
        with pytest.raises(ValueError, match="mode must be one of"):
            JobMode.parse("merge")


class TestLedger:
    def test_starts_empty(self, ledger: JobLedger) -> None:
        assert len(ledger) == 0
        assert ledger.operations == ()
        assert ledger.stock == STOCK_A

    def test_preview_has_no_side_effects(self, ledger: JobLedger) -> None:
        ops = ledger.preview(JobMode.ACCUMULATE, drill(1.0))
        assert len(ops) == 1
        assert len(ledger) == 0

    def test_accumulate_appends_in_order(self, ledger: JobLedger) -> None:
        for n in range(5):
            apply(ledger, JobMode.ACCUMULATE, drill(float(n)), STOCK_A)
        assert len(ledger) == 5
        assert [op.x for op in ledger.operations] == [0.0, 1.0, 2.0, 3.0, 4.0]

    def test_replace_keeps_single_operation(self, ledger: JobLedger) -> None:
        apply(ledger, JobMode.ACCUMULATE, drill(1.0), STOCK_A)
        for n in range(4):
            apply(ledger, JobMode.REPLACE, drill(float(n)), STOCK_A)
            assert len(ledger) == 1
        assert ledger.operations[0].x == 3.0

    def test_stock_is_last_write_wins(self, ledger: JobLedger) -> None:
        apply(ledger, JobMode.ACCUMULATE, drill(1.0), STOCK_B)
        assert ledger.stock == STOCK_B

    def test_reset(self, ledger: JobLedger) -> None:
        apply(ledger, JobMode.ACCUMULATE, drill(1.0), STOCK_B)
        ledger.reset(STOCK_A)
        assert len(ledger) == 0
        assert ledger.stock == STOCK_A

    def test_operations_view_is_immutable(self, ledger: JobLedger) -> None:
        apply(ledger, JobMode.ACCUMULATE, drill(1.0), STOCK_A)
        view = ledger.operations
        with pytest.raises(AttributeError):
            view.append(drill(2.0))  # type: ignore[attr-defined]
