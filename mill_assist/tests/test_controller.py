"""Tests for the request controller.

Turns are driven with ``asyncio.run`` from synchronous tests.  A gated
analyzer holds each call open until the test releases it, so cancel and
reset can be exercised while a turn is in flight.
"""

from __future__ import annotations

import asyncio
import json
import math

import pytest

from mill_assist.configs.loader import AssistantConfig, load_config
from mill_assist.job_ir.operations import StockDimensions, StockShape
from mill_assist.session.analyzer import (
    AnalysisRequest,
    AnalysisResult,
    Attachment,
    CancelToken,
    ReplayAnalyzer,
)
from mill_assist.session.controller import (
    ControllerState,
    RequestController,
    TurnOutcome,
)
from mill_assist.session.errors import (
    AnalysisError,
    FailureKind,
    RequestInFlightError,
)
from mill_assist.session.ledger import JobMode
from mill_assist.session.schema import parse_analysis
from mill_assist.session.state import Role, Session


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


def payload(kind: str = "DRILL", x: float = 20.0, **extra: object) -> dict:
    op = {
        "type": kind,
        "x": x,
        "y": 20,
        "z_start": 20,
        "z_depth": 10,
        "diameter": 6,
        "width": 20,
        "length": 10,
        "feed_rate": 200,
        "spindle_speed": 3000,
        "tool_diameter": 6,
        "tool_type": "END_MILL",
        "step_down": 3,
    }
    data = {
        "operation": op,
        "stock": {"shape": "RECTANGULAR", "width": 100, "length": 100, "height": 20,
                  "material": "Aluminum"},
        "explanation": f"{kind} at X{x}",
    }
    data.update(extra)
    return data


class GatedAnalyzer:
    """Returns a fixed result once :attr:`release` is set."""

    def __init__(self, result: AnalysisResult | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.tokens: list[CancelToken] = []

    async def analyze(self, request: AnalysisRequest, token: CancelToken) -> AnalysisResult:
        self.tokens.append(token)
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.result


class ChainAnalyzer:
    """Hands each turn to the next analyzer in line."""

    def __init__(self, *analyzers: object) -> None:
        self._queue = list(analyzers)

    async def analyze(self, request: AnalysisRequest, token: CancelToken) -> AnalysisResult:
        return await self._queue.pop(0).analyze(request, token)


class RaisingAnalyzer:
    def __init__(self, error: Exception) -> None:
        self.error = error

    async def analyze(self, request: AnalysisRequest, token: CancelToken) -> AnalysisResult:
        raise self.error


@pytest.fixture()
def config() -> AssistantConfig:
    return load_config()


@pytest.fixture()
def session(config: AssistantConfig) -> Session:
    return Session(config.session.default_stock)


def replay(
    config: AssistantConfig,
    session: Session,
    records: list,
    turns: list[tuple[str, JobMode]],
) -> tuple[RequestController, list[TurnOutcome]]:
    controller = RequestController(session, ReplayAnalyzer(records), config)

    async def run() -> list[TurnOutcome]:
        return [await controller.submit(prompt, mode=mode) for prompt, mode in turns]

    return controller, asyncio.run(run())


# ---------------------------------------------------------------------------
# Successful turns
# ---------------------------------------------------------------------------


class TestAccumulate:
    def test_n_turns_n_blocks_in_order(self, config: AssistantConfig, session: Session) -> None:
        kinds = ["DRILL", "CIRCULAR_POCKET", "RECTANGULAR_POCKET", "DRILL"]
        records = [payload(k, x=50.0) for k in kinds]
        controller, outcomes = replay(
            config, session, records, [(f"turn {n}", JobMode.ACCUMULATE) for n in range(4)],
        )
        assert all(o.state is ControllerState.SUCCESS and o.committed for o in outcomes)
        assert len(session.ledger) == 4
        program = session.output.program
        markers = [line for line in program.splitlines() if line.startswith("; --- OP ")]
        assert markers == [f"; --- OP {n}: {k} ---" for n, k in enumerate(kinds, start=1)]
        assert controller.state is ControllerState.IDLE

    def test_output_matches_ledger(self, config: AssistantConfig, session: Session) -> None:
        replay(config, session, [payload(), payload(x=40.0)], [("a", JobMode.ACCUMULATE)] * 2)
        assert session.output.operations == session.ledger.operations
        assert session.output.stock == session.ledger.stock

    def test_transcript(self, config: AssistantConfig, session: Session) -> None:
        replay(config, session, [payload()], [("drill a hole", JobMode.ACCUMULATE)])
        user, assistant = session.messages
        assert (user.role, user.text) == (Role.USER, "drill a hole")
        assert assistant.role is Role.ASSISTANT
        assert assistant.text == "DRILL at X20.0"
        assert assistant.result is session.output
        assert user.id != assistant.id

    def test_non_finite_spindle_speed_still_commits(
        self, config: AssistantConfig, session: Session,
    ) -> None:
        data = payload()
        data["operation"]["spindle_speed"] = math.nan
        record = json.dumps(data)
        assert "NaN" in record
        _, (outcome,) = replay(config, session, [record], [("drill", JobMode.ACCUMULATE)])
        assert outcome.state is ControllerState.SUCCESS
        assert outcome.committed
        assert "; SKIPPED: spindle speed must be positive" in session.output.program
        assert len(session.ledger) == 1


class TestReplace:
    def test_ledger_always_single(self, config: AssistantConfig, session: Session) -> None:
        controller = RequestController(
            session, ReplayAnalyzer([payload(x=float(n)) for n in range(5)]), config,
        )

        async def run() -> list[int]:
            lengths = []
            for n in range(5):
                await controller.submit(f"turn {n}", mode=JobMode.REPLACE if n else JobMode.ACCUMULATE)
                lengths.append(len(session.ledger))
            return lengths

        assert asyncio.run(run()) == [1, 1, 1, 1, 1]
        assert session.ledger.operations[0].x == 4.0

    def test_replace_discards_accumulated_job(self, config: AssistantConfig, session: Session) -> None:
        replay(
            config, session, [payload(x=1.0), payload(x=2.0), payload(x=3.0)],
            [("a", JobMode.ACCUMULATE), ("b", JobMode.ACCUMULATE), ("c", "optimize")],
        )
        assert len(session.ledger) == 1
        assert session.ledger.operations[0].x == 3.0

    def test_supplied_program_used_verbatim(self, config: AssistantConfig, session: Session) -> None:
        text = "; hand tuned\nG0 X0 Y0\nM30\n"
        replay(config, session, [payload(optimized_gcode=text)], [("tune", JobMode.REPLACE)])
        assert session.output.program == text
        assert len(session.output.operations) == 1

    def test_supplied_program_ignored_when_accumulating(
        self, config: AssistantConfig, session: Session,
    ) -> None:
        text = "; hand tuned\nM30\n"
        replay(config, session, [payload(optimized_gcode=text)], [("add", JobMode.ACCUMULATE)])
        assert session.output.program != text
        assert "G17 G90 G71 G94" in session.output.program


class TestPrompts:
    def test_attachment_without_text(self, config: AssistantConfig, session: Session) -> None:
        analyzer = ReplayAnalyzer([payload()])
        controller = RequestController(session, analyzer, config)
        attachment = Attachment(b"%PDF-1.7", "application/pdf", "bracket.pdf")
        asyncio.run(controller.submit("", attachment=attachment))

        assert session.messages[0].text == "Uploaded file: bracket.pdf"
        assert session.messages[0].attachment_name == "bracket.pdf"
        request = analyzer.requests[0]
        assert request.prompt == config.session.default_prompts["application/pdf"]
        assert request.attachment is attachment
        assert request.model == config.session.default_model

    def test_no_text_no_attachment(self, config: AssistantConfig, session: Session) -> None:
        analyzer = ReplayAnalyzer([payload()])
        controller = RequestController(session, analyzer, config)
        asyncio.run(controller.submit("   "))
        assert session.messages[0].text == "..."
        assert analyzer.requests[0].prompt == config.session.default_prompts["fallback"]

    def test_replace_keeps_empty_prompt(self, config: AssistantConfig, session: Session) -> None:
        analyzer = ReplayAnalyzer([payload()])
        controller = RequestController(session, analyzer, config)
        asyncio.run(controller.submit("", mode=JobMode.REPLACE, model="custom-model"))
        assert analyzer.requests[0].prompt == ""
        assert analyzer.requests[0].model == "custom-model"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.parametrize(
        "record, kind, attr",
        [
            ({"error": {"kind": "quota", "message": "429"}}, FailureKind.QUOTA, "quota"),
            ("{this is not json", FailureKind.PARSE, "parse"),
            ({"error": {"kind": "other", "message": "boom"}}, FailureKind.OTHER, "generic"),
        ],
    )
    def test_failure_messages(
        self, config: AssistantConfig, session: Session, record: object, kind: FailureKind, attr: str,
    ) -> None:
        controller, (outcome,) = replay(config, session, [record], [("x", JobMode.ACCUMULATE)])
        assert outcome.state is ControllerState.FAILED
        assert outcome.failure is kind
        assert not outcome.committed
        assert session.messages[-1].text == getattr(config.session.messages, attr)
        assert session.messages[-1].failure is kind
        assert len(session.messages) == 2
        assert len(session.ledger) == 0
        assert session.output is None
        assert controller.state is ControllerState.IDLE

    @pytest.mark.parametrize(
        "error, kind",
        [
            (RuntimeError("HTTP 429 Too Many Requests"), FailureKind.QUOTA),
            (ValueError("Unexpected token in JSON at position 4"), FailureKind.PARSE),
            (OSError("network down"), FailureKind.OTHER),
            (AnalysisError(FailureKind.PARSE, "schema mismatch"), FailureKind.PARSE),
        ],
    )
    def test_untyped_errors_are_classified(
        self, config: AssistantConfig, session: Session, error: Exception, kind: FailureKind,
    ) -> None:
        controller = RequestController(session, RaisingAnalyzer(error), config)
        outcome = asyncio.run(controller.submit("x"))
        assert outcome.failure is kind
        assert controller.state is ControllerState.IDLE

    def test_failure_keeps_previous_job(self, config: AssistantConfig, session: Session) -> None:
        replay(
            config, session, [payload(), {"error": {"kind": "quota"}}],
            [("a", JobMode.ACCUMULATE), ("b", JobMode.REPLACE)],
        )
        assert len(session.ledger) == 1
        assert session.output is not None

    def test_next_turn_after_failure(self, config: AssistantConfig, session: Session) -> None:
        _, outcomes = replay(
            config, session, [{"error": {"kind": "quota"}}, payload()],
            [("a", JobMode.ACCUMULATE), ("a", JobMode.ACCUMULATE)],
        )
        assert [o.state for o in outcomes] == [ControllerState.FAILED, ControllerState.SUCCESS]
        assert [o.generation for o in outcomes] == [1, 2]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_before_resolve(self, config: AssistantConfig, session: Session) -> None:
        result = parse_analysis(payload())

        async def run() -> tuple[RequestController, TurnOutcome, GatedAnalyzer]:
            analyzer = GatedAnalyzer(result)
            controller = RequestController(session, analyzer, config)
            task = asyncio.create_task(controller.submit("drill"))
            await analyzer.started.wait()
            assert controller.state is ControllerState.REQUESTING

            assert controller.cancel() is True
            assert controller.state is ControllerState.IDLE
            assert analyzer.tokens[0].cancelled

            # The analyzer ignores its token and resolves anyway
            analyzer.release.set()
            return controller, await task, analyzer

        controller, outcome, _ = asyncio.run(run())
        assert outcome.committed is False
        assert outcome.message is None
        assert len(session.ledger) == 0
        assert session.output is None
        stopped = [m for m in session.messages if m.failure is FailureKind.CANCELLED]
        assert len(stopped) == 1
        assert stopped[0].text == config.session.messages.stopped
        assert len(session.messages) == 2
        assert controller.state is ControllerState.IDLE
        assert controller.last_outcome.state is ControllerState.CANCELLED

    def test_stale_error_is_discarded(self, config: AssistantConfig, session: Session) -> None:
        async def run() -> TurnOutcome:
            analyzer = GatedAnalyzer(error=AnalysisError(FailureKind.QUOTA))
            controller = RequestController(session, analyzer, config)
            task = asyncio.create_task(controller.submit("drill"))
            await analyzer.started.wait()
            controller.cancel()
            analyzer.release.set()
            return await task

        outcome = asyncio.run(run())
        assert outcome.failure is None
        assert [m.failure for m in session.messages] == [None, FailureKind.CANCELLED]

    def test_cooperative_analyzer_stops(self, config: AssistantConfig, session: Session) -> None:
        analyzer = ReplayAnalyzer([payload()])

        async def run() -> TurnOutcome:
            controller = RequestController(session, analyzer, config)
            task = asyncio.create_task(controller.submit("drill"))
            while controller.state is not ControllerState.REQUESTING:
                await asyncio.sleep(0)
            controller.cancel()
            return await task

        outcome = asyncio.run(run())
        assert not outcome.committed
        assert analyzer.remaining == 1
        assert len(session.ledger) == 0
        assert sum(m.failure is FailureKind.CANCELLED for m in session.messages) == 1

    def test_cancel_when_idle(self, config: AssistantConfig, session: Session) -> None:
        controller = RequestController(session, ReplayAnalyzer([]), config)
        assert controller.cancel() is False
        assert session.messages == []

    def test_new_turn_after_cancel_commits(self, config: AssistantConfig, session: Session) -> None:
        first = parse_analysis(payload(x=1.0))

        async def run() -> tuple[TurnOutcome, TurnOutcome]:
            gated = GatedAnalyzer(first)
            chain = ChainAnalyzer(gated, ReplayAnalyzer([payload(x=2.0)]))
            controller = RequestController(session, chain, config)
            stale = asyncio.create_task(controller.submit("slow"))
            await gated.started.wait()
            controller.cancel()

            fresh = await controller.submit("fast")
            gated.release.set()
            return await stale, fresh

        stale, fresh = asyncio.run(run())
        assert fresh.committed and not stale.committed
        assert [op.x for op in session.ledger.operations] == [2.0]
        assert fresh.generation > stale.generation

    def test_task_cancellation(self, config: AssistantConfig, session: Session) -> None:
        async def run() -> RequestController:
            analyzer = GatedAnalyzer(parse_analysis(payload()))
            controller = RequestController(session, analyzer, config)
            task = asyncio.create_task(controller.submit("drill"))
            await analyzer.started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return controller

        controller = asyncio.run(run())
        assert controller.state is ControllerState.IDLE
        assert session.messages[-1].failure is FailureKind.CANCELLED
        assert len(session.ledger) == 0

    def test_submit_while_requesting(self, config: AssistantConfig, session: Session) -> None:
        async def run() -> None:
            analyzer = GatedAnalyzer(parse_analysis(payload()))
            controller = RequestController(session, analyzer, config)
            task = asyncio.create_task(controller.submit("first"))
            await analyzer.started.wait()
            with pytest.raises(RequestInFlightError):
                await controller.submit("second")
            analyzer.release.set()
            await task

        asyncio.run(run())
        assert [m.text for m in session.messages if m.role is Role.USER] == ["first"]
        assert len(session.ledger) == 1


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


class TestReset:
    def test_reset_clears_everything(self, config: AssistantConfig, session: Session) -> None:
        controller, _ = replay(config, session, [payload()], [("a", JobMode.ACCUMULATE)])
        other = StockDimensions(StockShape.CYLINDRICAL, 0.0, 0.0, 40.0, 50.0, "Steel")
        controller.reset(other)
        assert len(session.ledger) == 0
        assert session.ledger.stock == other
        assert session.output is None
        assert session.messages == []
        assert controller.state is ControllerState.IDLE

    def test_reset_defaults_to_session_stock(self, config: AssistantConfig, session: Session) -> None:
        controller, _ = replay(config, session, [payload()], [("a", JobMode.ACCUMULATE)])
        controller.reset()
        assert session.ledger.stock == config.session.default_stock

    def test_reset_drops_in_flight_result(self, config: AssistantConfig, session: Session) -> None:
        async def run() -> TurnOutcome:
            analyzer = GatedAnalyzer(parse_analysis(payload()))
            controller = RequestController(session, analyzer, config)
            task = asyncio.create_task(controller.submit("drill"))
            await analyzer.started.wait()
            controller.reset()
            analyzer.release.set()
            return await task

        outcome = asyncio.run(run())
        assert not outcome.committed
        assert session.messages == []
        assert len(session.ledger) == 0
        assert session.output is None
