"""Request controller -- one analyzer turn at a time, with stale-result guard.

State machine::

    IDLE --submit--> REQUESTING --+--> SUCCESS   --+
                                  +--> FAILED    --+--> IDLE
                                  +--> CANCELLED --+

Every turn is stamped with a generation number drawn from a monotonically
increasing counter.  :meth:`RequestController.cancel` and
:meth:`RequestController.reset` draw a new number, so when the old analyzer
call eventually resolves its token no longer matches and the result (or
error) is dropped without touching the session.  The analyzer call is the
only ``await``; everything after it runs synchronously, so the
compare-and-commit needs no lock.

Each terminal outcome appends exactly one assistant message and every exit
path leaves the controller ``IDLE``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum, auto

from mill_assist.configs.loader import AssistantConfig, load_config
from mill_assist.gcode.generator import ProgramCompiler
from mill_assist.job_ir.operations import CNCOutput, StockDimensions
from mill_assist.session.analyzer import (
    AnalysisRequest,
    AnalysisResult,
    Analyzer,
    Attachment,
    CancelToken,
)
from mill_assist.session.errors import (
    AnalysisCancelled,
    AnalysisError,
    FailureKind,
    RequestInFlightError,
    classify_failure,
)
from mill_assist.session.ledger import JobMode
from mill_assist.session.state import Role, Session, SessionMessage
from mill_assist.utils.logging_config import pop_context, push_context

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class ControllerState(Enum):
    """Current request-controller state."""

    IDLE = auto()
    REQUESTING = auto()
    SUCCESS = auto()
    FAILED = auto()
    CANCELLED = auto()


@dataclass(frozen=True)
class TurnOutcome:
    """How a turn ended.

    ``committed`` is True only when the session was changed.  A stale turn
    (superseded by cancel or reset) reports ``CANCELLED`` with no message.
    """

    state: ControllerState
    generation: int
    message: SessionMessage | None = None
    failure: FailureKind | None = None
    committed: bool = False


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class RequestController:
    """Drive analyzer turns against a :class:`Session`.

    Parameters
    ----------
    session : Session
        State this controller owns and mutates.
    analyzer : Analyzer
        Source of structured results.
    config : AssistantConfig | None
        Loaded configuration; ``None`` loads the shipped defaults.
    compiler : ProgramCompiler | None
        Injected compiler; built from ``config.compiler`` when omitted.
    """

    def __init__(
        self,
        session: Session,
        analyzer: Analyzer,
        config: AssistantConfig | None = None,
        compiler: ProgramCompiler | None = None,
    ) -> None:
        self._cfg = config or load_config()
        self._session = session
        self._analyzer = analyzer
        self._compiler = compiler or ProgramCompiler(self._cfg.compiler)

        self._generations = itertools.count(1)
        self._generation = 0
        self._token: CancelToken | None = None
        self._state = ControllerState.IDLE
        self._last_outcome: TurnOutcome | None = None

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def last_outcome(self) -> TurnOutcome | None:
        return self._last_outcome

    @property
    def session(self) -> Session:
        return self._session

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit(
        self,
        prompt: str,
        attachment: Attachment | None = None,
        model: str | None = None,
        mode: JobMode | str = JobMode.ACCUMULATE,
    ) -> TurnOutcome:
        """Run one turn: analyze, then compile and commit if still current.

        Raises
        ------
        RequestInFlightError
            If a turn is already ``REQUESTING``.
        """
        if self._state is ControllerState.REQUESTING:
            raise RequestInFlightError(
                f"turn {self._generation} is still being analyzed"
            )
        mode = JobMode.parse(mode)
        scfg = self._cfg.session

        text = (prompt or "").strip()
        if text:
            label = text
        elif attachment is not None:
            label = scfg.upload_label.format(file_name=attachment.file_name)
        else:
            label = "..."
        self._session.add_message(
            Role.USER,
            label,
            attachment_name=attachment.file_name if attachment else None,
        )
        if not text and mode is JobMode.ACCUMULATE:
            text = scfg.default_prompt(attachment.media_type if attachment else None)

        request = AnalysisRequest(
            prompt=text,
            attachment=attachment,
            model=model or scfg.default_model,
            mode=mode,
        )
        token = self._begin()
        push_context(turn=token.generation)
        logger.info("Turn started (mode=%s, model=%s)", mode.value, request.model)
        try:
            try:
                result = await self._analyzer.analyze(request, token)
            except AnalysisCancelled:
                return self._finish_failure(token, FailureKind.CANCELLED)
            except AnalysisError as e:
                return self._finish_failure(token, e.kind, e)
            except asyncio.CancelledError:
                self._finish_failure(token, FailureKind.CANCELLED)
                raise
            except Exception as e:
                return self._finish_failure(token, classify_failure(e), e)
            return self._finish_success(token, mode, result)
        finally:
            pop_context(["turn"])
            if self._is_current(token):
                self._token = None
                self._state = ControllerState.IDLE

    def cancel(self) -> bool:
        """Stop the in-flight turn.

        Returns
        -------
        bool
            False if nothing was in flight.
        """
        if self._state is not ControllerState.REQUESTING or self._token is None:
            return False
        token = self._token
        self._invalidate()
        message = self._session.add_message(
            Role.ASSISTANT,
            self._cfg.session.messages.stopped,
            failure=FailureKind.CANCELLED,
        )
        self._last_outcome = TurnOutcome(
            ControllerState.CANCELLED, token.generation, message, FailureKind.CANCELLED,
        )
        self._state = ControllerState.IDLE
        logger.info("Turn %d cancelled", token.generation)
        return True

    def reset(self, stock: StockDimensions | None = None) -> None:
        """Drop any in-flight turn and clear the session in one step."""
        if self._token is not None:
            self._invalidate()
        self._session.reset(stock)
        self._last_outcome = None
        self._state = ControllerState.IDLE

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin(self) -> CancelToken:
        self._generation = next(self._generations)
        self._token = CancelToken(self._generation)
        self._state = ControllerState.REQUESTING
        return self._token

    def _invalidate(self) -> None:
        token = self._token
        self._generation = next(self._generations)
        self._token = None
        if token is not None:
            token.cancel()

    def _is_current(self, token: CancelToken) -> bool:
        return token.generation == self._generation

    def _stale(self, token: CancelToken) -> TurnOutcome:
        logger.info("Discarding stale turn %d (current %d)", token.generation, self._generation)
        return TurnOutcome(ControllerState.CANCELLED, token.generation)

    def _finish_success(
        self, token: CancelToken, mode: JobMode, result: AnalysisResult,
    ) -> TurnOutcome:
        if not self._is_current(token):
            return self._stale(token)

        ledger = self._session.ledger
        ops = ledger.preview(mode, result.operation)
        try:
            if mode is JobMode.REPLACE and result.program:
                output = CNCOutput(
                    program=result.program,
                    explanation=result.explanation,
                    operations=ops,
                    stock=result.stock,
                )
            else:
                output = self._compiler.compile(result.stock, ops, result.explanation)
        except Exception as e:
            return self._finish_failure(token, FailureKind.OTHER, e)

        ledger.commit(ops, result.stock)
        self._session.output = output
        message = self._session.add_message(Role.ASSISTANT, result.explanation, result=output)
        outcome = TurnOutcome(
            ControllerState.SUCCESS, token.generation, message, committed=True,
        )
        self._state = ControllerState.SUCCESS
        self._last_outcome = outcome
        logger.info("Turn committed; job holds %d operation(s)", len(ledger))
        return outcome

    def _finish_failure(
        self,
        token: CancelToken,
        kind: FailureKind,
        error: BaseException | None = None,
    ) -> TurnOutcome:
        if not self._is_current(token):
            return self._stale(token)

        texts = self._cfg.session.messages
        if kind is FailureKind.CANCELLED:
            text, state = texts.stopped, ControllerState.CANCELLED
            logger.info("Analyzer stopped on its cancel token")
        elif kind is FailureKind.QUOTA:
            text, state = texts.quota, ControllerState.FAILED
            logger.warning("Analyzer quota exhausted: %s", error)
        elif kind is FailureKind.PARSE:
            text, state = texts.parse, ControllerState.FAILED
            logger.warning("Analyzer result unusable: %s", error)
        else:
            text, state = texts.generic, ControllerState.FAILED
            logger.error("Turn failed: %s", error, exc_info=error)

        message = self._session.add_message(Role.ASSISTANT, text, failure=kind)
        outcome = TurnOutcome(state, token.generation, message, failure=kind)
        self._state = state
        self._last_outcome = outcome
        return outcome
