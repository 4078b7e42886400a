"""Session driver: model -> extract -> validate -> approve -> execute -> record."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from loguru import logger

from tack.approval import ApprovalGate, ApprovalRequest, ApprovalResponse
from tack.capabilities.registry import CapabilityRegistry
from tack.conversation import ConversationState, RunBudget
from tack.dispatcher import Dispatcher, DispatchPolicy, DispatchQueue
from tack.errors import BudgetExhaustedError, ExecutionInterrupted, TransportFailureError
from tack.executors.base import CancellationToken, ProgressEvent, run_interruptible
from tack.executors.command import CommandExecutor
from tack.executors.function import FunctionExecutor
from tack.extractor import RequestExtractor, Segment, TextSegment
from tack.logging_utils import session_context
from tack.model import Model
from tack.observer import Observer
from tack.sink import ResultSink
from tack.types import (
    ApprovalDecision,
    ErrorKind,
    ExecutionOutcome,
    ExecutorKind,
    InvocationRequest,
    MalformedRequest,
    Turn,
    ValidatedRequest,
)
from tack.validator import ValidationError, Validator


class SessionState(StrEnum):
    IDLE = "Idle"
    AWAITING_MODEL = "AwaitingModel"
    STREAMING_MODEL_OUTPUT = "StreamingModelOutput"
    EXTRACTING_REQUESTS = "ExtractingRequests"
    FINALIZING = "Finalizing"
    VALIDATING_REQUEST = "ValidatingRequest"
    AWAITING_APPROVAL = "AwaitingApproval"
    EXECUTING = "Executing"
    RECORDING_RESULT = "RecordingResult"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


class AbortReason(StrEnum):
    BUDGET_EXHAUSTED = "BudgetExhausted"
    TRANSPORT_FAILURE = "TransportFailure"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class OrchestratorLimits:
    max_model_calls: int = 12
    max_retries: int = 3
    model_timeout_seconds: float | None = 120.0
    continue_batch_on_error: bool = True


@dataclass(frozen=True)
class SessionResult:
    """How a session ended; the conversation is kept either way."""

    state: SessionState
    conversation: ConversationState
    budget: RunBudget
    model_calls: int
    final_text: str = ""
    abort_reason: AbortReason | None = None
    detail: str = ""

    @property
    def completed(self) -> bool:
        return self.state == SessionState.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.state == SessionState.ABORTED


class _Abort(Exception):
    def __init__(self, reason: AbortReason, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


@dataclass
class _Batch:
    """Bookkeeping for the requests of one model turn."""

    total: int
    failed_before_execution: int = 0
    stopped: bool = False
    cancelled_reason: str | None = None
    preambles: dict[str, str] = field(default_factory=dict)


def default_dispatcher(
    *,
    workspace: Path | None = None,
    command_timeout_seconds: float = 30.0,
    max_output_chars: int = 50_000,
    policy: DispatchPolicy = DispatchPolicy.SEQUENTIAL,
) -> Dispatcher:
    return Dispatcher(
        {
            ExecutorKind.COMMAND: CommandExecutor(
                workspace=workspace,
                default_timeout_seconds=command_timeout_seconds,
                max_output_chars=max_output_chars,
            ),
            ExecutorKind.FUNCTION: FunctionExecutor(),
        },
        policy=policy,
    )


class Orchestrator:
    """Drives one session until the model answers without pending requests.

    Only budget exhaustion, transport failure and session cancellation end a
    session early; every other failure becomes a tool-result turn the model
    can react to.
    """

    def __init__(
        self,
        model: Model,
        registry: CapabilityRegistry,
        *,
        validator: Validator | None = None,
        gate: ApprovalGate | None = None,
        dispatcher: Dispatcher | None = None,
        observer: Observer | None = None,
        limits: OrchestratorLimits | None = None,
        session_id: str | None = None,
    ) -> None:
        self._model = model
        self._registry = registry
        self._validator = validator or Validator()
        self._gate = gate or ApprovalGate()
        self._dispatcher = dispatcher or default_dispatcher()
        self._observer = observer or Observer()
        self._limits = limits or OrchestratorLimits()
        self._session_id = session_id or uuid.uuid4().hex[:8]
        self._cancel = CancellationToken()
        self._state = SessionState.IDLE
        self._history: list[SessionState] = [SessionState.IDLE]
        self._model_calls = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[SessionState]:
        return list(self._history)

    def cancel(self, reason: str = "session cancelled") -> None:
        """Abort the session: pending approvals fail and running work is interrupted."""

        logger.info("session.cancel session={} reason={}", self._session_id, reason)
        self._cancel.cancel(reason)

    async def run(self, prompt: str | None = None, *, conversation: ConversationState | None = None) -> SessionResult:
        state = conversation if conversation is not None else ConversationState()
        budget = RunBudget(max_model_calls=self._limits.max_model_calls, max_retries=self._limits.max_retries)
        self._registry.freeze()
        state.subscribe(self._notify_turn)
        try:
            with session_context(self._session_id):
                logger.info("session.start session={} capabilities={}", self._session_id, len(self._registry))
                if prompt is not None:
                    state.add_user(prompt)
                try:
                    final_text = await self._loop(state, budget)
                except _Abort as abort:
                    return self._aborted(state, budget, abort)
                finally:
                    await self._observer.drain()

                self._transition(SessionState.COMPLETED)
                logger.info("session.completed session={} model_calls={}", self._session_id, self._model_calls)
                return SessionResult(
                    state=SessionState.COMPLETED,
                    conversation=state,
                    budget=budget,
                    model_calls=self._model_calls,
                    final_text=final_text,
                )
        finally:
            state.unsubscribe(self._notify_turn)

    async def _loop(self, state: ConversationState, budget: RunBudget) -> str:
        sink = ResultSink(state)
        while True:
            self._transition(SessionState.AWAITING_MODEL)
            self._check_cancelled()
            try:
                budget.consume_model_call()
            except BudgetExhaustedError as exc:
                raise _Abort(AbortReason.BUDGET_EXHAUSTED, str(exc)) from exc
            self._model_calls += 1

            segments = await self._request_reply(state, budget)
            requests = [segment for segment in segments if not isinstance(segment, TextSegment)]
            if not requests:
                self._transition(SessionState.FINALIZING)
                final_text = "".join(segment.text for segment in segments if isinstance(segment, TextSegment))
                if final_text.strip():
                    state.add_model(final_text.strip())
                return final_text.strip()

            batch = await self._process_batch(segments, requests, state, sink)
            self._check_cancelled()
            if batch.failed_before_execution == batch.total:
                try:
                    budget.consume_retry()
                except BudgetExhaustedError as exc:
                    raise _Abort(
                        AbortReason.BUDGET_EXHAUSTED,
                        f"{exc}: every request of the last turn failed and no correction rounds remain",
                    ) from exc
                logger.info(
                    "session.correction_round session={} remaining={}",
                    self._session_id,
                    budget.remaining_retries,
                )

    async def _request_reply(self, state: ConversationState, budget: RunBudget) -> list[Segment]:
        prefix = f"r{self._model_calls}"
        while True:
            try:
                return await run_interruptible(
                    self._stream(state, prefix),
                    cancel=self._cancel.child(),
                    timeout=self._limits.model_timeout_seconds,
                )
            except ExecutionInterrupted as exc:
                if exc.kind == ErrorKind.CANCELLED:
                    raise _Abort(AbortReason.CANCELLED, self._cancel.reason) from exc
                timeout = self._limits.model_timeout_seconds
                error = TransportFailureError(f"model timeout: no response within {timeout}s")
            except TransportFailureError as exc:
                logger.opt(exception=True).warning("model.call.error session={}", self._session_id)
                error = exc

            self._observer.notify("on_error", session_id=self._session_id, stage="model", error=error)
            if budget.remaining_retries <= 0:
                raise _Abort(AbortReason.TRANSPORT_FAILURE, str(error))
            budget.consume_retry()
            logger.warning("model.retry session={} remaining={}", self._session_id, budget.remaining_retries)
            self._transition(SessionState.AWAITING_MODEL)

    async def _stream(self, state: ConversationState, prefix: str) -> list[Segment]:
        extractor = RequestExtractor(id_prefix=prefix)
        segments: list[Segment] = []
        self._transition(SessionState.STREAMING_MODEL_OUTPUT)
        async for fragment in self._fragments(state):
            extraction = extractor.feed(fragment)
            segments.extend(extraction.segments)
            if extraction.text:
                self._observer.notify("on_model_text", session_id=self._session_id, text=extraction.text)
        self._transition(SessionState.EXTRACTING_REQUESTS)
        extraction = extractor.close()
        segments.extend(extraction.segments)
        if extraction.text:
            self._observer.notify("on_model_text", session_id=self._session_id, text=extraction.text)
        return segments

    async def _fragments(self, state: ConversationState) -> AsyncIterator[str]:
        """Yield model output, reporting any failure of the model collaborator as a transport failure."""

        try:
            stream = aiter(self._model.send(state.view(), capabilities=self._registry.list()))
        except Exception as exc:
            raise TransportFailureError(f"model call failed: {exc!s}") from exc
        while True:
            try:
                fragment = await anext(stream)
            except StopAsyncIteration:
                return
            except Exception as exc:
                raise TransportFailureError(f"model call failed: {exc!s}") from exc
            yield fragment

    async def _process_batch(
        self,
        segments: list[Segment],
        requests: list[InvocationRequest | MalformedRequest],
        state: ConversationState,
        sink: ResultSink,
    ) -> _Batch:
        batch = _Batch(total=len(requests))
        narration: list[str] = []
        for segment in segments:
            if isinstance(segment, TextSegment):
                narration.append(segment.text)
                continue
            batch.preambles[segment.request_id] = "".join(narration) + segment.raw_text
            narration = []

        def record(request: InvocationRequest | MalformedRequest, outcome: ExecutionOutcome) -> None:
            self._transition(SessionState.RECORDING_RESULT)
            sink.record(outcome, request, preamble=batch.preambles.pop(request.request_id, ""))
            self._observer.notify(
                "on_outcome",
                session_id=self._session_id,
                request_id=request.request_id,
                capability_name=request.capability_name or "",
                outcome=outcome,
            )
            if not outcome.ok and not self._limits.continue_batch_on_error:
                batch.stopped = True

        queue = DispatchQueue(
            self._dispatcher,
            cancel=self._cancel,
            record=record,
            progress_listener=self._relay_progress,
        )
        for request in requests:
            await self._resolve(request, batch, queue)
        await queue.flush()

        trailing = "".join(narration)
        if trailing.strip():
            state.add_model(trailing.strip())
        return batch

    async def _resolve(
        self,
        request: InvocationRequest | MalformedRequest,
        batch: _Batch,
        queue: DispatchQueue,
    ) -> None:
        if self._cancel.cancelled:
            outcome = ExecutionOutcome.failure(ErrorKind.CANCELLED, f"Cancelled: {self._cancel.reason}")
            await queue.resolve(request, outcome)
            return
        if batch.cancelled_reason is not None:
            await queue.resolve(
                request,
                ExecutionOutcome.failure(
                    ErrorKind.APPROVAL_CANCELLED,
                    f"abandoned: an earlier request in this step was cancelled ({batch.cancelled_reason})",
                ),
            )
            return
        if batch.stopped:
            await queue.resolve(
                request,
                ExecutionOutcome.failure(ErrorKind.SKIPPED, "skipped: an earlier request in this step failed"),
            )
            return

        if isinstance(request, MalformedRequest):
            batch.failed_before_execution += 1
            await queue.resolve(
                request,
                ExecutionOutcome.failure(ErrorKind.MALFORMED_REQUEST, f"malformed request: {request.reason}"),
            )
            return

        self._transition(SessionState.VALIDATING_REQUEST)
        verdict = self._validator.validate(request, self._registry)
        if isinstance(verdict, ValidationError):
            batch.failed_before_execution += 1
            await queue.resolve(request, ExecutionOutcome.failure(verdict.kind, verdict.message))
            return

        response = await self._approve(verdict)
        if response.decision == ApprovalDecision.DENIED:
            await queue.resolve(
                request,
                ExecutionOutcome.failure(
                    ErrorKind.APPROVAL_DENIED,
                    f"{verdict.capability_name}: request declined: {response.reason or 'no reason given'}",
                ),
            )
            return
        if response.decision == ApprovalDecision.CANCELLED:
            batch.cancelled_reason = response.reason or "cancelled"
            await queue.resolve(
                request,
                ExecutionOutcome.failure(
                    ErrorKind.APPROVAL_CANCELLED,
                    f"{verdict.capability_name}: step cancelled: {batch.cancelled_reason}",
                ),
            )
            return

        self._transition(SessionState.EXECUTING)
        await queue.execute(verdict)

    async def _approve(self, validated: ValidatedRequest) -> ApprovalResponse:
        if not self._gate.requires_approval(validated):
            return ApprovalResponse.approve()
        self._transition(SessionState.AWAITING_APPROVAL)
        response = await self._gate.decide(validated, cancel=self._cancel)
        self._observer.notify(
            "on_approval",
            session_id=self._session_id,
            request=ApprovalRequest.from_validated(validated),
            response=response,
        )
        return response

    def _relay_progress(self, event: ProgressEvent) -> None:
        self._observer.notify("on_progress", session_id=self._session_id, event=event)

    def _notify_turn(self, turn: Turn) -> None:
        self._observer.notify("on_turn", session_id=self._session_id, turn=turn)

    def _check_cancelled(self) -> None:
        if self._cancel.cancelled:
            raise _Abort(AbortReason.CANCELLED, self._cancel.reason)

    def _transition(self, state: SessionState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        self._history.append(state)
        self._observer.notify(
            "on_state_change",
            session_id=self._session_id,
            previous=str(previous),
            current=str(state),
        )

    def _aborted(self, state: ConversationState, budget: RunBudget, abort: _Abort) -> SessionResult:
        self._transition(SessionState.ABORTED)
        logger.warning("session.aborted session={} reason={} detail={}", self._session_id, abort.reason, abort.detail)
        self._observer.notify("on_error", session_id=self._session_id, stage="session", error=abort)
        return SessionResult(
            state=SessionState.ABORTED,
            conversation=state,
            budget=budget,
            model_calls=self._model_calls,
            abort_reason=abort.reason,
            detail=abort.detail,
        )
