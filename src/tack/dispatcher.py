"""Routing of approved requests to executors."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from enum import StrEnum

from loguru import logger

from tack.errors import ExecutionInterrupted
from tack.executors.base import (
    CancellationToken,
    ExecutionContext,
    Executor,
    ProgressListener,
    ProgressReporter,
    elapsed_ms,
)
from tack.types import ErrorKind, ExecutionOutcome, ExecutorKind, InvocationRequest, MalformedRequest, ValidatedRequest

ResolvedRequest = InvocationRequest | MalformedRequest
RecordCallback = Callable[[ResolvedRequest, ExecutionOutcome], None]


class DispatchPolicy(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class Dispatcher:
    """Routes approved requests to the executor registered for their kind."""

    def __init__(
        self,
        executors: Mapping[ExecutorKind, Executor] | None = None,
        *,
        policy: DispatchPolicy = DispatchPolicy.SEQUENTIAL,
        timeout_seconds: float | None = None,
    ) -> None:
        self._executors: dict[ExecutorKind, Executor] = dict(executors or {})
        self._policy = policy
        self._timeout_seconds = timeout_seconds

    @property
    def policy(self) -> DispatchPolicy:
        return self._policy

    def register_executor(self, kind: ExecutorKind, executor: Executor) -> None:
        self._executors[kind] = executor

    def runs_in_parallel(self, validated: ValidatedRequest) -> bool:
        return self._policy == DispatchPolicy.PARALLEL and validated.capability.parallel_safe

    async def dispatch(
        self,
        validated: ValidatedRequest,
        *,
        cancel: CancellationToken,
        progress_listener: ProgressListener | None = None,
    ) -> ExecutionOutcome:
        capability = validated.capability
        executor = self._executors.get(capability.executor_kind)
        if executor is None:
            return ExecutionOutcome.failure(
                ErrorKind.INTERNAL_EXCEPTION,
                f"no executor registered for kind {capability.executor_kind}",
            )
        if cancel.cancelled:
            return ExecutionOutcome.failure(ErrorKind.CANCELLED, f"Cancelled: {cancel.reason}")

        context = ExecutionContext(
            capability=capability,
            request_id=validated.request_id,
            cancel=cancel.child(),
            progress=ProgressReporter(
                validated.request_id,
                capability.name,
                progress_listener,
                loop=asyncio.get_running_loop(),
            ),
            timeout_seconds=self._timeout_seconds,
        )
        start = time.monotonic()
        logger.debug("dispatch.start request={} capability={}", validated.request_id, capability.name)
        try:
            outcome = await executor.execute(validated.arguments, context)
        except ExecutionInterrupted as exc:
            outcome = ExecutionOutcome.failure(exc.kind, str(exc), duration_ms=elapsed_ms(start))
        except Exception as exc:
            logger.opt(exception=True).warning(
                "dispatch.executor_error request={} capability={}",
                validated.request_id,
                capability.name,
            )
            outcome = ExecutionOutcome.failure(
                ErrorKind.INTERNAL_EXCEPTION,
                f"{type(exc).__name__}: {exc!s}",
                duration_ms=elapsed_ms(start),
            )
        logger.debug(
            "dispatch.end request={} status={} duration={}ms",
            validated.request_id,
            outcome.status,
            outcome.duration_ms,
        )
        return outcome


class DispatchQueue:
    """Ordered queue for the requests of one model turn.

    Every resolution goes through the queue so results are recorded in
    extraction order. Parallel-safe requests start right away and are
    recorded once everything submitted before them has been recorded.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        cancel: CancellationToken,
        record: RecordCallback,
        progress_listener: ProgressListener | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._cancel = cancel
        self._record = record
        self._progress_listener = progress_listener
        self._pending: list[tuple[ValidatedRequest, asyncio.Task[ExecutionOutcome]]] = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def resolve(self, request: ResolvedRequest, outcome: ExecutionOutcome) -> None:
        """Record an outcome that needed no execution."""

        await self.flush()
        self._record(request, outcome)

    async def execute(self, validated: ValidatedRequest) -> None:
        if self._dispatcher.runs_in_parallel(validated):
            task = asyncio.create_task(self._dispatch(validated))
            self._pending.append((validated, task))
            return
        await self.flush()
        outcome = await self._dispatch(validated)
        self._record(validated.request, outcome)

    async def flush(self) -> None:
        """Wait for started requests and record them in submission order."""

        while self._pending:
            validated, task = self._pending[0]
            try:
                outcome = await asyncio.shield(task)
            except asyncio.CancelledError:
                self._cancel.cancel("interrupted")
                for _, pending in self._pending:
                    pending.cancel()
                raise
            self._pending.pop(0)
            self._record(validated.request, outcome)

    async def _dispatch(self, validated: ValidatedRequest) -> ExecutionOutcome:
        return await self._dispatcher.dispatch(
            validated,
            cancel=self._cancel,
            progress_listener=self._progress_listener,
        )
