"""In-process function executor."""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any

from loguru import logger

from tack.errors import ExecutionInterrupted
from tack.executors.base import ExecutionContext, elapsed_ms, run_interruptible
from tack.types import ErrorKind, ExecutionOutcome, TypedArguments


class FunctionExecutor:
    """Calls ``handler(arguments, context)`` for function capabilities.

    Coroutine handlers run on the loop; plain callables run in a worker
    thread so a blocking handler cannot stall progress relay or approvals.
    Whatever the handler raises is turned into an error outcome.
    """

    def __init__(self, *, default_timeout_seconds: float | None = None) -> None:
        self._default_timeout_seconds = default_timeout_seconds

    async def execute(self, arguments: TypedArguments, context: ExecutionContext) -> ExecutionOutcome:
        start = time.monotonic()
        handler = context.capability.handler
        if handler is None:
            return ExecutionOutcome.failure(
                ErrorKind.INTERNAL_EXCEPTION,
                f"capability {context.capability.name} has no handler",
            )

        timeout = context.timeout_seconds or self._default_timeout_seconds
        try:
            output = await run_interruptible(
                _call(handler, arguments, context),
                cancel=context.cancel,
                timeout=timeout,
            )
        except ExecutionInterrupted as exc:
            logger.warning("function.interrupted name={} kind={}", context.capability.name, exc.kind)
            return ExecutionOutcome.failure(exc.kind, str(exc), duration_ms=elapsed_ms(start))
        except Exception as exc:
            logger.opt(exception=True).warning("function.error name={}", context.capability.name)
            return ExecutionOutcome.failure(
                ErrorKind.INTERNAL_EXCEPTION,
                f"{type(exc).__name__}: {exc!s}",
                duration_ms=elapsed_ms(start),
            )

        duration = elapsed_ms(start)
        logger.info("function.end name={} duration={}ms", context.capability.name, duration)
        return ExecutionOutcome.success(output, duration_ms=duration)


async def _call(handler: Any, arguments: TypedArguments, context: ExecutionContext) -> Any:
    if inspect.iscoroutinefunction(handler):
        return await handler(arguments, context)
    value = await asyncio.to_thread(handler, arguments, context)
    if inspect.isawaitable(value):
        value = await value
    return value
