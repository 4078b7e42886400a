"""Executor protocol and the context handed to running capabilities."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from tack.errors import ExecutionInterrupted
from tack.types import Capability, ErrorKind, ExecutionOutcome, TypedArguments

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal.

    ``cancelled`` is a plain attribute read, safe to poll from worker threads.
    Child tokens are cancelled together with their parent.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""
        self._event: asyncio.Event | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def child(self) -> CancellationToken:
        token = CancellationToken()
        self.on_cancel(lambda: token.cancel(self._reason))
        return token

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification from a running capability."""

    request_id: str
    capability_name: str
    value: float | None = None  # 0..100 when known
    increment: int = 0
    message: str = ""
    timestamp: float = field(default_factory=time.time)


ProgressListener = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Fire-and-forget progress sink, callable from the loop or a worker thread."""

    def __init__(
        self,
        request_id: str,
        capability_name: str,
        listener: ProgressListener | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._request_id = request_id
        self._capability_name = capability_name
        self._listener = listener
        self._loop = loop

    def report(self, value: float, message: str = "") -> None:
        bounded = max(0.0, min(100.0, float(value)))
        self._emit(ProgressEvent(self._request_id, self._capability_name, value=bounded, message=message))

    def advance(self, increment: int = 1, message: str = "") -> None:
        self._emit(ProgressEvent(self._request_id, self._capability_name, increment=increment, message=message))

    def _emit(self, event: ProgressEvent) -> None:
        if self._listener is None:
            return
        if self._loop is None or _running_loop() is self._loop:
            self._listener(event)
            return
        with contextlib.suppress(RuntimeError):
            self._loop.call_soon_threadsafe(self._listener, event)


@dataclass(frozen=True)
class ExecutionContext:
    """Everything a capability may touch while it runs."""

    capability: Capability
    request_id: str
    cancel: CancellationToken
    progress: ProgressReporter
    timeout_seconds: float | None = None

    @property
    def data(self) -> Mapping[str, Any]:
        """Read-only capability-scoped data source."""
        return self.capability.data

    @property
    def cancelled(self) -> bool:
        return self.cancel.cancelled


class Executor(Protocol):
    """One backend able to perform a capability's work."""

    async def execute(self, arguments: TypedArguments, context: ExecutionContext) -> ExecutionOutcome: ...


async def run_interruptible(
    awaitable: Awaitable[T],
    *,
    cancel: CancellationToken,
    timeout: float | None,
    on_interrupt: Callable[[], Awaitable[None]] | None = None,
) -> T:
    """Await ``awaitable`` unless the token fires or ``timeout`` elapses first.

    Raises ``ExecutionInterrupted`` with kind ``Timeout`` or ``Cancelled``.
    ``on_interrupt`` runs before the pending task is cancelled.
    """

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    if cancel.cancelled:
        kind, message = ErrorKind.CANCELLED, f"Cancelled: {cancel.reason}"
    else:
        kind, message = ErrorKind.TIMEOUT, f"Timeout: no result within {timeout}s"
        cancel.cancel("timeout")
    if on_interrupt is not None:
        await on_interrupt()
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task
    raise ExecutionInterrupted(kind, message)


def elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
