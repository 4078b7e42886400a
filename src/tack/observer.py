"""Observer runtime with per-plugin fault isolation."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

import pluggy
from loguru import logger

from tack.approval import ApprovalRequest, ApprovalResponse
from tack.executors.base import ProgressEvent
from tack.hookspecs import TACK_HOOK_NAMESPACE, TackHookSpecs, hookimpl
from tack.types import ExecutionOutcome, Turn


class Observer:
    """Fire-and-forget wrapper around pluggy hook calls.

    Implementations run one by one. A failing implementation is logged and
    skipped; awaitable results are scheduled on the running loop and never
    awaited by the caller.
    """

    def __init__(self, plugin_manager: pluggy.PluginManager | None = None) -> None:
        if plugin_manager is None:
            plugin_manager = pluggy.PluginManager(TACK_HOOK_NAMESPACE)
            plugin_manager.add_hookspecs(TackHookSpecs)
        self._plugin_manager = plugin_manager
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def plugin_manager(self) -> pluggy.PluginManager:
        return self._plugin_manager

    def register(self, plugin: object, name: str | None = None) -> None:
        self._plugin_manager.register(plugin, name=name)

    def notify(self, hook_name: str, **kwargs: Any) -> None:
        for impl in self._iter_hookimpls(hook_name):
            call_kwargs = {name: kwargs[name] for name in impl.argnames if name in kwargs}
            try:
                value = impl.function(**call_kwargs)
            except Exception as error:
                logger.opt(exception=True).warning(
                    "hook.failed hook={} plugin={}",
                    hook_name,
                    impl.plugin_name or "<unknown>",
                )
                if hook_name != "on_error":
                    self.notify("on_error", session_id=kwargs.get("session_id", ""), stage=hook_name, error=error)
                continue
            if inspect.isawaitable(value):
                self._schedule(hook_name, impl.plugin_name, value)

    def hook_report(self) -> dict[str, list[str]]:
        """Build a hook->plugins mapping for diagnostics."""

        report: dict[str, list[str]] = {}
        for hook_name, hook_caller in sorted(self._plugin_manager.hook.__dict__.items()):
            if hook_name.startswith("_") or not hasattr(hook_caller, "get_hookimpls"):
                continue
            plugin_names = [impl.plugin_name for impl in hook_caller.get_hookimpls()]
            if plugin_names:
                report[hook_name] = plugin_names
        return report

    async def drain(self) -> None:
        """Wait for scheduled async hook results; used at session end."""

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _schedule(self, hook_name: str, plugin_name: str | None, value: Any) -> None:
        try:
            task = asyncio.ensure_future(value)
        except RuntimeError:
            if inspect.iscoroutine(value):
                value.close()
            logger.warning("hook.async_not_supported hook={} plugin={}", hook_name, plugin_name or "<unknown>")
            return
        self._background.add(task)
        task.add_done_callback(lambda done: self._finish(hook_name, plugin_name, done))

    def _finish(self, hook_name: str, plugin_name: str | None, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).warning(
                "hook.failed hook={} plugin={}",
                hook_name,
                plugin_name or "<unknown>",
            )

    def _iter_hookimpls(self, hook_name: str) -> list[Any]:
        hook = getattr(self._plugin_manager.hook, hook_name, None)
        if hook is None or not hasattr(hook, "get_hookimpls"):
            return []
        return list(reversed(hook.get_hookimpls()))


class LoggingObserver:
    """Logs every session event through loguru."""

    @hookimpl
    def on_state_change(self, session_id: str, previous: str, current: str) -> None:
        logger.debug("session.state session={} {} -> {}", session_id, previous, current)

    @hookimpl
    def on_turn(self, session_id: str, turn: Turn) -> None:
        logger.info("session.turn session={} role={} chars={}", session_id, turn.role, len(turn.content))

    @hookimpl
    def on_progress(self, session_id: str, event: ProgressEvent) -> None:
        logger.debug(
            "session.progress session={} request={} value={} increment={}",
            session_id,
            event.request_id,
            event.value,
            event.increment,
        )

    @hookimpl
    def on_approval(self, session_id: str, request: ApprovalRequest, response: ApprovalResponse) -> None:
        logger.info(
            "session.approval session={} request={} decision={} reason={}",
            session_id,
            request.request_id,
            response.decision,
            response.reason,
        )

    @hookimpl
    def on_outcome(self, session_id: str, request_id: str, capability_name: str, outcome: ExecutionOutcome) -> None:
        logger.info(
            "session.outcome session={} request={} capability={} status={} kind={} duration={}ms",
            session_id,
            request_id,
            capability_name,
            outcome.status,
            outcome.error_kind,
            outcome.duration_ms,
        )

    @hookimpl
    def on_error(self, session_id: str, stage: str, error: Exception) -> None:
        logger.warning("session.error session={} stage={} error={}", session_id, stage, error)
