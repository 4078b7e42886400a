"""Pluggy hook namespace and observability hook specifications."""

from __future__ import annotations

import pluggy

from tack.approval import ApprovalRequest, ApprovalResponse
from tack.executors.base import ProgressEvent
from tack.types import ExecutionOutcome, Turn

TACK_HOOK_NAMESPACE = "tack"
hookspec = pluggy.HookspecMarker(TACK_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(TACK_HOOK_NAMESPACE)


class TackHookSpecs:
    """Hook contract for session observers.

    Every hook is a notification; return values are ignored and a failing
    implementation never affects the session.
    """

    @hookspec
    def on_state_change(self, session_id: str, previous: str, current: str) -> None:
        """Observe one state machine transition."""

    @hookspec
    def on_model_text(self, session_id: str, text: str) -> None:
        """Observe narration decided by the extractor while the model streams."""

    @hookspec
    def on_turn(self, session_id: str, turn: Turn) -> None:
        """Observe one turn appended to the conversation."""

    @hookspec
    def on_progress(self, session_id: str, event: ProgressEvent) -> None:
        """Observe a progress notification from a running capability."""

    @hookspec
    def on_approval(self, session_id: str, request: ApprovalRequest, response: ApprovalResponse) -> None:
        """Observe an approval decision for a request that required one."""

    @hookspec
    def on_outcome(self, session_id: str, request_id: str, capability_name: str, outcome: ExecutionOutcome) -> None:
        """Observe the outcome recorded for one request."""

    @hookspec
    def on_error(self, session_id: str, stage: str, error: Exception) -> None:
        """Observe session errors from any stage."""
