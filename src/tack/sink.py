"""Turning execution outcomes into conversation turns."""

from __future__ import annotations

import json
from typing import Any

from loguru import logger

from tack.conversation import ConversationState
from tack.types import (
    ExecutionOutcome,
    InvocationRequest,
    MalformedRequest,
    OutcomeStatus,
    Role,
    Turn,
    TurnOrigin,
)

EMPTY_OUTPUT = "(empty)"
UNNAMED_CAPABILITY = "<unknown>"


class ResultSink:
    """Appends exactly one tool-result turn per resolved request.

    Recording is keyed by request id, so a repeated call for the same
    request returns the turn appended the first time.
    """

    def __init__(self, state: ConversationState) -> None:
        self._state = state
        self._recorded: dict[str, Turn] = {}

    def recorded(self, request_id: str) -> Turn | None:
        return self._recorded.get(request_id)

    def record(
        self,
        outcome: ExecutionOutcome,
        request: InvocationRequest | MalformedRequest,
        *,
        preamble: str = "",
    ) -> Turn:
        """Append the result turn, preceded by ``preamble`` as a model turn."""

        existing = self._recorded.get(request.request_id)
        if existing is not None:
            logger.debug("sink.duplicate request={}", request.request_id)
            return existing

        if preamble:
            self._state.append(Turn(role=Role.MODEL, content=preamble))
        turn = Turn(
            role=Role.TOOL_RESULT,
            content=render_outcome(outcome),
            origin=TurnOrigin(
                request_id=request.request_id,
                capability_name=request.capability_name or UNNAMED_CAPABILITY,
                sequence_index=request.sequence_index,
                status=outcome.status,
                error_kind=outcome.error_kind,
            ),
        )
        self._state.append(turn)
        self._recorded[request.request_id] = turn
        return turn


def render_outcome(outcome: ExecutionOutcome) -> str:
    if outcome.status == OutcomeStatus.ERROR:
        return f"error[{outcome.error_kind}]: {render_output(outcome.output)}"
    return render_output(outcome.output)


def render_output(output: Any) -> str:
    if output is None:
        return EMPTY_OUTPUT
    if isinstance(output, str):
        return output if output.strip() else EMPTY_OUTPUT
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace") or EMPTY_OUTPUT
    try:
        return json.dumps(output, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(output)
