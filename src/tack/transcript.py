"""Append-only JSONL persistence for conversation turns."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from tack.conversation import ConversationState
from tack.types import ErrorKind, OutcomeStatus, Role, Turn, TurnOrigin

TRANSCRIPT_SUFFIX = ".jsonl"


class JsonlTranscript:
    """One transcript file, one JSON object per turn.

    Appends are incremental; reads pick up where the last read stopped and
    start over when the file was truncated or replaced.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._read_turns: list[Turn] = []
        self._read_offset = 0

    def attach(self, state: ConversationState) -> None:
        """Persist every turn appended to ``state`` from now on."""
        state.subscribe(self.append)

    def append(self, turn: Turn) -> None:
        with self._lock:
            self._read_locked()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(turn_to_payload(turn), ensure_ascii=False) + "\n")
                self._read_offset = handle.tell()
            self._read_turns.append(turn)

    def read(self) -> list[Turn]:
        with self._lock:
            return self._read_locked()

    def load(self) -> ConversationState:
        """Rebuild a conversation from the persisted turns."""
        return ConversationState(self.read())

    def reset(self) -> None:
        with self._lock:
            if self.path.exists():
                self.path.unlink()
            self._reset()

    def archive(self) -> Path | None:
        with self._lock:
            if not self.path.exists():
                return None
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
            archive_file = self.path.with_suffix(f"{TRANSCRIPT_SUFFIX}.{stamp}.bak")
            self.path.replace(archive_file)
            self._reset()
            return archive_file

    def _reset(self) -> None:
        self._read_turns = []
        self._read_offset = 0

    def _read_locked(self) -> list[Turn]:
        if not self.path.exists():
            self._reset()
            return []

        if self.path.stat().st_size < self._read_offset:
            # Truncated or replaced; the cached turns are stale.
            self._reset()

        with self.path.open("r", encoding="utf-8") as handle:
            handle.seek(self._read_offset)
            for raw_line in handle:
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("transcript.skip_line path={}", self.path)
                    continue
                turn = turn_from_payload(payload)
                if turn is not None:
                    self._read_turns.append(turn)
            self._read_offset = handle.tell()

        return list(self._read_turns)


def turn_to_payload(turn: Turn) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": turn.turn_id,
        "role": str(turn.role),
        "content": turn.content,
        "timestamp": turn.timestamp,
    }
    if turn.origin is not None:
        payload["origin"] = {
            "request_id": turn.origin.request_id,
            "capability": turn.origin.capability_name,
            "sequence_index": turn.origin.sequence_index,
            "status": str(turn.origin.status),
            "error_kind": str(turn.origin.error_kind) if turn.origin.error_kind is not None else None,
        }
    return payload


def turn_from_payload(payload: object) -> Turn | None:
    if not isinstance(payload, dict):
        return None
    turn_id = payload.get("id")
    role = payload.get("role")
    content = payload.get("content", "")
    if not isinstance(turn_id, str) or role not in {item.value for item in Role}:
        return None
    if not isinstance(content, str):
        return None
    timestamp = payload.get("timestamp", 0.0)
    if not isinstance(timestamp, (int, float)):
        timestamp = 0.0

    origin = None
    if role == Role.TOOL_RESULT:
        origin = _origin_from_payload(payload.get("origin"))
        if origin is None:
            return None
    return Turn(role=Role(role), content=content, origin=origin, turn_id=turn_id, timestamp=float(timestamp))


def _origin_from_payload(payload: object) -> TurnOrigin | None:
    if not isinstance(payload, dict):
        return None
    request_id = payload.get("request_id")
    capability = payload.get("capability")
    sequence_index = payload.get("sequence_index")
    status = payload.get("status")
    error_kind = payload.get("error_kind")
    if not isinstance(request_id, str) or not isinstance(capability, str):
        return None
    if not isinstance(sequence_index, int) or status not in {item.value for item in OutcomeStatus}:
        return None
    if error_kind is not None and error_kind not in {item.value for item in ErrorKind}:
        return None
    return TurnOrigin(
        request_id=request_id,
        capability_name=capability,
        sequence_index=sequence_index,
        status=OutcomeStatus(status),
        error_kind=ErrorKind(error_kind) if error_kind is not None else None,
    )
