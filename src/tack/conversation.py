"""Conversation state and run budget owned by one session."""

from __future__ import annotations

import contextlib
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import overload

from tack.errors import BudgetExhaustedError
from tack.types import Role, Turn

TurnListener = Callable[[Turn], None]


class ConversationView(Sequence[Turn]):
    """Read-only window over a conversation.

    Collaborators get a view, never the state itself, so capability code
    cannot append or reorder turns behind the orchestrator's back.
    """

    def __init__(self, turns: list[Turn]) -> None:
        self._turns = turns

    @overload
    def __getitem__(self, index: int) -> Turn: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[Turn]: ...

    def __getitem__(self, index: int | slice) -> Turn | Sequence[Turn]:
        if isinstance(index, slice):
            return tuple(self._turns[index])
        return self._turns[index]

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))

    def last(self, role: Role | None = None) -> Turn | None:
        for turn in reversed(self._turns):
            if role is None or turn.role == role:
                return turn
        return None


class ConversationState:
    """Ordered, append-only sequence of turns."""

    def __init__(self, turns: Iterable[Turn] = ()) -> None:
        self._turns: list[Turn] = []
        self._turn_ids: set[str] = set()
        self._listeners: list[TurnListener] = []
        for turn in turns:
            self._store(turn)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def view(self) -> ConversationView:
        return ConversationView(self._turns)

    def subscribe(self, listener: TurnListener) -> None:
        """Call ``listener`` for every turn appended from now on."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: TurnListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def append(self, turn: Turn) -> Turn:
        if turn.turn_id in self._turn_ids:
            raise ValueError(f"turn already appended: {turn.turn_id}")
        self._store(turn)
        for listener in self._listeners:
            listener(turn)
        return turn

    def add_user(self, content: str) -> Turn:
        return self.append(Turn(role=Role.USER, content=content))

    def add_model(self, content: str) -> Turn:
        return self.append(Turn(role=Role.MODEL, content=content))

    def _store(self, turn: Turn) -> None:
        self._turns.append(turn)
        self._turn_ids.add(turn.turn_id)


class RunBudget:
    """Per-session counters that only ever decrease."""

    def __init__(self, *, max_model_calls: int, max_retries: int) -> None:
        if max_model_calls < 0 or max_retries < 0:
            raise ValueError("budget counters must not be negative")
        self._remaining_model_calls = max_model_calls
        self._remaining_retries = max_retries

    def __repr__(self) -> str:
        return (
            f"RunBudget(remaining_model_calls={self._remaining_model_calls}, "
            f"remaining_retries={self._remaining_retries})"
        )

    @property
    def remaining_model_calls(self) -> int:
        return self._remaining_model_calls

    @property
    def remaining_retries(self) -> int:
        return self._remaining_retries

    def consume_model_call(self) -> None:
        if self._remaining_model_calls <= 0:
            raise BudgetExhaustedError("model_calls")
        self._remaining_model_calls -= 1

    def consume_retry(self) -> None:
        if self._remaining_retries <= 0:
            raise BudgetExhaustedError("retries")
        self._remaining_retries -= 1
