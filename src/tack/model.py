"""Model collaborator protocol."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from tack.conversation import ConversationView
from tack.types import Capability, Turn

Reply = str | Sequence[str] | BaseException


class Model(Protocol):
    """Streams one model turn for the given conversation.

    The end of the iterator is the end-of-turn marker. Raising, or stopping
    mid-way through an exception, is a transport failure.
    """

    def send(
        self,
        conversation: ConversationView,
        *,
        capabilities: Sequence[Capability],
    ) -> AsyncIterator[str]: ...


@dataclass
class ScriptedModel:
    """Replays canned replies, one per call.

    A reply is a full string, a sequence of fragments, or an exception to
    raise instead of answering.
    """

    replies: list[Reply]
    fragment_delay: float = 0.0
    calls: list[tuple[Turn, ...]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._replies = list(self.replies)

    @classmethod
    def of(cls, *replies: Reply) -> ScriptedModel:
        return cls(list(replies))

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def send(
        self,
        conversation: ConversationView,
        *,
        capabilities: Sequence[Capability],
    ) -> AsyncIterator[str]:
        self.calls.append(tuple(conversation))
        if not self._replies:
            raise RuntimeError("scripted model has no replies left")
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        for fragment in _fragments(reply):
            if self.fragment_delay:
                await asyncio.sleep(self.fragment_delay)
            yield fragment


def _fragments(reply: str | Sequence[str]) -> Iterable[str]:
    if isinstance(reply, str):
        return [reply]
    return list(reply)
