"""Republic-backed model collaborator."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any

from loguru import logger
from republic import LLM

from tack.config import Settings
from tack.conversation import ConversationView
from tack.prompt import DEFAULT_SYSTEM_PROMPT, render_system_prompt
from tack.types import Capability, Role, Turn


class RepublicModel:
    """Streams model turns through a republic ``LLM``.

    Tool-result turns are sent as user messages wrapped in ``<result>``
    blocks, so any chat model can take part without native tool calling.
    """

    def __init__(self, llm: Any, *, max_tokens: int = 2048, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self._llm = llm
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt

    @classmethod
    def from_settings(cls, settings: Settings, *, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> RepublicModel:
        llm = LLM(
            settings.require_model(),
            api_key=settings.api_key,
            api_base=settings.api_base,
        )
        return cls(llm, max_tokens=settings.max_tokens, system_prompt=system_prompt)

    async def send(
        self,
        conversation: ConversationView,
        *,
        capabilities: Sequence[Capability],
    ) -> AsyncIterator[str]:
        messages = [{"role": "system", "content": render_system_prompt(capabilities, self._system_prompt)}]
        messages.extend(to_messages(conversation))
        logger.debug("model.call messages={} max_tokens={}", len(messages), self._max_tokens)
        stream = await self._llm.stream_async(
            messages=messages,
            max_tokens=self._max_tokens,
        )
        async for chunk in stream:
            if isinstance(chunk, str) and chunk:
                yield chunk
        error = getattr(stream, "error", None)
        if error is not None:
            raise RuntimeError(_format_stream_error(error))


def to_messages(turns: Sequence[Turn]) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for turn in turns:
        if turn.role == Role.USER:
            messages.append({"role": "user", "content": turn.content})
        elif turn.role == Role.MODEL:
            messages.append({"role": "assistant", "content": turn.content})
        elif turn.origin is not None:
            content = (
                f'<result name="{turn.origin.capability_name}" id="{turn.origin.request_id}" '
                f'status="{turn.origin.status}">\n{turn.content}\n</result>'
            )
            messages.append({"role": "user", "content": content})
    return _merge_adjacent(messages)


def _merge_adjacent(messages: list[dict[str, str]]) -> list[dict[str, str]]:
    merged: list[dict[str, str]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1] = {"role": message["role"], "content": f"{merged[-1]['content']}\n\n{message['content']}"}
            continue
        merged.append(dict(message))
    return merged


def _format_stream_error(error: object) -> str:
    kind = getattr(error, "kind", None)
    message = getattr(error, "message", None)
    kind_value = getattr(kind, "value", kind)
    if isinstance(kind_value, str) and isinstance(message, str):
        return f"{kind_value}: {message}"
    if isinstance(message, str):
        return message
    return str(error)
