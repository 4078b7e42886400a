from dataclasses import dataclass
from typing import Any

import pytest

from tack.conversation import ConversationState
from tack.integrations.republic_model import RepublicModel, _format_stream_error, to_messages
from tack.types import OutcomeStatus, Role, Turn, TurnOrigin


class FakeStream:
    def __init__(self, chunks: list[Any], error: object = None) -> None:
        self._chunks = chunks
        self.error = error

    def __aiter__(self) -> "FakeStream":
        self._iterator = iter(self._chunks)
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration:
            raise StopAsyncIteration from None


class FakeLLM:
    def __init__(self, stream: FakeStream) -> None:
        self.stream = stream
        self.calls: list[dict[str, Any]] = []

    async def stream_async(self, **kwargs: Any) -> FakeStream:
        self.calls.append(kwargs)
        return self.stream


@dataclass
class FakeErrorKind:
    value: str


@dataclass
class FakeError:
    kind: FakeErrorKind
    message: str


def _tool_turn(content: str) -> Turn:
    return Turn(
        role=Role.TOOL_RESULT,
        content=content,
        origin=TurnOrigin(request_id="r1.0", capability_name="echo", sequence_index=0, status=OutcomeStatus.SUCCESS),
    )


@pytest.mark.asyncio
async def test_send_streams_text_chunks(registry) -> None:
    llm = FakeLLM(FakeStream(["Hel", "", None, "lo"]))
    model = RepublicModel(llm, max_tokens=64)
    state = ConversationState()
    state.add_user("hi")

    chunks = [chunk async for chunk in model.send(state.view(), capabilities=registry.list())]

    assert chunks == ["Hel", "lo"]
    call = llm.calls[0]
    assert call["max_tokens"] == 64
    assert call["messages"][0]["role"] == "system"
    assert '<capability name="echo">' in call["messages"][0]["content"]
    assert call["messages"][1:] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_send_raises_stream_error(registry) -> None:
    llm = FakeLLM(FakeStream(["partial"], error=FakeError(FakeErrorKind("rate_limit"), "slow down")))
    model = RepublicModel(llm)

    with pytest.raises(RuntimeError, match="rate_limit: slow down"):
        async for _ in model.send(ConversationState().view(), capabilities=registry.list()):
            pass


def test_to_messages_maps_roles_and_merges() -> None:
    turns = [
        Turn(role=Role.USER, content="say hi"),
        Turn(role=Role.MODEL, content='<invoke name="echo"/>'),
        _tool_turn("hi"),
        _tool_turn("again"),
        Turn(role=Role.MODEL, content="done"),
    ]

    messages = to_messages(turns)

    assert [message["role"] for message in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[2]["content"] == (
        '<result name="echo" id="r1.0" status="success">\nhi\n</result>\n\n'
        '<result name="echo" id="r1.0" status="success">\nagain\n</result>'
    )


def test_format_stream_error() -> None:
    assert _format_stream_error(FakeError(FakeErrorKind("auth"), "bad key")) == "auth: bad key"
    assert _format_stream_error("plain") == "plain"
