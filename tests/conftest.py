from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from tack.capabilities.registry import CapabilityRegistry
from tack.types import ArgumentSpec, Capability, ExecutorKind, InvocationRequest, SourceSpan


def echo_handler(arguments: Any, context: Any) -> str:
    return arguments["text"]


@pytest.fixture
def make_capability() -> Callable[..., Capability]:
    def _make(
        name: str = "echo",
        *,
        handler: Callable[..., Any] = echo_handler,
        schema: tuple[ArgumentSpec, ...] = (ArgumentSpec("text"),),
        **kwargs: Any,
    ) -> Capability:
        kwargs.setdefault("executor_kind", ExecutorKind.FUNCTION)
        return Capability(name=name, input_schema=schema, handler=handler, **kwargs)

    return _make


@pytest.fixture
def registry(make_capability: Callable[..., Capability]) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    registry.register(make_capability())
    return registry


@pytest.fixture
def make_request() -> Callable[..., InvocationRequest]:
    counter = iter(range(1000))

    def _make(
        name: str = "echo",
        arguments: dict[str, Any] | None = None,
        *,
        index: int | None = None,
    ) -> InvocationRequest:
        sequence_index = next(counter) if index is None else index
        return InvocationRequest(
            capability_name=name,
            raw_arguments=arguments or {},
            source_span=SourceSpan(0, 0),
            sequence_index=sequence_index,
            request_id=f"req.{sequence_index}",
        )

    return _make
