"""Shared dataclasses for the orchestration pipeline."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class Role(StrEnum):
    USER = "user"
    MODEL = "model"
    TOOL_RESULT = "tool-result"


class ArgType(StrEnum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class ExecutorKind(StrEnum):
    COMMAND = "command"
    FUNCTION = "function"
    OTHER = "other"


class ApprovalDecision(StrEnum):
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class ErrorKind(StrEnum):
    """Every local failure that is reported back to the model."""

    MALFORMED_REQUEST = "MalformedRequest"
    UNKNOWN_CAPABILITY = "UnknownCapability"
    MISSING_REQUIRED_ARGUMENT = "MissingRequiredArgument"
    TYPE_MISMATCH = "TypeMismatch"
    UNEXPECTED_ARGUMENT = "UnexpectedArgument"
    APPROVAL_DENIED = "ApprovalDenied"
    APPROVAL_CANCELLED = "ApprovalCancelled"
    TIMEOUT = "Timeout"
    NON_ZERO_EXIT = "NonZeroExit"
    INTERNAL_EXCEPTION = "InternalException"
    CANCELLED = "Cancelled"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class SourceSpan:
    """Half-open character range inside one model output."""

    start: int
    end: int

    def slice(self, text: str) -> str:
        return text[self.start : self.end]


@dataclass(frozen=True)
class ArgumentSpec:
    """One declared capability argument."""

    name: str
    type: ArgType = ArgType.STRING
    required: bool = True
    description: str = ""
    default: Any = None


@dataclass(frozen=True)
class CommandTemplate:
    """How typed arguments are projected onto an external process."""

    argv: tuple[str, ...]
    stdin: str | None = None  # argument name fed to stdin
    cwd: str | None = None
    env: Mapping[str, str] | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))
        if not self.argv:
            raise ValueError("command template needs at least one argv element")


@dataclass(frozen=True)
class Capability:
    """A named, schema-described unit of external behavior."""

    name: str
    description: str = ""
    input_schema: tuple[ArgumentSpec, ...] = ()
    requires_approval: bool = False
    executor_kind: ExecutorKind = ExecutorKind.FUNCTION
    parallel_safe: bool = False
    handler: Callable[..., Any] | None = field(default=None, compare=False, repr=False)
    command: CommandTemplate | None = None
    data: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("capability name must not be empty")
        object.__setattr__(self, "input_schema", tuple(self.input_schema))
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))
        names = [spec.name for spec in self.input_schema]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate argument names in schema of {self.name}")
        if self.executor_kind == ExecutorKind.FUNCTION and self.handler is None:
            raise ValueError(f"function capability {self.name} needs a handler")
        if self.executor_kind == ExecutorKind.COMMAND and self.command is None:
            raise ValueError(f"command capability {self.name} needs a command template")

    def argument(self, name: str) -> ArgumentSpec | None:
        for spec in self.input_schema:
            if spec.name == name:
                return spec
        return None


@dataclass(frozen=True)
class InvocationRequest:
    """A parsed, not-yet-validated ask to run a capability."""

    capability_name: str
    raw_arguments: Mapping[str, Any]
    source_span: SourceSpan
    sequence_index: int
    request_id: str
    raw_text: str = ""


@dataclass(frozen=True)
class MalformedRequest:
    """A structured block that could not be parsed."""

    reason: str
    raw_text: str
    source_span: SourceSpan
    sequence_index: int
    request_id: str
    capability_name: str | None = None


@dataclass(frozen=True)
class TypedValue:
    type: ArgType
    value: Any


class TypedArguments(Mapping[str, Any]):
    """Arguments that conform to a capability schema.

    Reads like a plain mapping of python values; ``typed`` exposes the
    declared type tag next to each value.
    """

    def __init__(self, values: Mapping[str, TypedValue] | None = None) -> None:
        self._values: dict[str, TypedValue] = dict(values or {})

    def __getitem__(self, key: str) -> Any:
        return self._values[key].value

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"TypedArguments({self.to_dict()!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TypedArguments):
            return self._values == other._values
        return super().__eq__(other)

    def typed(self, name: str) -> TypedValue:
        return self._values[name]

    def to_dict(self) -> dict[str, Any]:
        return {name: typed.value for name, typed in self._values.items()}


@dataclass(frozen=True)
class ValidatedRequest:
    """An invocation request whose arguments satisfy the capability schema."""

    request: InvocationRequest
    capability: Capability
    arguments: TypedArguments

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def capability_name(self) -> str:
        return self.capability.name


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of resolving one request, successful or not."""

    status: OutcomeStatus
    output: Any
    duration_ms: int = 0
    exit_code: int | None = None
    error_kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, output: Any, *, duration_ms: int = 0, exit_code: int | None = None) -> ExecutionOutcome:
        return cls(status=OutcomeStatus.SUCCESS, output=output, duration_ms=duration_ms, exit_code=exit_code)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        duration_ms: int = 0,
        exit_code: int | None = None,
    ) -> ExecutionOutcome:
        return cls(
            status=OutcomeStatus.ERROR,
            output=message,
            duration_ms=duration_ms,
            exit_code=exit_code,
            error_kind=kind,
        )


@dataclass(frozen=True)
class TurnOrigin:
    """Which invocation produced a tool-result turn."""

    request_id: str
    capability_name: str
    sequence_index: int
    status: OutcomeStatus
    error_kind: ErrorKind | None = None


@dataclass(frozen=True)
class Turn:
    """One atomic transcript entry."""

    role: Role
    content: str = ""
    origin: TurnOrigin | None = None
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if self.role == Role.TOOL_RESULT and self.origin is None:
            raise ValueError("tool-result turns need an origin")
        if self.role != Role.TOOL_RESULT and self.origin is not None:
            raise ValueError("only tool-result turns carry an origin")
