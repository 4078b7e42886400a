"""Builtin capabilities."""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from tack.capabilities.registry import CapabilityRegistry
from tack.capabilities.schema import schema_from_model
from tack.executors.base import ExecutionContext
from tack.types import Capability, CommandTemplate, ExecutorKind, TypedArguments

InputT = TypeVar("InputT", bound=BaseModel)

MAX_GLOB_MATCHES = 200


class EchoInput(BaseModel):
    """Return the given text unchanged."""

    text: str = Field(..., description="Text to echo back")


class ReadInput(BaseModel):
    """Read a file with optional offset and limit."""

    path: str = Field(..., description="Path to the file")
    offset: int = Field(default=0, description="Line offset (0-based)")
    limit: int | None = Field(default=None, description="Maximum number of lines to read")


class WriteInput(BaseModel):
    """Write content to a file."""

    path: str = Field(..., description="Path to the file")
    content: str = Field(..., description="File contents")


class GlobInput(BaseModel):
    """Find files matching a glob pattern."""

    pattern: str = Field(..., description="Glob pattern")
    path: str = Field(default=".", description="Base path")


class BashInput(BaseModel):
    """Run a shell command."""

    cmd: str = Field(..., description="Shell command to run")


def function_capability(
    model: type[InputT],
    handler: Callable[[InputT, ExecutionContext], Any],
    *,
    name: str,
    description: str | None = None,
    requires_approval: bool = False,
    parallel_safe: bool = False,
    data: Mapping[str, Any] | None = None,
) -> Capability:
    """Build a function capability whose arguments are parsed into ``model``."""

    if inspect.iscoroutinefunction(handler):

        async def _call(arguments: TypedArguments, context: ExecutionContext) -> Any:
            return await handler(model.model_validate(arguments.to_dict()), context)

    else:

        def _call(arguments: TypedArguments, context: ExecutionContext) -> Any:
            return handler(model.model_validate(arguments.to_dict()), context)

    return Capability(
        name=name,
        description=description if description is not None else (model.__doc__ or "").strip(),
        input_schema=schema_from_model(model),
        requires_approval=requires_approval,
        executor_kind=ExecutorKind.FUNCTION,
        parallel_safe=parallel_safe,
        handler=_call,
        data=data or {},
    )


def resolve_path(context: ExecutionContext, raw_path: str) -> Path:
    path = Path(raw_path).expanduser()
    if path.is_absolute():
        return path
    return Path(context.data.get("workspace", ".")) / path


def _echo(params: EchoInput, context: ExecutionContext) -> str:
    return params.text


def _read(params: ReadInput, context: ExecutionContext) -> str:
    lines = resolve_path(context, params.path).read_text(encoding="utf-8").splitlines()
    offset = max(params.offset, 0)
    limit = len(lines) if params.limit is None else max(params.limit, 0)
    selected = lines[offset : offset + limit]
    return "\n".join(f"{idx:4}| {line}" for idx, line in enumerate(selected, start=offset + 1))


def _write(params: WriteInput, context: ExecutionContext) -> str:
    file_path = resolve_path(context, params.path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(params.content, encoding="utf-8")
    return f"wrote {len(params.content)} chars to {file_path}"


def _glob(params: GlobInput, context: ExecutionContext) -> str:
    base = resolve_path(context, params.path)
    matches: list[str] = []
    for path in sorted(base.glob(params.pattern)):
        if context.cancelled:
            break
        matches.append(str(path.relative_to(base)))
        if len(matches) >= MAX_GLOB_MATCHES:
            break
    context.progress.report(100)
    return "\n".join(matches) if matches else "none"


def builtin_capabilities(workspace: Path, *, command_timeout_seconds: float | None = None) -> list[Capability]:
    data = {"workspace": str(workspace)}
    return [
        function_capability(EchoInput, _echo, name="echo", parallel_safe=True),
        function_capability(ReadInput, _read, name="fs.read", parallel_safe=True, data=data),
        function_capability(GlobInput, _glob, name="fs.glob", parallel_safe=True, data=data),
        function_capability(WriteInput, _write, name="fs.write", requires_approval=True, data=data),
        Capability(
            name="bash",
            description="Run a shell command in the workspace",
            input_schema=schema_from_model(BashInput),
            requires_approval=True,
            executor_kind=ExecutorKind.COMMAND,
            command=CommandTemplate(
                argv=("bash", "-lc", "{cmd}"),
                cwd=str(workspace),
                timeout_seconds=command_timeout_seconds,
            ),
        ),
    ]


def register_builtins(
    registry: CapabilityRegistry,
    workspace: Path,
    *,
    command_timeout_seconds: float | None = None,
) -> None:
    for capability in builtin_capabilities(workspace, command_timeout_seconds=command_timeout_seconds):
        registry.register(capability)
