import asyncio
import os
import threading
from pathlib import Path
from typing import Any

import pytest

from tack.executors import CancellationToken, CommandExecutor, ExecutionContext, FunctionExecutor, ProgressReporter
from tack.executors.base import ProgressEvent
from tack.executors.command import CommandProjectionError, project_argv, render_value
from tack.types import (
    ArgType,
    ArgumentSpec,
    Capability,
    CommandTemplate,
    ErrorKind,
    ExecutorKind,
    TypedArguments,
    TypedValue,
)


def _args(**values: Any) -> TypedArguments:
    return TypedArguments({name: TypedValue(ArgType.STRING, value) for name, value in values.items()})


def _command(argv: tuple[str, ...], **template: Any) -> Capability:
    return Capability(
        name="cmd",
        input_schema=(ArgumentSpec("text", required=False),),
        executor_kind=ExecutorKind.COMMAND,
        command=CommandTemplate(argv=argv, **template),
    )


def _context(
    capability: Capability,
    *,
    cancel: CancellationToken | None = None,
    events: list[ProgressEvent] | None = None,
    timeout_seconds: float | None = None,
) -> ExecutionContext:
    listener = events.append if events is not None else None
    return ExecutionContext(
        capability=capability,
        request_id="r1.0",
        cancel=cancel or CancellationToken(),
        progress=ProgressReporter("r1.0", capability.name, listener),
        timeout_seconds=timeout_seconds,
    )


def test_project_argv_substitutes_per_element() -> None:
    template = CommandTemplate(argv=("grep", "-n", "{pattern}", "--", "{path}", "{optional}"))
    arguments = TypedArguments(
        {"pattern": TypedValue(ArgType.STRING, "a b; rm -rf /"), "path": TypedValue(ArgType.STRING, "x.txt")}
    )

    assert project_argv(template, arguments) == ["grep", "-n", "a b; rm -rf /", "--", "x.txt"]


def test_project_argv_requires_embedded_placeholders() -> None:
    template = CommandTemplate(argv=("echo", "--name={name}"))

    with pytest.raises(CommandProjectionError):
        project_argv(template, TypedArguments())


def test_render_value() -> None:
    assert render_value(True) == "true"
    assert render_value(3) == "3"
    assert render_value(["a", 1]) == '["a", 1]'
    assert render_value({"k": "v"}) == '{"k": "v"}'


@pytest.mark.asyncio
async def test_command_captures_stdout(tmp_path: Path) -> None:
    capability = _command(("echo", "{text}"))
    executor = CommandExecutor(workspace=tmp_path)

    outcome = await executor.execute(_args(text="hello world"), _context(capability))

    assert outcome.ok
    assert outcome.output == "hello world"
    assert outcome.exit_code == 0


@pytest.mark.asyncio
async def test_command_feeds_stdin(tmp_path: Path) -> None:
    capability = _command(("cat",), stdin="text")

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(text="piped"), _context(capability))

    assert outcome.output == "piped"


@pytest.mark.asyncio
async def test_command_runs_in_workspace(tmp_path: Path) -> None:
    capability = _command(("pwd",))

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability))

    assert Path(outcome.output).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_command_non_zero_exit(tmp_path: Path) -> None:
    capability = _command(("sh", "-c", "echo broken >&2; exit 3"))

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability))

    assert not outcome.ok
    assert outcome.error_kind == ErrorKind.NON_ZERO_EXIT
    assert outcome.exit_code == 3
    assert outcome.output == "exit=3\nbroken"


@pytest.mark.asyncio
async def test_command_timeout_kills_process(tmp_path: Path) -> None:
    capability = _command(("sleep", "5"), timeout_seconds=0.2)

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability))

    assert outcome.error_kind == ErrorKind.TIMEOUT
    assert outcome.exit_code is not None
    assert outcome.exit_code < 0
    assert outcome.duration_ms < 5000


@pytest.mark.asyncio
async def test_command_cancel(tmp_path: Path) -> None:
    capability = _command(("sleep", "5"))
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.1, token.cancel, "stop")

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability, cancel=token))

    assert outcome.error_kind == ErrorKind.CANCELLED
    assert "stop" in outcome.output


@pytest.mark.asyncio
async def test_cancelled_task_kills_running_command(tmp_path: Path) -> None:
    capability = _command(("sh", "-c", "echo $$ > pid; exec sleep 30"))
    task = asyncio.create_task(CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability)))
    pid_file = tmp_path / "pid"
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text().strip():
            break
        await asyncio.sleep(0.01)
    pid = int(pid_file.read_text().strip())

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_command_output_is_truncated(tmp_path: Path) -> None:
    capability = _command(("sh", "-c", "head -c 500 /dev/zero | tr '\\0' a"))

    outcome = await CommandExecutor(workspace=tmp_path, max_output_chars=100).execute(_args(), _context(capability))

    assert outcome.output == "a" * 100 + "\n[output truncated]"


@pytest.mark.asyncio
async def test_command_missing_executable(tmp_path: Path) -> None:
    capability = _command(("definitely-not-a-real-binary-xyz",))

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability))

    assert outcome.error_kind == ErrorKind.INTERNAL_EXCEPTION
    assert outcome.output.startswith("failed to start definitely-not-a-real-binary-xyz")


@pytest.mark.asyncio
async def test_command_reports_progress(tmp_path: Path) -> None:
    events: list[ProgressEvent] = []
    capability = _command(("printf", "a\\nb\\nc\\n"))

    outcome = await CommandExecutor(workspace=tmp_path).execute(_args(), _context(capability, events=events))

    assert outcome.ok
    assert sum(event.increment for event in events) == 3
    assert all(event.request_id == "r1.0" for event in events)


def _function(handler: Any) -> Capability:
    return Capability(name="fn", input_schema=(ArgumentSpec("text", required=False),), handler=handler, data={"k": 1})


@pytest.mark.asyncio
async def test_function_sync_handler_runs_off_loop() -> None:
    loop_thread = threading.get_ident()

    def handler(arguments: TypedArguments, context: ExecutionContext) -> dict[str, Any]:
        return {"text": arguments["text"], "same_thread": threading.get_ident() == loop_thread}

    outcome = await FunctionExecutor().execute(_args(text="hi"), _context(_function(handler)))

    assert outcome.ok
    assert outcome.output == {"text": "hi", "same_thread": False}


@pytest.mark.asyncio
async def test_function_async_handler() -> None:
    async def handler(arguments: TypedArguments, context: ExecutionContext) -> str:
        await asyncio.sleep(0)
        return f"{arguments['text']}:{context.data['k']}"

    outcome = await FunctionExecutor().execute(_args(text="x"), _context(_function(handler)))

    assert outcome.output == "x:1"


@pytest.mark.asyncio
async def test_function_exception_becomes_outcome() -> None:
    def handler(arguments: TypedArguments, context: ExecutionContext) -> str:
        raise ValueError("bad input")

    outcome = await FunctionExecutor().execute(_args(), _context(_function(handler)))

    assert outcome.error_kind == ErrorKind.INTERNAL_EXCEPTION
    assert outcome.output == "ValueError: bad input"


@pytest.mark.asyncio
async def test_function_timeout() -> None:
    async def handler(arguments: TypedArguments, context: ExecutionContext) -> str:
        await asyncio.sleep(5)
        return "late"

    outcome = await FunctionExecutor().execute(_args(), _context(_function(handler), timeout_seconds=0.05))

    assert outcome.error_kind == ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_function_can_poll_cancellation_and_report_progress() -> None:
    events: list[ProgressEvent] = []
    token = CancellationToken()

    def handler(arguments: TypedArguments, context: ExecutionContext) -> bool:
        context.progress.report(150, "over")
        return context.cancelled

    outcome = await FunctionExecutor().execute(_args(), _context(_function(handler), cancel=token, events=events))

    assert outcome.output is False
    assert [event.value for event in events] == [100.0]


def test_context_data_is_read_only() -> None:
    context = _context(_function(lambda arguments, context: None))

    with pytest.raises(TypeError):
        context.data["k"] = 2  # type: ignore[index]


def test_child_token_follows_parent() -> None:
    parent = CancellationToken()
    child = parent.child()
    seen: list[str] = []
    child.on_cancel(lambda: seen.append(child.reason))

    parent.cancel("shutdown")
    parent.cancel("again")

    assert child.cancelled
    assert seen == ["shutdown"]
    assert parent.reason == "shutdown"
