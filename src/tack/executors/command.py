"""Out-of-process command executor."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import signal
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from loguru import logger

from tack.errors import ExecutionInterrupted
from tack.executors.base import ExecutionContext, elapsed_ms, run_interruptible
from tack.types import CommandTemplate, ErrorKind, ExecutionOutcome, TypedArguments

PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][\w.-]*)\}")
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_OUTPUT_CHARS = 50_000
TRUNCATED_MARKER = "\n[output truncated]"
READ_CHUNK_BYTES = 65536


class CommandProjectionError(ValueError):
    """Raised when typed arguments cannot be projected onto a command line."""


class CommandExecutor:
    """Runs an external process built from a capability's command template."""

    def __init__(
        self,
        *,
        workspace: Path | None = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        self._workspace = workspace
        self._default_timeout_seconds = default_timeout_seconds
        self._max_output_chars = max_output_chars

    async def execute(self, arguments: TypedArguments, context: ExecutionContext) -> ExecutionOutcome:
        start = time.monotonic()
        template = context.capability.command
        if template is None:
            return ExecutionOutcome.failure(
                ErrorKind.INTERNAL_EXCEPTION,
                f"capability {context.capability.name} has no command template",
            )

        try:
            argv = project_argv(template, arguments)
            stdin_data = _stdin_payload(template, arguments)
        except CommandProjectionError as exc:
            return ExecutionOutcome.failure(ErrorKind.INTERNAL_EXCEPTION, str(exc), duration_ms=elapsed_ms(start))

        cwd = self._resolve_cwd(template)
        timeout = template.timeout_seconds or context.timeout_seconds or self._default_timeout_seconds
        logger.info("command.start name={} argv={} cwd={}", context.capability.name, argv, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=_merge_env(template.env),
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            return ExecutionOutcome.failure(
                ErrorKind.INTERNAL_EXCEPTION,
                f"failed to start {argv[0]}: {exc!s}",
                duration_ms=elapsed_ms(start),
            )

        async def _terminate() -> None:
            await _kill(process)

        try:
            stdout, stderr = await run_interruptible(
                _communicate(process, stdin_data, context),
                cancel=context.cancel,
                timeout=timeout,
                on_interrupt=_terminate,
            )
        except asyncio.CancelledError:
            logger.warning("command.abandoned name={} pid={}", context.capability.name, process.pid)
            await asyncio.shield(_kill(process))
            raise
        except ExecutionInterrupted as exc:
            logger.warning("command.interrupted name={} kind={} pid={}", context.capability.name, exc.kind, process.pid)
            return ExecutionOutcome.failure(
                exc.kind,
                str(exc),
                duration_ms=elapsed_ms(start),
                exit_code=process.returncode,
            )

        returncode = await process.wait()
        output = self._truncate((stdout + stderr).strip())
        duration = elapsed_ms(start)
        logger.info("command.end name={} exit={} duration={}ms", context.capability.name, returncode, duration)
        if returncode != 0:
            detail = output or "(empty)"
            return ExecutionOutcome.failure(
                ErrorKind.NON_ZERO_EXIT,
                f"exit={returncode}\n{detail}",
                duration_ms=duration,
                exit_code=returncode,
            )
        return ExecutionOutcome.success(output, duration_ms=duration, exit_code=returncode)

    def _resolve_cwd(self, template: CommandTemplate) -> str | None:
        if template.cwd is None:
            return str(self._workspace) if self._workspace is not None else None
        path = Path(template.cwd).expanduser()
        if not path.is_absolute() and self._workspace is not None:
            path = self._workspace / path
        return str(path)

    def _truncate(self, text: str) -> str:
        if len(text) <= self._max_output_chars:
            return text
        return text[: self._max_output_chars] + TRUNCATED_MARKER


def project_argv(template: CommandTemplate, arguments: TypedArguments) -> list[str]:
    """Render each argv element separately; no shell is involved."""

    argv: list[str] = []
    for element in template.argv:
        whole = PLACEHOLDER_RE.fullmatch(element)
        if whole is not None and whole.group(1) not in arguments:
            continue

        def _substitute(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in arguments:
                raise CommandProjectionError(f"missing value for placeholder {{{name}}}")
            return render_value(arguments[name])

        argv.append(PLACEHOLDER_RE.sub(_substitute, element))
    if not argv:
        raise CommandProjectionError("command line is empty after projection")
    return argv


def render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _stdin_payload(template: CommandTemplate, arguments: TypedArguments) -> bytes | None:
    if template.stdin is None:
        return None
    if template.stdin not in arguments:
        return b""
    return render_value(arguments[template.stdin]).encode("utf-8")


def _merge_env(extra: Mapping[str, str] | None) -> dict[str, str] | None:
    if not extra:
        return None
    env = dict(os.environ)
    env.update({key: str(value) for key, value in extra.items()})
    return env


async def _communicate(
    process: asyncio.subprocess.Process,
    stdin_data: bytes | None,
    context: ExecutionContext,
) -> tuple[str, str]:
    if stdin_data is not None and process.stdin is not None:
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            process.stdin.write(stdin_data)
            await process.stdin.drain()
        process.stdin.close()

    stdout, stderr = await asyncio.gather(
        _read_stream(process.stdout, context, report=True),
        _read_stream(process.stderr, context, report=False),
    )
    await process.wait()
    return stdout, stderr


async def _read_stream(
    stream: asyncio.StreamReader | None,
    context: ExecutionContext,
    *,
    report: bool,
) -> str:
    if stream is None:
        return ""
    chunks: list[bytes] = []
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        chunks.append(chunk)
        if report:
            context.progress.advance(max(1, chunk.count(b"\n")))
    return b"".join(chunks).decode("utf-8", errors="replace")


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        return
    await process.wait()
