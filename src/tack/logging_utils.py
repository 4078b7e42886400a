"""Runtime logging helpers."""

from __future__ import annotations

import contextvars
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging import Handler
from typing import Literal

import loguru
from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "console"]

_PROFILE_FORMATS: dict[LogProfile, str] = {
    "console": "{extra[session]} | {message}",
    "default": "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<6} | {name}:{function}:{line} | {extra[session]} | {message}",
}
_CONFIGURED_PROFILE: LogProfile | None = None
_current_session: contextvars.ContextVar[str] = contextvars.ContextVar("tack_session", default="-")


def current_session() -> str:
    return _current_session.get()


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``session_id``."""

    token = _current_session.set(session_id)
    try:
        yield
    finally:
        _current_session.reset(token)


def _inject_context(record: loguru.Record) -> None:
    record["extra"]["session"] = current_session()


def _build_console_handler() -> Handler:
    return RichHandler(
        console=get_console(),
        show_level=True,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Configure process-level logging once per profile."""

    global _CONFIGURED_PROFILE
    if profile == _CONFIGURED_PROFILE:
        return

    resolved_level = (level or os.getenv("TACK_LOG_LEVEL", "INFO")).upper()
    logger.remove()
    logger.configure(patcher=_inject_context)
    if profile == "console":
        logger.add(
            _build_console_handler(),
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    else:
        logger.add(
            sys.stderr,
            level=resolved_level,
            format=_PROFILE_FORMATS[profile],
            backtrace=False,
            diagnose=False,
        )
    _CONFIGURED_PROFILE = profile
