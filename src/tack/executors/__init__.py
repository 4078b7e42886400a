"""Executor backends for capability kinds."""

from tack.executors.base import (
    CancellationToken,
    ExecutionContext,
    Executor,
    ProgressEvent,
    ProgressListener,
    ProgressReporter,
)
from tack.executors.command import CommandExecutor
from tack.executors.function import FunctionExecutor

__all__ = [
    "CancellationToken",
    "CommandExecutor",
    "ExecutionContext",
    "Executor",
    "FunctionExecutor",
    "ProgressEvent",
    "ProgressListener",
    "ProgressReporter",
]
