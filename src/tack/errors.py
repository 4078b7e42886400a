"""Application-level exception types for tack."""

from __future__ import annotations

from tack.types import ErrorKind


class TackError(Exception):
    """Base exception for tack."""


class ConfigurationError(TackError):
    """Base exception for configuration and startup validation errors."""


class ModelNotConfiguredError(ConfigurationError):
    """Raised when model configuration is missing."""


class InvalidModelFormatError(ConfigurationError):
    """Raised when model format is not provider:model."""


class CapabilityFileError(ConfigurationError):
    """Raised when a capability or policy file cannot be loaded."""


class RegistryError(TackError):
    """Base exception for capability registry misuse."""


class DuplicateCapabilityError(RegistryError):
    """Raised when a capability name is registered twice."""


class RegistryFrozenError(RegistryError):
    """Raised when registering after a session started processing turns."""


class CapabilityNotFoundError(RegistryError, KeyError):
    """Raised when a capability lookup misses."""


class BudgetExhaustedError(TackError):
    """Raised when a run budget counter is consumed past zero."""

    def __init__(self, counter: str) -> None:
        super().__init__(f"budget exhausted: {counter}")
        self.counter = counter


class TransportFailureError(TackError):
    """Raised when communication with the model collaborator is lost."""


class ExecutionInterrupted(TackError):
    """Raised inside executors when a step times out or is cancelled."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
