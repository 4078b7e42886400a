"""YAML capability and policy files."""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tack.approval import PolicyDocument
from tack.capabilities.registry import CapabilityRegistry
from tack.errors import CapabilityFileError
from tack.types import ArgType, ArgumentSpec, Capability, CommandTemplate, ExecutorKind


class ArgumentEntry(BaseModel):
    name: str
    type: ArgType = ArgType.STRING
    required: bool = True
    description: str = ""
    default: Any = None


class CommandEntry(BaseModel):
    argv: list[str] = Field(min_length=1)
    stdin: str | None = None
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)


class CapabilityEntry(BaseModel):
    """One capability as written in a capability file.

    ``command`` may be a bare argv list. ``handler`` is an import path of
    the form ``package.module:function``.
    """

    name: str = Field(min_length=1)
    description: str = ""
    requires_approval: bool = False
    parallel_safe: bool = False
    arguments: list[ArgumentEntry] = Field(default_factory=list)
    command: CommandEntry | None = None
    handler: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("command", mode="before")
    @classmethod
    def _argv_shorthand(cls, value: object) -> object:
        if isinstance(value, list):
            return {"argv": value}
        if isinstance(value, str):
            return {"argv": value.split()}
        return value

    @model_validator(mode="after")
    def _one_backend(self) -> CapabilityEntry:
        if (self.command is None) == (self.handler is None):
            raise ValueError("exactly one of command or handler is required")
        return self

    def to_capability(self) -> Capability:
        schema = tuple(
            ArgumentSpec(
                name=entry.name,
                type=entry.type,
                required=entry.required,
                description=entry.description,
                default=entry.default,
            )
            for entry in self.arguments
        )
        if self.command is not None:
            return Capability(
                name=self.name,
                description=self.description,
                input_schema=schema,
                requires_approval=self.requires_approval,
                executor_kind=ExecutorKind.COMMAND,
                parallel_safe=self.parallel_safe,
                command=CommandTemplate(
                    argv=tuple(self.command.argv),
                    stdin=self.command.stdin,
                    cwd=self.command.cwd,
                    env=self.command.env or None,
                    timeout_seconds=self.command.timeout_seconds,
                ),
                data=self.data,
            )
        return Capability(
            name=self.name,
            description=self.description,
            input_schema=schema,
            requires_approval=self.requires_approval,
            executor_kind=ExecutorKind.FUNCTION,
            parallel_safe=self.parallel_safe,
            handler=import_handler(self.handler or ""),
            data=self.data,
        )


class CapabilityFile(BaseModel):
    capabilities: list[CapabilityEntry] = Field(default_factory=list)


def import_handler(path: str) -> Any:
    module_name, separator, attribute = path.partition(":")
    if not separator or not module_name or not attribute:
        raise CapabilityFileError(f"handler must look like module:function, got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise CapabilityFileError(f"cannot import handler module {module_name}: {exc!s}") from exc
    handler = getattr(module, attribute, None)
    if not callable(handler):
        raise CapabilityFileError(f"handler {path} is not callable")
    return handler


def _read_yaml(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CapabilityFileError(f"cannot read {path}: {exc!s}") from exc
    try:
        return yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise CapabilityFileError(f"invalid YAML in {path}: {exc!s}") from exc


def load_capabilities(path: Path) -> list[Capability]:
    raw = _read_yaml(path)
    try:
        document = CapabilityFile.model_validate(raw)
        capabilities = [entry.to_capability() for entry in document.capabilities]
    except (ValidationError, ValueError) as exc:
        raise CapabilityFileError(f"invalid capability file {path}: {exc!s}") from exc
    logger.info("capabilities.loaded path={} count={}", path, len(capabilities))
    return capabilities


def register_file(registry: CapabilityRegistry, path: Path) -> int:
    capabilities = load_capabilities(path)
    for capability in capabilities:
        registry.register(capability)
    return len(capabilities)


def load_policy(path: Path) -> PolicyDocument:
    raw = _read_yaml(path)
    try:
        return PolicyDocument.model_validate(raw)
    except ValidationError as exc:
        raise CapabilityFileError(f"invalid policy file {path}: {exc!s}") from exc
