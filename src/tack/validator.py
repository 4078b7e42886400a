"""Schema validation of invocation requests."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger

from tack.capabilities.registry import CapabilityRegistry
from tack.types import (
    ArgType,
    ArgumentSpec,
    ErrorKind,
    InvocationRequest,
    TypedArguments,
    TypedValue,
    ValidatedRequest,
)

INTEGER_RE = re.compile(r"[+-]?\d+", re.ASCII)
NUMBER_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)
BOOLEAN_STRINGS = {"true": True, "false": False}


class ArgumentPolicy(StrEnum):
    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(frozen=True)
class ValidationError:
    """Why a request does not satisfy its capability schema."""

    kind: ErrorKind
    message: str
    request: InvocationRequest
    argument: str | None = None


class _Mismatch(ValueError):
    pass


class Validator:
    """Checks extracted requests against the registry's declared schemas.

    Checks run in a fixed order (unknown capability, then declared arguments
    in schema order, then undeclared arguments in request order), so the same
    input always yields the same verdict.
    """

    def __init__(self, *, argument_policy: ArgumentPolicy = ArgumentPolicy.STRICT) -> None:
        self._argument_policy = argument_policy

    @property
    def argument_policy(self) -> ArgumentPolicy:
        return self._argument_policy

    def validate(self, request: InvocationRequest, registry: CapabilityRegistry) -> ValidatedRequest | ValidationError:
        capability = registry.get(request.capability_name)
        if capability is None:
            message = f"unknown capability: {request.capability_name}"
            suggestion = registry.suggest(request.capability_name)
            if suggestion is not None:
                message += f" (did you mean {suggestion}?)"
            return ValidationError(ErrorKind.UNKNOWN_CAPABILITY, message, request)

        raw = dict(request.raw_arguments)
        typed: dict[str, TypedValue] = {}
        for spec in capability.input_schema:
            value = raw.get(spec.name)
            if value is None:
                if spec.required:
                    return ValidationError(
                        ErrorKind.MISSING_REQUIRED_ARGUMENT,
                        f"{capability.name}: missing required argument '{spec.name}'",
                        request,
                        spec.name,
                    )
                if spec.default is not None:
                    typed[spec.name] = TypedValue(spec.type, spec.default)
                continue
            try:
                typed[spec.name] = TypedValue(spec.type, coerce(spec, value))
            except _Mismatch as exc:
                return ValidationError(
                    ErrorKind.TYPE_MISMATCH,
                    f"{capability.name}: argument '{spec.name}' {exc}",
                    request,
                    spec.name,
                )

        unexpected = [name for name in raw if capability.argument(name) is None]
        if unexpected:
            if self._argument_policy == ArgumentPolicy.STRICT:
                return ValidationError(
                    ErrorKind.UNEXPECTED_ARGUMENT,
                    f"{capability.name}: unexpected argument '{unexpected[0]}'",
                    request,
                    unexpected[0],
                )
            logger.warning(
                "validator.drop_unexpected capability={} args={}",
                capability.name,
                ",".join(unexpected),
            )

        return ValidatedRequest(request=request, capability=capability, arguments=TypedArguments(typed))


def coerce(spec: ArgumentSpec, value: Any) -> Any:
    """Coerce one raw value to the declared type, without widening."""

    try:
        if isinstance(value, str):
            return _coerce_string(spec.type, value)
        return _check_json_value(spec.type, value)
    except _Mismatch:
        raise
    except (ValueError, OverflowError, RecursionError) as exc:
        raise _Mismatch(f"expects {spec.type}, got a value out of range: {type(exc).__name__}") from None


def _coerce_string(arg_type: ArgType, value: str) -> Any:
    if arg_type == ArgType.STRING:
        return value
    text = value.strip()
    if arg_type == ArgType.INTEGER:
        if INTEGER_RE.fullmatch(text) is None:
            raise _Mismatch(f"expects an integer, got {value!r}")
        return int(text)
    if arg_type == ArgType.NUMBER:
        if NUMBER_RE.fullmatch(text) is None:
            raise _Mismatch(f"expects a number, got {value!r}")
        number = float(text)
        if not math.isfinite(number):
            raise _Mismatch(f"expects a finite number, got {value!r}")
        return int(text) if INTEGER_RE.fullmatch(text) else number
    if arg_type == ArgType.BOOLEAN:
        flag = BOOLEAN_STRINGS.get(text.lower())
        if flag is None:
            raise _Mismatch(f"expects true or false, got {value!r}")
        return flag
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        raise _Mismatch(f"expects a JSON {arg_type}, got {value!r}") from None
    return _check_json_value(arg_type, parsed)


def _check_json_value(arg_type: ArgType, value: Any) -> Any:
    if arg_type == ArgType.STRING:
        if isinstance(value, str):
            return value
    elif arg_type == ArgType.INTEGER:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif arg_type == ArgType.NUMBER:
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            return value
    elif arg_type == ArgType.BOOLEAN:
        if isinstance(value, bool):
            return value
    elif arg_type == ArgType.ARRAY:
        if isinstance(value, list):
            return value
    elif arg_type == ArgType.OBJECT:
        if isinstance(value, dict):
            return value
    raise _Mismatch(f"expects {arg_type}, got {type(value).__name__}")
