"""Capability argument schemas."""

from __future__ import annotations

import types
from typing import Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel

from tack.types import ArgType, ArgumentSpec, Capability

_PYTHON_TYPES: dict[type, ArgType] = {
    str: ArgType.STRING,
    int: ArgType.INTEGER,
    float: ArgType.NUMBER,
    bool: ArgType.BOOLEAN,
    list: ArgType.ARRAY,
    tuple: ArgType.ARRAY,
    set: ArgType.ARRAY,
    dict: ArgType.OBJECT,
}

_JSON_TYPES: dict[ArgType, str] = {
    ArgType.STRING: "string",
    ArgType.INTEGER: "integer",
    ArgType.NUMBER: "number",
    ArgType.BOOLEAN: "boolean",
    ArgType.ARRAY: "array",
    ArgType.OBJECT: "object",
}


def arg_type_for(annotation: Any) -> ArgType:
    """Map a python annotation onto an argument type."""

    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        members = [member for member in get_args(annotation) if member is not type(None)]
        if len(members) == 1:
            return arg_type_for(members[0])
        raise TypeError(f"unsupported union annotation: {annotation!r}")
    if origin is Literal:
        values = get_args(annotation)
        return arg_type_for(type(values[0])) if values else ArgType.STRING
    if origin is not None:
        return arg_type_for(origin)
    if isinstance(annotation, type):
        for python_type, arg_type in _PYTHON_TYPES.items():
            # bool is a subclass of int, so exact matches win.
            if annotation is python_type:
                return arg_type
        for python_type, arg_type in _PYTHON_TYPES.items():
            if issubclass(annotation, python_type):
                return arg_type
    raise TypeError(f"unsupported argument annotation: {annotation!r}")


def schema_from_model(model: type[BaseModel]) -> tuple[ArgumentSpec, ...]:
    """Derive an argument schema from a pydantic input model."""

    specs: list[ArgumentSpec] = []
    for name, info in model.model_fields.items():
        default = None if info.is_required() else info.get_default()
        specs.append(
            ArgumentSpec(
                name=info.alias or name,
                type=arg_type_for(info.annotation),
                required=info.is_required(),
                description=info.description or "",
                default=default,
            )
        )
    return tuple(specs)


def json_schema(capability: Capability) -> dict[str, Any]:
    """Render the capability schema as a JSON-schema object for advertisement."""

    properties: dict[str, Any] = {}
    required: list[str] = []
    for spec in capability.input_schema:
        prop: dict[str, Any] = {"type": _JSON_TYPES[spec.type]}
        if spec.description:
            prop["description"] = spec.description
        if not spec.required and spec.default is not None:
            prop["default"] = spec.default
        properties[spec.name] = prop
        if spec.required:
            required.append(spec.name)
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema
