"""Capability registry, schemas and sources."""

from tack.capabilities.builtin import builtin_capabilities, function_capability, register_builtins
from tack.capabilities.loader import load_capabilities, load_policy, register_file
from tack.capabilities.registry import CapabilityRegistry
from tack.capabilities.schema import json_schema, schema_from_model

__all__ = [
    "CapabilityRegistry",
    "builtin_capabilities",
    "function_capability",
    "json_schema",
    "load_capabilities",
    "load_policy",
    "register_builtins",
    "register_file",
    "schema_from_model",
]
