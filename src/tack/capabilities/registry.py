"""Capability registry."""

from __future__ import annotations

import builtins
import json
import threading

from loguru import logger
from rapidfuzz import fuzz, process

from tack.capabilities.schema import json_schema
from tack.errors import CapabilityNotFoundError, DuplicateCapabilityError, RegistryFrozenError
from tack.types import Capability

MIN_SUGGESTION_SCORE = 75


class CapabilityRegistry:
    """Holds every invocable capability, in registration order.

    The registry is frozen when a session starts processing turns. After that
    it is read-only and can be shared by concurrent sessions.
    """

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        with self._lock:
            if not self._frozen:
                logger.debug("registry.freeze capabilities={}", len(self._capabilities))
            self._frozen = True

    def register(self, capability: Capability) -> None:
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"registry is frozen, cannot register {capability.name}")
            if capability.name in self._capabilities:
                raise DuplicateCapabilityError(capability.name)
            self._capabilities[capability.name] = capability
        logger.debug("registry.register name={} kind={}", capability.name, capability.executor_kind)

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def lookup(self, name: str) -> Capability:
        capability = self._capabilities.get(name)
        if capability is None:
            raise CapabilityNotFoundError(name)
        return capability

    def list(self) -> builtins.list[Capability]:
        return builtins.list(self._capabilities.values())

    def names(self) -> builtins.list[str]:
        return builtins.list(self._capabilities)

    def suggest(self, name: str) -> str | None:
        """Return the closest registered name for a misspelled one."""

        if not name or not self._capabilities:
            return None
        best_match = process.extractOne(
            name,
            self.names(),
            scorer=fuzz.WRatio,
            score_cutoff=MIN_SUGGESTION_SCORE,
        )
        if best_match is None:
            return None
        return str(best_match[0])

    def compact_rows(self) -> builtins.list[str]:
        rows: builtins.list[str] = []
        for capability in self.list():
            flags = []
            if capability.requires_approval:
                flags.append("approval")
            if capability.parallel_safe:
                flags.append("parallel")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            rows.append(f"{capability.name}: {capability.description}{suffix}")
        return rows

    def detail(self, name: str) -> str:
        capability = self.lookup(name)
        return (
            f"name: {capability.name}\n"
            f"kind: {capability.executor_kind}\n"
            f"description: {capability.description}\n"
            f"requires_approval: {str(capability.requires_approval).lower()}\n"
            f"schema: {json.dumps(json_schema(capability), ensure_ascii=False)}"
        )
