"""Approval gate in front of side-effecting capabilities."""

from __future__ import annotations

import fnmatch
import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from tack.errors import ExecutionInterrupted
from tack.executors.base import CancellationToken, run_interruptible
from tack.types import ApprovalDecision, Capability, ErrorKind, ValidatedRequest

MAX_SUMMARY_VALUE_CHARS = 200


class ApprovalMode(StrEnum):
    PER_CAPABILITY = "per_capability"
    AUTO_APPROVE = "auto_approve"
    ALWAYS_ASK = "always_ask"


class ApprovalPolicy(BaseModel):
    """Which requests need an external decision before they run."""

    model_config = ConfigDict(frozen=True)

    mode: ApprovalMode = ApprovalMode.PER_CAPABILITY
    overrides: dict[str, bool] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)

    def requires_approval(self, capability: Capability) -> bool:
        if self.mode == ApprovalMode.AUTO_APPROVE:
            return False
        if self.mode == ApprovalMode.ALWAYS_ASK:
            return True
        return self.overrides.get(capability.name, capability.requires_approval)


@dataclass(frozen=True)
class ApprovalRequest:
    """What an approver gets to look at."""

    request_id: str
    capability_name: str
    arguments: dict[str, Any]
    description: str = ""

    @classmethod
    def from_validated(cls, validated: ValidatedRequest) -> ApprovalRequest:
        return cls(
            request_id=validated.request_id,
            capability_name=validated.capability_name,
            arguments=validated.arguments.to_dict(),
            description=validated.capability.description,
        )

    @property
    def summary(self) -> str:
        rendered = ", ".join(f"{key}={_summary_value(value)}" for key, value in self.arguments.items())
        return f"{self.capability_name}({rendered})"


@dataclass(frozen=True)
class ApprovalResponse:
    decision: ApprovalDecision
    reason: str = ""

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED

    @classmethod
    def approve(cls, reason: str = "") -> ApprovalResponse:
        return cls(ApprovalDecision.APPROVED, reason)

    @classmethod
    def deny(cls, reason: str = "") -> ApprovalResponse:
        return cls(ApprovalDecision.DENIED, reason)

    @classmethod
    def cancel(cls, reason: str = "") -> ApprovalResponse:
        return cls(ApprovalDecision.CANCELLED, reason)


class Approver(Protocol):
    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse: ...


class AutoApprover:
    """Approves everything; for trusted automation."""

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        return ApprovalResponse.approve("auto-approved")


class PolicyRule(BaseModel):
    capability: str
    decision: Literal["approve", "deny"]
    reason: str = ""


class PolicyDocument(BaseModel):
    """Rules read from a policy file; first matching rule wins."""

    default: Literal["approve", "deny"] = "deny"
    reason: str = "no policy rule matched"
    rules: list[PolicyRule] = Field(default_factory=list)


@dataclass
class PolicyFileApprover:
    """Answers approval requests from fnmatch rules."""

    document: PolicyDocument = field(default_factory=PolicyDocument)

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        for rule in self.document.rules:
            if fnmatch.fnmatchcase(request.capability_name, rule.capability):
                return _response_for(rule.decision, rule.reason or f"policy rule {rule.capability}")
        return _response_for(self.document.default, self.document.reason)


class ApprovalGate:
    """Decides whether a validated request may run."""

    def __init__(self, policy: ApprovalPolicy | None = None, approver: Approver | None = None) -> None:
        self._policy = policy or ApprovalPolicy()
        self._approver = approver

    @property
    def policy(self) -> ApprovalPolicy:
        return self._policy

    def requires_approval(self, validated: ValidatedRequest) -> bool:
        return self._policy.requires_approval(validated.capability)

    async def decide(
        self,
        validated: ValidatedRequest,
        *,
        cancel: CancellationToken | None = None,
    ) -> ApprovalResponse:
        if not self.requires_approval(validated):
            return ApprovalResponse.approve()
        if self._approver is None:
            return ApprovalResponse.deny("approval required but no approver is configured")

        token = cancel.child() if cancel is not None else CancellationToken()
        request = ApprovalRequest.from_validated(validated)
        logger.info("approval.wait request={} summary={}", request.request_id, request.summary)
        try:
            response = await run_interruptible(
                self._approver.request_approval(request),
                cancel=token,
                timeout=self._policy.timeout_seconds,
            )
        except ExecutionInterrupted as exc:
            if exc.kind == ErrorKind.TIMEOUT:
                return ApprovalResponse.deny("approval timed out")
            return ApprovalResponse.cancel(token.reason or "cancelled")
        except Exception as exc:
            logger.opt(exception=True).warning("approval.approver_error request={}", request.request_id)
            return ApprovalResponse.deny(f"approver failed: {exc!s}")

        logger.info("approval.decided request={} decision={}", request.request_id, response.decision)
        return response


def _response_for(decision: str, reason: str) -> ApprovalResponse:
    if decision == "approve":
        return ApprovalResponse.approve(reason)
    return ApprovalResponse.deny(reason)


def _summary_value(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    if len(text) > MAX_SUMMARY_VALUE_CHARS:
        text = text[:MAX_SUMMARY_VALUE_CHARS] + "..."
    return json.dumps(text, ensure_ascii=False) if isinstance(value, str) else text
