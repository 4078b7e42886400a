import asyncio
from collections.abc import Callable

import pytest

from tack.approval import (
    ApprovalGate,
    ApprovalMode,
    ApprovalPolicy,
    ApprovalRequest,
    ApprovalResponse,
    AutoApprover,
    PolicyDocument,
    PolicyFileApprover,
    PolicyRule,
)
from tack.executors.base import CancellationToken
from tack.types import ApprovalDecision, ArgumentSpec, Capability, TypedArguments, TypedValue, ValidatedRequest


class RecordingApprover:
    def __init__(self, response: ApprovalResponse) -> None:
        self.response = response
        self.requests: list[ApprovalRequest] = []

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        self.requests.append(request)
        return self.response


class HangingApprover:
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        self.started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class BrokenApprover:
    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        raise RuntimeError("approval service down")


@pytest.fixture
def validate_for(make_capability: Callable[..., Capability], make_request) -> Callable[..., ValidatedRequest]:
    def _make(name: str = "fs.write", *, requires_approval: bool = True, text: str = "hello") -> ValidatedRequest:
        capability = make_capability(name, requires_approval=requires_approval, description="Write text")
        return ValidatedRequest(
            request=make_request(name, {"text": text}),
            capability=capability,
            arguments=TypedArguments({"text": TypedValue(ArgumentSpec("text").type, text)}),
        )

    return _make


@pytest.mark.asyncio
async def test_capability_without_approval_runs_without_asking(validate_for) -> None:
    approver = RecordingApprover(ApprovalResponse.deny("never"))
    gate = ApprovalGate(approver=approver)

    response = await gate.decide(validate_for("echo", requires_approval=False))

    assert response.approved
    assert approver.requests == []


def test_capability_without_approval_does_not_suspend(validate_for) -> None:
    gate = ApprovalGate(approver=RecordingApprover(ApprovalResponse.deny("never")))
    pending = gate.decide(validate_for("echo", requires_approval=False))

    with pytest.raises(StopIteration) as finished:
        pending.send(None)

    assert finished.value.value.approved


@pytest.mark.asyncio
async def test_approver_decision_is_returned_with_reason(validate_for) -> None:
    approver = RecordingApprover(ApprovalResponse.deny("not in prod"))
    gate = ApprovalGate(approver=approver)

    response = await gate.decide(validate_for())

    assert response.decision == ApprovalDecision.DENIED
    assert response.reason == "not in prod"
    assert approver.requests[0].capability_name == "fs.write"
    assert approver.requests[0].arguments == {"text": "hello"}
    assert approver.requests[0].description == "Write text"


@pytest.mark.asyncio
async def test_auto_approve_mode_skips_approver(validate_for) -> None:
    approver = RecordingApprover(ApprovalResponse.deny("never"))
    gate = ApprovalGate(ApprovalPolicy(mode=ApprovalMode.AUTO_APPROVE), approver)

    assert not gate.requires_approval(validate_for())
    assert (await gate.decide(validate_for())).approved
    assert approver.requests == []


@pytest.mark.asyncio
async def test_always_ask_mode_asks_for_everything(validate_for) -> None:
    approver = RecordingApprover(ApprovalResponse.approve("fine"))
    gate = ApprovalGate(ApprovalPolicy(mode=ApprovalMode.ALWAYS_ASK), approver)

    response = await gate.decide(validate_for("echo", requires_approval=False))

    assert response.approved
    assert len(approver.requests) == 1


def test_policy_overrides_per_capability(make_capability: Callable[..., Capability]) -> None:
    policy = ApprovalPolicy(overrides={"fs.write": False, "echo": True})

    assert not policy.requires_approval(make_capability("fs.write", requires_approval=True))
    assert policy.requires_approval(make_capability("echo"))
    assert not policy.requires_approval(make_capability("other"))


@pytest.mark.asyncio
async def test_missing_approver_denies(validate_for) -> None:
    response = await ApprovalGate().decide(validate_for())

    assert response.decision == ApprovalDecision.DENIED
    assert "no approver" in response.reason


@pytest.mark.asyncio
async def test_failing_approver_denies(validate_for) -> None:
    response = await ApprovalGate(approver=BrokenApprover()).decide(validate_for())

    assert response.decision == ApprovalDecision.DENIED
    assert response.reason == "approver failed: approval service down"


@pytest.mark.asyncio
async def test_approval_timeout_denies(validate_for) -> None:
    gate = ApprovalGate(ApprovalPolicy(timeout_seconds=0.05), HangingApprover())

    response = await gate.decide(validate_for())

    assert response.decision == ApprovalDecision.DENIED
    assert response.reason == "approval timed out"


@pytest.mark.asyncio
async def test_session_cancel_cancels_pending_approval(validate_for) -> None:
    approver = HangingApprover()
    gate = ApprovalGate(approver=approver)
    token = CancellationToken()

    pending = asyncio.create_task(gate.decide(validate_for(), cancel=token))
    await approver.started.wait()
    token.cancel("user pressed ctrl-c")
    response = await asyncio.wait_for(pending, timeout=1)

    assert response.decision == ApprovalDecision.CANCELLED
    assert response.reason == "user pressed ctrl-c"


@pytest.mark.asyncio
async def test_auto_approver() -> None:
    response = await AutoApprover().request_approval(ApprovalRequest("r1.0", "bash", {"cmd": "ls"}))

    assert response.approved
    assert response.reason == "auto-approved"


@pytest.mark.asyncio
async def test_policy_file_approver_first_match_wins() -> None:
    approver = PolicyFileApprover(
        PolicyDocument(
            rules=[
                PolicyRule(capability="fs.*", decision="approve"),
                PolicyRule(capability="fs.write", decision="deny", reason="shadowed"),
                PolicyRule(capability="bash", decision="deny", reason="no shells"),
            ]
        )
    )

    write = await approver.request_approval(ApprovalRequest("r1.0", "fs.write", {}))
    shell = await approver.request_approval(ApprovalRequest("r1.1", "bash", {}))
    other = await approver.request_approval(ApprovalRequest("r1.2", "net.fetch", {}))

    assert write.approved
    assert write.reason == "policy rule fs.*"
    assert shell.decision == ApprovalDecision.DENIED
    assert shell.reason == "no shells"
    assert other.decision == ApprovalDecision.DENIED
    assert other.reason == "no policy rule matched"


def test_request_summary_is_compact() -> None:
    request = ApprovalRequest("r1.0", "bash", {"cmd": "ls -la", "timeout": 5, "body": "x" * 500})

    summary = request.summary
    assert summary.startswith('bash(cmd="ls -la", timeout=5, body="xxx')
    assert summary.endswith('...")')
    assert len(summary) < 300
