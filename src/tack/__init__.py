"""Tack: let a language model invoke host capabilities, one checked step at a time."""

from tack.approval import ApprovalGate, ApprovalPolicy, ApprovalResponse, AutoApprover, PolicyFileApprover
from tack.capabilities import CapabilityRegistry, function_capability
from tack.conversation import ConversationState, RunBudget
from tack.dispatcher import Dispatcher, DispatchPolicy
from tack.extractor import RequestExtractor
from tack.model import Model, ScriptedModel
from tack.orchestrator import Orchestrator, OrchestratorLimits, SessionResult, SessionState
from tack.sink import ResultSink
from tack.types import ArgType, ArgumentSpec, Capability, CommandTemplate, ExecutorKind, Turn
from tack.validator import ArgumentPolicy, Validator

__all__ = [
    "ApprovalGate",
    "ApprovalPolicy",
    "ApprovalResponse",
    "ArgType",
    "ArgumentPolicy",
    "ArgumentSpec",
    "AutoApprover",
    "Capability",
    "CapabilityRegistry",
    "CommandTemplate",
    "ConversationState",
    "DispatchPolicy",
    "Dispatcher",
    "ExecutorKind",
    "Model",
    "Orchestrator",
    "OrchestratorLimits",
    "PolicyFileApprover",
    "RequestExtractor",
    "ResultSink",
    "RunBudget",
    "ScriptedModel",
    "SessionResult",
    "SessionState",
    "Turn",
    "Validator",
]
__version__ = "0.1.0"
