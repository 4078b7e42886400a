"""Command line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from tack.approval import (
    ApprovalGate,
    ApprovalMode,
    ApprovalPolicy,
    ApprovalRequest,
    ApprovalResponse,
    Approver,
    PolicyFileApprover,
)
from tack.capabilities import CapabilityRegistry, load_policy, register_builtins, register_file
from tack.config import Settings
from tack.dispatcher import DispatchPolicy
from tack.errors import TackError
from tack.hookspecs import hookimpl
from tack.integrations.republic_model import RepublicModel
from tack.logging_utils import configure_logging
from tack.model import Model
from tack.observer import LoggingObserver, Observer
from tack.orchestrator import Orchestrator, SessionResult, default_dispatcher
from tack.transcript import JsonlTranscript
from tack.types import Role, Turn
from tack.validator import ArgumentPolicy, Validator

app = typer.Typer(name="tack", help="Let a model call capabilities, one checked step at a time.", add_completion=False)

_ROLE_STYLES = {Role.USER: "bold cyan", Role.MODEL: "white", Role.TOOL_RESULT: "green"}


class ConsoleApprover:
    """Asks the person at the terminal."""

    def __init__(self, console: Console) -> None:
        self._console = console

    async def request_approval(self, request: ApprovalRequest) -> ApprovalResponse:
        return await asyncio.to_thread(self._ask, request)

    def _ask(self, request: ApprovalRequest) -> ApprovalResponse:
        self._console.print(Panel(request.summary, title=f"approve {request.capability_name}?", border_style="yellow"))
        answer = Prompt.ask(
            "[y]es / [n]o / [c]ancel step",
            choices=["y", "n", "c"],
            default="n",
            console=self._console,
        )
        if answer == "y":
            return ApprovalResponse.approve("approved at console")
        if answer == "c":
            return ApprovalResponse.cancel("cancelled at console")
        reason = Prompt.ask("reason", default="declined by user", console=self._console)
        return ApprovalResponse.deny(reason)


class ConsoleObserver:
    """Prints conversation turns as they are appended."""

    def __init__(self, console: Console) -> None:
        self._console = console

    @hookimpl
    def on_turn(self, session_id: str, turn: Turn) -> None:
        if turn.role == Role.TOOL_RESULT and turn.origin is not None:
            title = f"{turn.origin.capability_name} [{turn.origin.status}]"
            style = "green" if turn.origin.error_kind is None else "red"
            self._console.print(Panel(turn.content, title=title, border_style=style))
            return
        if turn.role == Role.MODEL:
            self._console.print(turn.content, style=_ROLE_STYLES[turn.role], markup=False)


def build_registry(settings: Settings) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    register_builtins(registry, settings.workspace, command_timeout_seconds=settings.command_timeout_seconds)
    if settings.capabilities_file is not None:
        register_file(registry, settings.capabilities_file)
    return registry


def build_gate(settings: Settings, console: Console) -> ApprovalGate:
    if settings.auto_approve:
        return ApprovalGate(ApprovalPolicy(mode=ApprovalMode.AUTO_APPROVE))

    approver: Approver
    policy = ApprovalPolicy(timeout_seconds=settings.approval_timeout_seconds)
    if settings.policy_file is not None:
        approver = PolicyFileApprover(load_policy(settings.policy_file))
    else:
        approver = ConsoleApprover(console)
    return ApprovalGate(policy, approver)


def build_orchestrator(settings: Settings, console: Console, *, model: Model | None = None) -> Orchestrator:
    observer = Observer()
    observer.register(LoggingObserver(), name="logging")
    observer.register(ConsoleObserver(console), name="console")
    argument_policy = ArgumentPolicy.STRICT if settings.strict_arguments else ArgumentPolicy.LENIENT
    return Orchestrator(
        model or RepublicModel.from_settings(settings),
        build_registry(settings),
        validator=Validator(argument_policy=argument_policy),
        gate=build_gate(settings, console),
        dispatcher=default_dispatcher(
            workspace=settings.workspace,
            command_timeout_seconds=settings.command_timeout_seconds,
            max_output_chars=settings.max_output_chars,
            policy=settings.dispatch_policy,
        ),
        observer=observer,
        limits=settings.limits(),
    )


@app.command()
def run(
    prompt: str = typer.Argument(..., help="What to ask the model"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    model: str | None = typer.Option(None, "--model", "-m", help="Model as provider:name"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Approve every request without asking"),
    policy_file: Path | None = typer.Option(None, "--policy-file", help="YAML approval rules"),  # noqa: B008
    capabilities_file: Path | None = typer.Option(None, "--capabilities", "-c", help="Capability file"),  # noqa: B008
    transcript: Path | None = typer.Option(None, "--transcript", "-t", help="JSONL transcript to resume"),  # noqa: B008
    parallel: bool = typer.Option(False, "--parallel", help="Run parallel-safe capabilities concurrently"),
    max_model_calls: int | None = typer.Option(None, "--max-model-calls", help="Model call budget"),
) -> None:
    """Run one session until the model answers or a budget runs out."""

    overrides = {
        "workspace": workspace,
        "model": model,
        "policy_file": policy_file,
        "capabilities_file": capabilities_file,
        "transcript_path": transcript,
        "max_model_calls": max_model_calls,
    }
    settings = Settings(**{key: value for key, value in overrides.items() if value is not None})
    if auto_approve:
        settings = settings.model_copy(update={"auto_approve": True})
    if parallel:
        settings = settings.model_copy(update={"dispatch_policy": DispatchPolicy.PARALLEL})

    configure_logging(profile="console", level=settings.log_level)
    console = Console()
    try:
        orchestrator = build_orchestrator(settings, console)
    except TackError as exc:
        console.print(f"[red]error:[/red] {exc}")
        raise typer.Exit(2) from exc

    result = asyncio.run(_run_session(orchestrator, prompt, settings.transcript_path))
    if result.aborted:
        console.print(f"[red]aborted[/red] ({result.abort_reason}): {result.detail}")
        raise typer.Exit(1)


async def _run_session(orchestrator: Orchestrator, prompt: str, transcript_path: Path | None) -> SessionResult:
    if transcript_path is None:
        return await orchestrator.run(prompt)
    store = JsonlTranscript(transcript_path)
    conversation = store.load()
    store.attach(conversation)
    return await orchestrator.run(prompt, conversation=conversation)


@app.command()
def capabilities(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Workspace root"),  # noqa: B008
    capabilities_file: Path | None = typer.Option(None, "--capabilities", "-c", help="Capability file"),  # noqa: B008
) -> None:
    """List registered capabilities."""

    overrides = {"workspace": workspace, "capabilities_file": capabilities_file}
    settings = Settings(**{key: value for key, value in overrides.items() if value is not None})
    try:
        registry = build_registry(settings)
    except TackError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(2) from exc

    table = Table(title="capabilities")
    table.add_column("name")
    table.add_column("kind")
    table.add_column("approval")
    table.add_column("parallel")
    table.add_column("description")
    for capability in registry.list():
        table.add_row(
            capability.name,
            str(capability.executor_kind),
            "yes" if capability.requires_approval else "no",
            "yes" if capability.parallel_safe else "no",
            capability.description,
        )
    Console().print(table)


@app.command("transcript")
def show_transcript(path: Path = typer.Argument(..., help="JSONL transcript file")) -> None:  # noqa: B008
    """Print a persisted transcript."""

    if not path.is_file():
        typer.echo(f"error: no transcript at {path}", err=True)
        raise typer.Exit(2)
    console = Console()
    for turn in JsonlTranscript(path).read():
        label = str(turn.role)
        if turn.origin is not None:
            label = f"{label} {turn.origin.capability_name}#{turn.origin.request_id}"
        console.print(f"[{_ROLE_STYLES[turn.role]}]{label}[/]")
        console.print(turn.content, markup=False)
