"""System prompt rendering for capability advertisement."""

from __future__ import annotations

import json
from collections.abc import Sequence

from tack.capabilities.schema import json_schema
from tack.types import Capability

DEFAULT_SYSTEM_PROMPT = "You are a careful assistant that can use the capabilities listed below."


def render_capability_block(capabilities: Sequence[Capability]) -> str:
    if not capabilities:
        return "<capabilities/>"

    lines = ["<capabilities>"]
    for capability in capabilities:
        lines.append(f'  <capability name="{capability.name}">')
        if capability.description:
            lines.append(f"    description: {capability.description}")
        if capability.requires_approval:
            lines.append("    note: a human must approve each call")
        lines.append(f"    schema: {json.dumps(json_schema(capability), ensure_ascii=False)}")
        lines.append("  </capability>")
    lines.append("</capabilities>")
    return "\n".join(lines)


def invocation_contract() -> str:
    return (
        "<invocation_contract>\n"
        '1) To use a capability, emit <invoke name="NAME"> with one <arg name="KEY">VALUE</arg> per argument, '
        "then </invoke>.\n"
        "2) Wrap values containing markup in <![CDATA[ ... ]]>. A JSON object body is also accepted.\n"
        "3) You may emit several blocks in one reply; they run in the order written.\n"
        "4) Results come back as tool results. Results starting with 'error[' describe a failure; "
        "read them and adjust.\n"
        "5) Never write tool results yourself.\n"
        "6) When you have enough information, answer in plain language without any block.\n"
        "</invocation_contract>"
    )


def render_system_prompt(capabilities: Sequence[Capability], base_prompt: str = DEFAULT_SYSTEM_PROMPT) -> str:
    blocks = [base_prompt.strip(), invocation_contract(), render_capability_block(capabilities)]
    return "\n\n".join(block for block in blocks if block)
