"""
Upstream CLI protocol: the few parts of the stream-json dialect the core needs.

The spawned CLI reads and writes one JSON object per line.  The core never
interprets message content beyond the handful of tag fields below; rendering
assistant output or deciding permission requests belongs to the clients.

Tags inspected:
  type=system, subtype=init        carries ``session_id`` (upstream conversation id)
  type=assistant                   the model is generating → Busy
  type=control_request             with request.subtype=can_use_tool → WaitingForInput
  type=result                      turn finished → Ready; carries the running cost total
"""

from __future__ import annotations

import uuid
from typing import Any

from relaybridge.core.session.models import SessionOptions, SessionStatus

# Flags every spawn gets: line-delimited JSON both ways, permission prompts
# over stdio, and echo of user messages so the log holds both sides.
PROTOCOL_FLAGS: tuple[str, ...] = (
    "--print",
    "--output-format",
    "stream-json",
    "--input-format",
    "stream-json",
    "--verbose",
    "--replay-user-messages",
    "--permission-prompt-tool",
    "stdio",
)

TYPE_SYSTEM = "system"
TYPE_ASSISTANT = "assistant"
TYPE_CONTROL_REQUEST = "control_request"
TYPE_RESULT = "result"

SUBTYPE_INIT = "init"
SUBTYPE_CAN_USE_TOOL = "can_use_tool"


def build_cli_args(options: SessionOptions, resume_conversation_id: str | None = None) -> list[str]:
    """
    Return the argument list (without the executable) for one spawn.

    *resume_conversation_id* overrides ``options.resume_conversation_id``;
    caller-supplied ``additional_flags`` always come last, unvalidated.
    """
    args = list(PROTOCOL_FLAGS)
    if options.model:
        args += ["--model", options.model]
    resume = resume_conversation_id or options.resume_conversation_id
    if resume:
        args += ["--resume", resume]
    if options.permission_mode:
        args += ["--permission-mode", options.permission_mode]
    if options.system_prompt:
        args += ["--system-prompt", options.system_prompt]
    if options.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")
    args.extend(options.additional_flags)
    return args


def initialize_request() -> dict[str, Any]:
    """The control request that must be the first line written to a new process."""
    return {
        "type": TYPE_CONTROL_REQUEST,
        "request_id": str(uuid.uuid4()),
        "request": {"subtype": "initialize", "hooks": None},
    }


def user_message(text: str) -> dict[str, Any]:
    """Wrap plain user text as a stream-json user message."""
    return {"type": "user", "message": {"role": "user", "content": text}}


def control_response(response: dict[str, Any]) -> dict[str, Any]:
    """Wrap a client's allow/deny reply to a control request."""
    return {"type": "control_response", "response": response}


def upstream_conversation_id(message: Any) -> str | None:
    """Return the conversation id if *message* is the CLI's system init message."""
    if not isinstance(message, dict):
        return None
    if message.get("type") != TYPE_SYSTEM or message.get("subtype") != SUBTYPE_INIT:
        return None
    sid = message.get("session_id")
    return sid if isinstance(sid, str) and sid else None


def status_for_message(message: dict[str, Any]) -> SessionStatus | None:
    """Return the status a live session moves to on *message*, or None."""
    msg_type = message.get("type")
    if msg_type == TYPE_ASSISTANT:
        return SessionStatus.BUSY
    if msg_type == TYPE_CONTROL_REQUEST:
        request = message.get("request")
        if isinstance(request, dict) and request.get("subtype") == SUBTYPE_CAN_USE_TOOL:
            return SessionStatus.WAITING_FOR_INPUT
        return None
    if msg_type == TYPE_RESULT:
        return SessionStatus.READY
    return None


def reported_cost(message: dict[str, Any]) -> float | None:
    """
    Return the running cost total a result message reports, if any.

    ``total_cost_usd`` wins over the older ``cost_usd`` field.  The figure is
    a running total, so callers replace rather than add.
    """
    if message.get("type") != TYPE_RESULT:
        return None
    for key in ("total_cost_usd", "cost_usd"):
        value = message.get(key)
        if isinstance(value, int | float) and not isinstance(value, bool):
            return float(value)
    return None
