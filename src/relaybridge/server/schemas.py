"""Request bodies accepted by the HTTP API."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from relaybridge.core.session.models import SessionOptions


class CreateSessionRequest(BaseModel):
    model_config = {"extra": "forbid"}

    working_directory: str = ""
    model: str = ""
    resume_conversation_id: str = ""
    permission_mode: str = ""
    system_prompt: str = ""
    dangerously_skip_permissions: bool = False
    additional_flags: list[str] = Field(default_factory=list)

    def to_options(self) -> SessionOptions:
        return SessionOptions(
            working_directory=self.working_directory,
            model=self.model,
            resume_conversation_id=self.resume_conversation_id,
            permission_mode=self.permission_mode,
            system_prompt=self.system_prompt,
            dangerously_skip_permissions=self.dangerously_skip_permissions,
            additional_flags=list(self.additional_flags),
        )


class InputType(StrEnum):
    USER_MESSAGE = "user_message"  # plain text, wrapped as a stream-json user message
    CONTROL_RESPONSE = "control_response"  # structured reply, written as-is
    INTERRUPT = "interrupt"  # SIGINT
    RAW = "raw"  # one line written verbatim


class InputRequest(BaseModel):
    type: InputType
    content: str = ""
    response: dict[str, Any] | None = None

    @model_validator(mode="after")
    def check_body(self) -> InputRequest:
        if self.type == InputType.CONTROL_RESPONSE and self.response is None:
            raise ValueError("control_response requires 'response'")
        if self.type in (InputType.USER_MESSAGE, InputType.RAW) and not self.content:
            raise ValueError(f"{self.type} requires non-empty 'content'")
        return self
