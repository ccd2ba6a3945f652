"""Pipeline request, per-message context and result models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from chatrelay.providers.base import ToolRoundCallback


@dataclass
class PipelineRequest:
    """What a connector hands to the pipeline for one inbound message."""

    account_id: str
    channel_type: str
    peer: str
    text: str
    channel_name: str | None = None
    on_tool_round_start: ToolRoundCallback | None = None


@dataclass
class PipelineContext:
    """Mutable state for exactly one pipeline run; never shared between runs."""

    account_id: str
    channel_type: str
    peer: str
    text: str
    channel_name: str | None = None
    on_tool_round_start: ToolRoundCallback | None = None

    conversation_id: str | None = None
    provider: str | None = None
    model: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    reply: str = ""
    tools_used: list[str] = field(default_factory=list)
    elapsed_ms: int | None = None

    received_at: float = field(default_factory=time.monotonic)
    received_wall: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_request(cls, request: PipelineRequest) -> PipelineContext:
        return cls(
            account_id=request.account_id,
            channel_type=request.channel_type,
            peer=request.peer,
            text=request.text,
            channel_name=request.channel_name,
            on_tool_round_start=request.on_tool_round_start,
        )


@dataclass
class PipelineResult:
    reply: str
    tools_used: list[str]
    conversation_id: str | None
    completed: bool
    elapsed_ms: int
