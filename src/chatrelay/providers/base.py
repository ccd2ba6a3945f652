"""Provider adapter base — one chat call with multi-round tool calling.

Each round:
1. Send:    submit the transcript plus the tool catalog to the vendor
2. Act:     if the model asked for functions, run them against the registry
3. Observe: append the model turn and all tool results, then send again
4. Stop:    when the model answers with text only, return it

A fixed round cap bounds the loop; running out of rounds yields a fixed
apology instead of an error.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from chatrelay.errors import ToolExecutionError
from chatrelay.tools.base import ToolRegistry

logger = structlog.get_logger()

EXHAUSTED_REPLY = "Sorry, I took too long thinking. Please try again."
EMPTY_REPLY = "Sorry, I couldn't generate a response."

ToolRoundCallback = Callable[[], Any]


class RoundState(str, Enum):
    SENDING = "sending"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    DONE = "done"
    EXHAUSTED = "exhausted"


@dataclass
class FunctionCall:
    """A function the model asked for in one round."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass
class ProviderTurn:
    """Vendor-neutral view of one model response."""

    texts: list[str] = field(default_factory=list)
    function_calls: list[FunctionCall] = field(default_factory=list)
    raw: Any = None


@dataclass
class ToolOutcome:
    call: FunctionCall
    result: str


@dataclass
class ChatResult:
    reply: str
    tools_used: list[str] = field(default_factory=list)
    rounds: int = 0
    state: RoundState = RoundState.DONE


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Normalize function-call arguments to a dict; junk becomes {}."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return {"__raw__": raw}
        return parsed if isinstance(parsed, dict) else {"__raw__": raw}
    if raw is None:
        return {}
    try:
        return dict(raw)
    except (TypeError, ValueError):
        return {}


def split_system(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Pull system text out of a transcript for vendors with an instruction channel."""
    system_parts: list[str] = []
    rest: list[dict[str, Any]] = []
    for msg in messages:
        if msg.get("role") == "system":
            content = str(msg.get("content") or "")
            if content:
                system_parts.append(content)
        else:
            rest.append(msg)
    return "\n\n".join(system_parts), rest


class ProviderAdapter(ABC):
    """Uniform chat interface over one AI vendor.

    Instances hold only construction-time settings (credential, tuning),
    so one instance may serve concurrent chat calls.
    """

    name: str = "provider"

    def __init__(
        self,
        *,
        api_key: str,
        registry: ToolRegistry,
        default_model: str,
        max_rounds: int = 3,
        temperature: float = 0.7,
        max_output_tokens: int = 2048,
    ) -> None:
        self._api_key = api_key
        self.registry = registry
        self.default_model = default_model
        self.max_rounds = max(1, int(max_rounds))
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    # ── Vendor hooks ────────────────────────────────────────────────

    @abstractmethod
    def build_transcript(self, messages: list[dict[str, Any]]) -> Any:
        """Convert {role, content} messages to the vendor's request state."""
        ...

    @abstractmethod
    async def send(self, transcript: Any, model: str) -> ProviderTurn:
        """Submit one round and parse the vendor response."""
        ...

    @abstractmethod
    def append_model_turn(self, transcript: Any, turn: ProviderTurn) -> None:
        """Record the model's function-call response verbatim."""
        ...

    @abstractmethod
    def append_tool_results(self, transcript: Any, outcomes: list[ToolOutcome]) -> None:
        """Record all tool results of a round as a single turn."""
        ...

    # ── State machine ───────────────────────────────────────────────

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        on_tool_round_start: ToolRoundCallback | None = None,
    ) -> ChatResult:
        """Run rounds until the model answers in text or the cap is hit."""
        model = model or self.default_model
        transcript = self.build_transcript(messages)
        tools_used: list[str] = []
        state = RoundState.SENDING

        for round_number in range(1, self.max_rounds + 1):
            logger.info(
                "provider.round",
                provider=self.name,
                model=model,
                round=round_number,
                max=self.max_rounds,
            )
            turn = await self.send(transcript, model)

            if not turn.function_calls:
                reply = "".join(turn.texts).strip() or EMPTY_REPLY
                state = RoundState.DONE
                logger.info(
                    "provider.complete",
                    provider=self.name,
                    rounds=round_number,
                    tools_used=tools_used,
                )
                return ChatResult(
                    reply=reply,
                    tools_used=tools_used,
                    rounds=round_number,
                    state=state,
                )

            state = RoundState.AWAITING_TOOL_RESULTS
            self.append_model_turn(transcript, turn)
            _notify(on_tool_round_start)

            outcomes: list[ToolOutcome] = []
            for call in turn.function_calls:
                logger.info(
                    "provider.tool_call",
                    provider=self.name,
                    tool=call.name,
                    round=round_number,
                )
                try:
                    result = await self._run_tool(call)
                    if self.registry.get(call.name) is not None:
                        tools_used.append(call.name)
                except ToolExecutionError as e:
                    logger.error("provider.tool_failed", tool=call.name, error=str(e))
                    result = f"Error: {e}"
                outcomes.append(ToolOutcome(call=call, result=result))

            self.append_tool_results(transcript, outcomes)
            state = RoundState.SENDING

        state = RoundState.EXHAUSTED
        logger.warning("provider.exhausted", provider=self.name, rounds=self.max_rounds)
        return ChatResult(
            reply=EXHAUSTED_REPLY,
            tools_used=tools_used,
            rounds=self.max_rounds,
            state=state,
        )

    async def _run_tool(self, call: FunctionCall) -> str:
        try:
            return await self.registry.execute(call.name, call.arguments)
        except Exception as e:
            raise ToolExecutionError(str(e) or type(e).__name__) from e


def _notify(callback: ToolRoundCallback | None) -> None:
    """Typing/progress hooks must never affect the chat outcome."""
    if callback is None:
        return
    try:
        callback()
    except Exception as e:
        logger.debug("provider.progress_callback_failed", error=str(e))
