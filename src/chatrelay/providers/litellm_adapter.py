"""LiteLLM adapter — OpenAI and Anthropic through one OpenAI-format client."""

from __future__ import annotations

import json
import time
from typing import Any

import litellm
import structlog

from chatrelay.providers.base import (
    FunctionCall,
    ProviderAdapter,
    ProviderTurn,
    ToolOutcome,
    parse_arguments,
)

logger = structlog.get_logger()

# Suppress litellm's noisy logging
litellm.suppress_debug_info = True
litellm.drop_params = True


class LiteLLMAdapter(ProviderAdapter):
    """Chat through litellm; system messages are mapped per vendor by litellm."""

    def __init__(self, *, provider: str, api_base: str | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.name = provider
        self.api_base = api_base

    def qualified_model(self, model: str) -> str:
        """litellm routes on a ``vendor/model`` prefix."""
        return model if "/" in model else f"{self.name}/{model}"

    def build_transcript(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {"role": m.get("role", "user"), "content": str(m.get("content") or "")}
            for m in messages
        ]

    async def send(self, transcript: list[dict[str, Any]], model: str) -> ProviderTurn:
        tools = self.registry.to_openai_tools()
        kwargs: dict[str, Any] = {
            "model": self.qualified_model(model),
            "messages": transcript,
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
            "api_key": self._api_key,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if tools:
            kwargs["tools"] = tools

        start = time.monotonic()
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error("llm.error", provider=self.name, model=model, error=str(e))
            raise

        logger.info(
            "llm.response",
            provider=self.name,
            model=model,
            duration=f"{time.monotonic() - start:.2f}s",
        )
        return self._parse(response)

    @staticmethod
    def _parse(response: Any) -> ProviderTurn:
        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None) or []
        calls = [
            FunctionCall(
                name=tc.function.name,
                arguments=parse_arguments(tc.function.arguments),
                call_id=tc.id,
            )
            for tc in tool_calls
        ]
        content = getattr(message, "content", None) or ""
        return ProviderTurn(texts=[content] if content else [], function_calls=calls, raw=message)

    def append_model_turn(self, transcript: list[dict[str, Any]], turn: ProviderTurn) -> None:
        transcript.append(
            {
                "role": "assistant",
                "content": "".join(turn.texts),
                "tool_calls": [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in turn.function_calls
                ],
            }
        )

    def append_tool_results(
        self,
        transcript: list[dict[str, Any]],
        outcomes: list[ToolOutcome],
    ) -> None:
        # OpenAI format has no multi-result message; one tool message per call id.
        for outcome in outcomes:
            transcript.append(
                {
                    "role": "tool",
                    "tool_call_id": outcome.call.call_id,
                    "name": outcome.call.name,
                    "content": outcome.result,
                }
            )
