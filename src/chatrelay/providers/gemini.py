"""Google Gemini adapter with native function declarations.

Gemini differs from the OpenAI shape:
- system text travels in ``system_instruction``, not as a turn
- assistant turns use the ``model`` role
- tool results go back as ``function_response`` parts of one user turn
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from google import genai
from google.genai import types

from chatrelay.providers.base import (
    FunctionCall,
    ProviderAdapter,
    ProviderTurn,
    ToolOutcome,
    parse_arguments,
    split_system,
)

logger = structlog.get_logger()


@dataclass
class GeminiTranscript:
    system_instruction: str
    contents: list[types.Content] = field(default_factory=list)


def to_gemini_contents(messages: list[dict[str, Any]]) -> list[types.Content]:
    """user/assistant messages as Gemini contents; tool and system roles are skipped."""
    contents: list[types.Content] = []
    for msg in messages:
        role = msg.get("role")
        if role in {"system", "tool"}:
            continue
        contents.append(
            types.Content(
                role="model" if role == "assistant" else "user",
                parts=[types.Part(text=str(msg.get("content") or ""))],
            )
        )
    return contents


class GeminiAdapter(ProviderAdapter):
    name = "gemini"

    def __init__(self, *, client: Any = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client = client or genai.Client(api_key=self._api_key)

    def build_transcript(self, messages: list[dict[str, Any]]) -> GeminiTranscript:
        system_instruction, rest = split_system(messages)
        return GeminiTranscript(
            system_instruction=system_instruction,
            contents=to_gemini_contents(rest),
        )

    def _request_config(self, transcript: GeminiTranscript) -> types.GenerateContentConfig:
        declarations = [
            types.FunctionDeclaration(
                name=d["name"],
                description=d["description"],
                parameters_json_schema=d["parameters"],
            )
            for d in self.registry.function_declarations()
        ]
        tools = [types.Tool(function_declarations=declarations)] if declarations else None
        return types.GenerateContentConfig(
            system_instruction=transcript.system_instruction or None,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            tools=tools,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

    async def send(self, transcript: GeminiTranscript, model: str) -> ProviderTurn:
        start = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=transcript.contents,
                config=self._request_config(transcript),
            )
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
        candidates = getattr(response, "candidates", None) or []
        content = getattr(candidates[0], "content", None) if candidates else None
        parts = list(getattr(content, "parts", None) or [])

        turn = ProviderTurn(raw=content)
        for part in parts:
            call = getattr(part, "function_call", None)
            if call is not None:
                turn.function_calls.append(
                    FunctionCall(
                        name=str(getattr(call, "name", "") or ""),
                        arguments=parse_arguments(getattr(call, "args", None)),
                        call_id=getattr(call, "id", None),
                    )
                )
                continue
            text = getattr(part, "text", None)
            if text:
                turn.texts.append(text)
        return turn

    def append_model_turn(self, transcript: GeminiTranscript, turn: ProviderTurn) -> None:
        if isinstance(turn.raw, types.Content):
            transcript.contents.append(turn.raw)
            return
        transcript.contents.append(
            types.Content(
                role="model",
                parts=[
                    types.Part(function_call=types.FunctionCall(name=c.name, args=c.arguments))
                    for c in turn.function_calls
                ],
            )
        )

    def append_tool_results(
        self,
        transcript: GeminiTranscript,
        outcomes: list[ToolOutcome],
    ) -> None:
        transcript.contents.append(
            types.Content(
                role="user",
                parts=[
                    types.Part.from_function_response(
                        name=outcome.call.name,
                        response={"result": outcome.result},
                    )
                    for outcome in outcomes
                ],
            )
        )
