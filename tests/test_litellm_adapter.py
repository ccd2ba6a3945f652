from __future__ import annotations

import json
from types import SimpleNamespace

import litellm
import pytest

from chatrelay.providers.litellm_adapter import LiteLLMAdapter
from chatrelay.tools.base import Tool, ToolRegistry


class WeatherTool(Tool):
    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return "search"

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {"query": {"type": "string"}}}

    async def execute(self, query: str = "", **kwargs) -> str:
        return f"Paris: 21C ({query})"


def _tool_call_response(call_id: str, name: str, arguments: str):
    tool_call = SimpleNamespace(
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )
    message = SimpleNamespace(content=None, tool_calls=[tool_call])
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="tool_calls")])


def _text_response(text: str):
    message = SimpleNamespace(content=text, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


class FakeCompletion:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def __call__(self, **kwargs):
        # the transcript is mutated between rounds; keep a snapshot
        snapshot = dict(kwargs)
        snapshot["messages"] = [dict(m) for m in kwargs["messages"]]
        self.calls.append(snapshot)
        return self.responses.pop(0)


def _adapter(provider: str = "openai") -> LiteLLMAdapter:
    registry = ToolRegistry()
    registry.register(WeatherTool())
    return LiteLLMAdapter(
        provider=provider,
        api_key="sk-test",
        registry=registry,
        default_model="gpt-5.2-chat-latest",
        temperature=0.2,
        max_output_tokens=512,
    )


@pytest.mark.asyncio
async def test_tool_round_trip_in_openai_format(monkeypatch) -> None:
    fake = FakeCompletion(
        [
            _tool_call_response("call_1", "web_search", '{"query": "weather in Paris"}'),
            _text_response("Sunny and 21C in Paris."),
        ]
    )
    monkeypatch.setattr(litellm, "acompletion", fake)

    result = await _adapter().chat(
        [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "What's the weather in Paris?"},
        ]
    )

    assert result.reply == "Sunny and 21C in Paris."
    assert result.tools_used == ["web_search"]

    first, second = fake.calls
    assert first["model"] == "openai/gpt-5.2-chat-latest"
    assert first["api_key"] == "sk-test"
    assert first["temperature"] == 0.2
    assert first["max_tokens"] == 512
    assert first["tools"][0]["function"]["name"] == "web_search"
    assert [m["role"] for m in first["messages"]] == ["system", "user"]

    assistant, tool_msg = second["messages"][2:]
    assert assistant["role"] == "assistant"
    assert assistant["tool_calls"][0]["id"] == "call_1"
    assert json.loads(assistant["tool_calls"][0]["function"]["arguments"]) == {
        "query": "weather in Paris"
    }
    assert tool_msg == {
        "role": "tool",
        "tool_call_id": "call_1",
        "name": "web_search",
        "content": "Paris: 21C (weather in Paris)",
    }


@pytest.mark.asyncio
async def test_anthropic_models_are_prefixed(monkeypatch) -> None:
    fake = FakeCompletion([_text_response("hi")])
    monkeypatch.setattr(litellm, "acompletion", fake)

    adapter = _adapter("anthropic")
    result = await adapter.chat([{"role": "user", "content": "hello"}], model="claude-sonnet-4-6")

    assert result.reply == "hi"
    assert fake.calls[0]["model"] == "anthropic/claude-sonnet-4-6"
    assert adapter.qualified_model("anthropic/claude-x") == "anthropic/claude-x"


@pytest.mark.asyncio
async def test_vendor_errors_propagate(monkeypatch) -> None:
    async def failing(**kwargs):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(litellm, "acompletion", failing)

    with pytest.raises(RuntimeError, match="rate limited"):
        await _adapter().chat([{"role": "user", "content": "hello"}])
