from __future__ import annotations

from typing import Any

import pytest

from chatrelay.providers.base import (
    EMPTY_REPLY,
    EXHAUSTED_REPLY,
    FunctionCall,
    ProviderAdapter,
    ProviderTurn,
    RoundState,
    ToolOutcome,
    parse_arguments,
    split_system,
)
from chatrelay.tools.base import TOOL_NOT_FOUND, Tool, ToolRegistry


class FakeSearchTool(Tool):
    def __init__(self) -> None:
        self.queries: list[str] = []

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
        self.queries.append(query)
        if query == "explode":
            raise RuntimeError("search backend down")
        return f"results for {query}"


class ScriptedAdapter(ProviderAdapter):
    """Replays a fixed list of turns and records what it was sent."""

    name = "scripted"

    def __init__(self, turns: list[ProviderTurn], **kwargs: Any) -> None:
        kwargs.setdefault("api_key", "k")
        kwargs.setdefault("default_model", "m-default")
        super().__init__(**kwargs)
        self.turns = list(turns)
        self.models: list[str] = []
        self.transcript_sizes: list[int] = []
        self.tool_rounds: list[list[ToolOutcome]] = []

    def build_transcript(self, messages: list[dict[str, Any]]) -> list[Any]:
        return list(messages)

    async def send(self, transcript: list[Any], model: str) -> ProviderTurn:
        self.models.append(model)
        self.transcript_sizes.append(len(transcript))
        if not self.turns:
            return ProviderTurn(texts=["fallback"])
        return self.turns.pop(0)

    def append_model_turn(self, transcript: list[Any], turn: ProviderTurn) -> None:
        transcript.append({"role": "assistant", "calls": [c.name for c in turn.function_calls]})

    def append_tool_results(self, transcript: list[Any], outcomes: list[ToolOutcome]) -> None:
        self.tool_rounds.append(outcomes)
        transcript.append({"role": "tool", "results": [o.result for o in outcomes]})


def _call(name: str, **arguments: Any) -> ProviderTurn:
    return ProviderTurn(function_calls=[FunctionCall(name=name, arguments=arguments, call_id="c1")])


def _registry() -> tuple[ToolRegistry, FakeSearchTool]:
    registry = ToolRegistry()
    tool = FakeSearchTool()
    registry.register(tool)
    return registry, tool


MESSAGES = [
    {"role": "system", "content": "be brief"},
    {"role": "user", "content": "What's the weather in Paris?"},
]


@pytest.mark.asyncio
async def test_weather_question_uses_web_search_once() -> None:
    registry, tool = _registry()
    adapter = ScriptedAdapter(
        [
            _call("web_search", query="weather in Paris"),
            ProviderTurn(texts=["It is sunny in Paris."]),
        ],
        registry=registry,
    )

    result = await adapter.chat(MESSAGES)

    assert result.reply == "It is sunny in Paris."
    assert result.tools_used == ["web_search"]
    assert result.rounds == 2
    assert result.state is RoundState.DONE
    assert tool.queries == ["weather in Paris"]
    # model turn + one tool-results turn were appended before the second send
    assert adapter.transcript_sizes == [2, 4]
    assert adapter.models == ["m-default", "m-default"]


@pytest.mark.asyncio
async def test_round_cap_returns_fixed_apology() -> None:
    registry, tool = _registry()
    adapter = ScriptedAdapter(
        [_call("web_search", query=f"q{i}") for i in range(10)],
        registry=registry,
        max_rounds=3,
    )

    result = await adapter.chat(MESSAGES, model="m-override")

    assert result.reply == EXHAUSTED_REPLY
    assert result.state is RoundState.EXHAUSTED
    assert result.rounds == 3
    assert len(adapter.models) == 3
    assert adapter.models[0] == "m-override"
    assert tool.queries == ["q0", "q1", "q2"]


@pytest.mark.asyncio
async def test_empty_text_becomes_fallback_reply() -> None:
    registry, _ = _registry()
    adapter = ScriptedAdapter([ProviderTurn(texts=["  "])], registry=registry)

    result = await adapter.chat(MESSAGES)

    assert result.reply == EMPTY_REPLY
    assert result.rounds == 1


@pytest.mark.asyncio
async def test_unknown_and_failing_tools_feed_text_back_to_model() -> None:
    registry, _ = _registry()
    adapter = ScriptedAdapter(
        [
            ProviderTurn(
                function_calls=[
                    FunctionCall(name="nope", arguments={}, call_id="a"),
                    FunctionCall(name="web_search", arguments={"query": "explode"}, call_id="b"),
                    FunctionCall(name="web_search", arguments={"query": "ok"}, call_id="c"),
                ]
            ),
            ProviderTurn(texts=["done"]),
        ],
        registry=registry,
    )

    result = await adapter.chat(MESSAGES)

    assert result.reply == "done"
    assert result.tools_used == ["web_search", "web_search"]
    outcomes = adapter.tool_rounds[0]
    assert [o.result for o in outcomes] == [
        TOOL_NOT_FOUND,
        "Error: search backend down",
        "results for ok",
    ]


@pytest.mark.asyncio
async def test_registry_crash_is_wrapped_and_round_continues() -> None:
    class BrokenRegistry(ToolRegistry):
        async def execute(self, name: str, arguments: Any) -> str:
            raise ValueError("registry exploded")

    adapter = ScriptedAdapter(
        [_call("web_search", query="x"), ProviderTurn(texts=["recovered"])],
        registry=BrokenRegistry(),
    )

    result = await adapter.chat(MESSAGES)

    assert result.reply == "recovered"
    assert result.tools_used == []
    assert adapter.tool_rounds[0][0].result == "Error: registry exploded"


@pytest.mark.asyncio
async def test_tool_round_callback_fires_per_round_and_errors_are_ignored() -> None:
    registry, _ = _registry()
    adapter = ScriptedAdapter(
        [_call("web_search", query="a"), _call("web_search", query="b"), ProviderTurn(texts=["ok"])],
        registry=registry,
    )
    calls: list[int] = []

    def on_round() -> None:
        calls.append(1)
        raise RuntimeError("typing failed")

    result = await adapter.chat(MESSAGES, on_tool_round_start=on_round)

    assert result.reply == "ok"
    assert len(calls) == 2


def test_parse_arguments_normalizes_inputs() -> None:
    assert parse_arguments('{"a": 1}') == {"a": 1}
    assert parse_arguments("") == {}
    assert parse_arguments(None) == {}
    assert parse_arguments({"b": 2}) == {"b": 2}
    assert parse_arguments("not json") == {"__raw__": "not json"}
    assert parse_arguments("[1]") == {"__raw__": "[1]"}


def test_split_system_joins_system_turns() -> None:
    system, rest = split_system(
        [
            {"role": "system", "content": "one"},
            {"role": "user", "content": "hi"},
            {"role": "system", "content": "two"},
        ]
    )

    assert system == "one\n\ntwo"
    assert rest == [{"role": "user", "content": "hi"}]
