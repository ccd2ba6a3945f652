from __future__ import annotations

import asyncio

import pytest

from chatrelay.config import PipelineConfig, ProvidersConfig
from chatrelay.errors import ConfigurationError, PipelineStageError
from chatrelay.pipeline import (
    Pipeline,
    PipelineContext,
    PipelineRequest,
    Stage,
    build_pipeline,
)
from chatrelay.pipeline.stages import build_system_prompt
from chatrelay.providers.base import ChatResult
from chatrelay.providers.selector import ProviderSelector
from chatrelay.tools.base import ToolRegistry


class FakeAdapter:
    def __init__(self, reply: str = "Sunny in Paris.", tools_used: list[str] | None = None) -> None:
        self.reply = reply
        self.tools_used = tools_used or []
        self.calls: list[dict] = []

    async def chat(self, messages, *, model=None, on_tool_round_start=None) -> ChatResult:
        self.calls.append({"messages": messages, "model": model})
        if on_tool_round_start is not None and self.tools_used:
            on_tool_round_start()
        return ChatResult(reply=self.reply, tools_used=list(self.tools_used), rounds=2)


def _pipeline(db, adapter: FakeAdapter, *, history_limit: int = 30, **provider_config) -> Pipeline:
    selector = ProviderSelector(
        db,
        ToolRegistry(),
        ProvidersConfig(**provider_config),
        adapter_factory=lambda provider, **kwargs: adapter,
    )
    return build_pipeline(db, selector, PipelineConfig(history_limit=history_limit))


def _request(text: str = "What's the weather in Paris?", peer: str = "peer-1", **kwargs) -> PipelineRequest:
    return PipelineRequest(
        account_id="acct-1",
        channel_type="telegram",
        peer=peer,
        text=text,
        channel_name="Telegram",
        **kwargs,
    )


async def _messages(db, conversation_id: str) -> list[tuple[str, str]]:
    rows = await db.fetch_all(
        "SELECT role, content FROM messages WHERE conversation_id = ? ORDER BY id",
        (conversation_id,),
    )
    return [(r["role"], r["content"]) for r in rows]


@pytest.mark.asyncio
async def test_completed_run_stores_one_user_and_one_assistant_message(db) -> None:
    await db.api_key_set("acct-1", "openai", "sk-1")
    adapter = FakeAdapter(tools_used=["web_search"])
    pipeline = _pipeline(db, adapter)

    result = await pipeline.run(_request())

    assert result.completed is True
    assert result.reply == "Sunny in Paris."
    assert result.tools_used == ["web_search"]
    assert await _messages(db, result.conversation_id) == [
        ("user", "What's the weather in Paris?"),
        ("assistant", "Sunny in Paris."),
    ]
    assert pipeline.stage_names == ["session", "history", "ai_router", "store"]
    assert adapter.calls[0]["model"] == "gpt-5.2-chat-latest"


@pytest.mark.asyncio
async def test_missing_credential_writes_no_messages(db) -> None:
    pipeline = _pipeline(db, FakeAdapter())

    with pytest.raises(ConfigurationError) as exc_info:
        await pipeline.run(_request())

    assert exc_info.value.provider == "openai"
    assert await db.count_conversations("acct-1", "telegram", "peer-1") == 1
    row = await db.fetch_one("SELECT COUNT(*) AS n FROM messages")
    assert row["n"] == 0


@pytest.mark.asyncio
async def test_history_is_newest_messages_oldest_first(db) -> None:
    adapter = FakeAdapter(reply="third answer")
    pipeline = _pipeline(db, adapter, history_limit=2, openai_api_key="sk-env")

    first = await pipeline.run(_request("first"))
    await db.store_exchange(
        first.conversation_id,
        user_text="second",
        user_at="2999-01-01T00:00:00+00:00",
        reply_text="second answer",
        reply_at="2999-01-01T00:00:01+00:00",
    )

    await pipeline.run(_request("third"))

    sent = adapter.calls[-1]["messages"]
    assert sent[0]["role"] == "system"
    assert sent[1:] == [
        {"role": "user", "content": "second"},
        {"role": "assistant", "content": "second answer"},
        {"role": "user", "content": "third"},
    ]


@pytest.mark.asyncio
async def test_tool_round_callback_reaches_the_adapter(db) -> None:
    adapter = FakeAdapter(tools_used=["web_search"])
    pipeline = _pipeline(db, adapter, openai_api_key="sk-env")
    rounds: list[str] = []

    await pipeline.run(_request(on_tool_round_start=lambda: rounds.append("typing")))

    assert rounds == ["typing"]


class HaltStage(Stage):
    name = "halt"

    async def process(self, ctx: PipelineContext) -> bool:
        ctx.reply = "halted early"
        return False


class RecordingStage(Stage):
    name = "recording"

    def __init__(self) -> None:
        self.seen = 0

    async def process(self, ctx: PipelineContext) -> bool:
        self.seen += 1
        return True


class BrokenStage(Stage):
    name = "broken"

    async def process(self, ctx: PipelineContext) -> bool:
        raise KeyError("boom")


@pytest.mark.asyncio
async def test_stage_returning_false_halts_the_chain() -> None:
    after = RecordingStage()
    pipeline = Pipeline([HaltStage(), after])

    result = await pipeline.run(_request())

    assert result.completed is False
    assert result.reply == "halted early"
    assert after.seen == 0


@pytest.mark.asyncio
async def test_stage_exception_is_wrapped_with_stage_name() -> None:
    after = RecordingStage()
    pipeline = Pipeline([BrokenStage(), after])

    with pytest.raises(PipelineStageError) as exc_info:
        await pipeline.run(_request())

    assert exc_info.value.stage == "broken"
    assert isinstance(exc_info.value.cause, KeyError)
    assert after.seen == 0


@pytest.mark.asyncio
async def test_concurrent_first_messages_converge_on_newest_conversation(db) -> None:
    pipeline = _pipeline(db, FakeAdapter(), openai_api_key="sk-env")

    await asyncio.gather(
        pipeline.run(_request("hello", peer="new-peer")),
        pipeline.run(_request("hello again", peer="new-peer")),
    )
    count = await db.count_conversations("acct-1", "telegram", "new-peer")
    assert 1 <= count <= 2

    newest = await db.fetch_one(
        """SELECT id FROM conversations
           WHERE account_id = 'acct-1' AND channel_type = 'telegram' AND channel_peer = 'new-peer'
           ORDER BY updated_at DESC LIMIT 1"""
    )
    follow_up = await pipeline.run(_request("and now?", peer="new-peer"))

    assert follow_up.conversation_id == newest["id"]
    assert await db.count_conversations("acct-1", "telegram", "new-peer") == count


@pytest.mark.asyncio
async def test_conversation_provider_choice_is_respected(db) -> None:
    adapter = FakeAdapter()
    pipeline = _pipeline(db, adapter, gemini_api_key="g-env")

    conversation = await db.find_or_create_conversation(
        "acct-1",
        "telegram",
        "peer-g",
        default_provider="openai",
    )
    await db.conversation_set_model(conversation.id, "gemini", "gemini-2.5-pro")

    result = await pipeline.run(_request("hi", peer="peer-g"))

    assert result.conversation_id == conversation.id
    assert adapter.calls[0]["model"] == "gemini-2.5-pro"


def test_system_prompt_names_assistant_and_channel() -> None:
    from datetime import UTC, datetime

    prompt = build_system_prompt("Relay", "Discord", now=datetime(2026, 1, 5, 9, 30, tzinfo=UTC))

    assert prompt.startswith("You are Relay, an intelligent AI assistant on Discord.")
    assert "Monday, January 05, 2026, 09:30 AM UTC" in prompt
