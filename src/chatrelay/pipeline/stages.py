"""The four pipeline stages: session, history, AI routing, store."""

from __future__ import annotations

import time
from datetime import UTC, datetime

import structlog

from chatrelay.config import PipelineConfig
from chatrelay.db.engine import Database
from chatrelay.pipeline.models import PipelineContext
from chatrelay.pipeline.pipeline import Pipeline, Stage
from chatrelay.providers.selector import ProviderSelector

logger = structlog.get_logger()

_PROMPT_TEMPLATE = """You are {name}, an intelligent AI assistant on {channel}. Today is {date}, {time} UTC.

CAPABILITIES:
- You can search the internet for real-time information (weather, news, prices, events, etc.)
- You have access to tools: use web_search when you need current/live data
- You remember the conversation context

RULES:
- Read the user's message carefully and answer their EXACT question
- When asked about weather, news, prices, sports, or current events: ALWAYS use the web_search tool first
- Be helpful, accurate, and direct
- Keep responses concise but complete (under 500 characters when possible)
- Use plain text, no markdown formatting, no asterisks, no code blocks
- If the user greets you, greet them warmly and ask how you can help
- If a tool search fails, be honest about it

IDENTITY:
- You are {name}, available on multiple messengers (Telegram, WhatsApp, Discord, Slack)"""


def build_system_prompt(
    assistant_name: str,
    channel_name: str | None,
    now: datetime | None = None,
) -> str:
    now = now or datetime.now(UTC)
    return _PROMPT_TEMPLATE.format(
        name=assistant_name,
        channel=channel_name or "Messenger",
        date=now.strftime("%A, %B %d, %Y"),
        time=now.strftime("%I:%M %p"),
    )


class SessionStage(Stage):
    """Resolve or create the conversation for (account, channel, peer)."""

    name = "session"

    def __init__(self, db: Database, selector: ProviderSelector, config: PipelineConfig) -> None:
        self.db = db
        self.selector = selector
        self.config = config

    async def process(self, ctx: PipelineContext) -> bool:
        default_provider = self.config.default_provider
        conversation = await self.db.find_or_create_conversation(
            ctx.account_id,
            ctx.channel_type,
            ctx.peer,
            default_provider=default_provider,
            default_model=self.selector.default_model(default_provider) or None,
            title=ctx.text,
        )
        ctx.conversation_id = conversation.id
        ctx.provider = conversation.provider
        ctx.model = conversation.model or self.selector.default_model(conversation.provider) or None
        return True


class HistoryStage(Stage):
    """Load the newest messages of the conversation, oldest first."""

    name = "history"

    def __init__(self, db: Database, limit: int) -> None:
        self.db = db
        self.limit = limit

    async def process(self, ctx: PipelineContext) -> bool:
        if not ctx.conversation_id:
            return False
        rows = await self.db.load_recent_messages(ctx.conversation_id, self.limit)
        ctx.history = [{"role": row["role"], "content": row["content"]} for row in rows]
        return True


class AIRoutingStage(Stage):
    """Pick the adapter, build the prompt, and run the chat call."""

    name = "ai_router"

    def __init__(self, selector: ProviderSelector, config: PipelineConfig) -> None:
        self.selector = selector
        self.config = config

    async def process(self, ctx: PipelineContext) -> bool:
        provider = ctx.provider or self.config.default_provider
        adapter = await self.selector.select(ctx.account_id, provider)

        messages = [
            {
                "role": "system",
                "content": build_system_prompt(
                    self.config.assistant_name,
                    ctx.channel_name or ctx.channel_type,
                ),
            },
            *ctx.history,
            {"role": "user", "content": ctx.text},
        ]

        start = time.monotonic()
        result = await adapter.chat(
            messages,
            model=ctx.model,
            on_tool_round_start=ctx.on_tool_round_start,
        )
        ctx.reply = result.reply
        ctx.tools_used.extend(result.tools_used)
        ctx.elapsed_ms = int((time.monotonic() - start) * 1000)

        logger.info(
            "pipeline.ai.response",
            provider=provider,
            model=ctx.model,
            elapsed_ms=ctx.elapsed_ms,
            tools=ctx.tools_used,
            rounds=result.rounds,
        )
        return True


class StoreStage(Stage):
    """Persist the user turn and the reply, then touch the conversation."""

    name = "store"

    def __init__(self, db: Database) -> None:
        self.db = db

    async def process(self, ctx: PipelineContext) -> bool:
        if not ctx.conversation_id or not ctx.reply:
            return False
        await self.db.store_exchange(
            ctx.conversation_id,
            user_text=ctx.text,
            user_at=ctx.received_wall.isoformat(),
            reply_text=ctx.reply,
            reply_at=datetime.now(UTC).isoformat(),
        )
        return True


def build_pipeline(db: Database, selector: ProviderSelector, config: PipelineConfig) -> Pipeline:
    """Session → History → AI-Routing → Store."""
    return Pipeline(
        [
            SessionStage(db, selector, config),
            HistoryStage(db, config.history_limit),
            AIRoutingStage(selector, config),
            StoreStage(db),
        ]
    )
