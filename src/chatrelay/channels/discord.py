"""Discord connector: gateway websocket for inbound, REST for replies."""

from __future__ import annotations

import asyncio
import contextlib
import json
import platform
import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.channels.base import FatalSessionError, InboundMessage, SessionConnector
from chatrelay.errors import ConnectorError, DeliveryRejectedError

# GUILD_MESSAGES | DIRECT_MESSAGES | MESSAGE_CONTENT
DEFAULT_INTENTS = (1 << 9) | (1 << 12) | (1 << 15)
FATAL_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11


class DiscordConnectorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bot_token: str = Field(default="", alias="botToken")
    intents: int = DEFAULT_INTENTS


def build_identify_payload(*, bot_token: str, intents: int) -> dict[str, Any]:
    return {
        "op": OP_IDENTIFY,
        "d": {
            "token": bot_token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "chatrelay",
                "device": "chatrelay",
            },
        },
    }


class DiscordConnector(SessionConnector):
    channel_type = "discord"
    display_name = "Discord"
    max_message_chars = 2000

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.config = DiscordConnectorConfig.model_validate(self.raw_config)
        self._client: httpx.AsyncClient | None = None
        self._bot_user_id: str | None = None
        self._sequence: int | None = None

    async def _prepare(self) -> None:
        token = self.config.bot_token.strip()
        if not token:
            raise ConnectorError("Discord bot token is missing")
        self._client = self._http_client(
            base_url=self.defaults.discord_api_base,
            headers={"Authorization": f"Bot {token}"},
        )
        resp = await self._client.get("/users/@me")
        if resp.status_code == 401:
            raise ConnectorError("Discord rejected the bot token")
        resp.raise_for_status()
        self._bot_user_id = str(resp.json().get("id") or "") or None

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _session_url(self) -> str:
        return self.defaults.discord_gateway_url

    async def _run_session(self, ws: Any) -> None:
        heartbeat: asyncio.Task[None] | None = None
        try:
            async for raw in ws:
                frame = json.loads(raw)
                op = frame.get("op")
                if isinstance(frame.get("s"), int):
                    self._sequence = frame["s"]

                if op == OP_HELLO:
                    interval = float((frame.get("d") or {}).get("heartbeat_interval", 41250)) / 1000
                    heartbeat = asyncio.create_task(self._heartbeat(ws, interval))
                    await ws.send(
                        json.dumps(
                            build_identify_payload(
                                bot_token=self.config.bot_token.strip(),
                                intents=self.config.intents,
                            )
                        )
                    )
                elif op == OP_HEARTBEAT:
                    await ws.send(json.dumps({"op": OP_HEARTBEAT, "d": self._sequence}))
                elif op in (OP_RECONNECT, OP_INVALID_SESSION):
                    self._log.info("channels.discord.session_reset", op=op)
                    return
                elif op == OP_DISPATCH:
                    self._handle_dispatch(frame.get("t"), frame.get("d") or {})
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            code = getattr(ws, "close_code", None)
            if code in FATAL_CLOSE_CODES:
                raise FatalSessionError(f"Discord closed the gateway with code {code}")

    async def _heartbeat(self, ws: Any, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await ws.send(json.dumps({"op": OP_HEARTBEAT, "d": self._sequence}))

    def _handle_dispatch(self, event_type: str | None, data: dict[str, Any]) -> None:
        if event_type == "READY":
            user = data.get("user") or {}
            self._bot_user_id = str(user.get("id") or self._bot_user_id or "") or None
            return
        if event_type != "MESSAGE_CREATE":
            return

        author = data.get("author") or {}
        if author.get("bot"):
            return
        text = str(data.get("content") or "")
        is_dm = not data.get("guild_id")
        if not is_dm:
            mentioned = any(
                str(m.get("id")) == self._bot_user_id for m in data.get("mentions") or []
            )
            if not mentioned:
                return
            text = re.sub(rf"<@!?{self._bot_user_id}>", "", text)
        text = text.strip()
        channel_id = data.get("channel_id")
        if not text or not channel_id:
            return

        self.dispatch_inbound(
            InboundMessage(
                peer=str(channel_id),
                text=text,
                reply_to_id=data.get("id"),
                sender_id=str(author.get("id") or "") or None,
            )
        )

    async def _deliver(
        self,
        peer: str,
        text: str,
        *,
        reply_to: str | None,
        formatted: bool,
    ) -> None:
        if self._client is None:
            raise ConnectorError("Discord client is not open")
        payload: dict[str, Any] = {"content": text, "allowed_mentions": {"parse": []}}
        if reply_to and formatted:
            payload["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
        if not formatted:
            # SUPPRESS_EMBEDS
            payload["flags"] = 1 << 2
        resp = await self._client.post(f"/channels/{peer}/messages", json=payload)
        if resp.status_code == 400:
            raise DeliveryRejectedError(f"Discord send rejected: {resp.text[:300]}")
        resp.raise_for_status()

    async def _typing(self, peer: str) -> None:
        if self._client is not None:
            await self._client.post(f"/channels/{peer}/typing")
