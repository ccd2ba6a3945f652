"""Slack connector: Socket Mode for events, Web API for replies."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.channels.base import FatalSessionError, InboundMessage, SessionConnector
from chatrelay.errors import ConnectorError, DeliveryRejectedError

# chat.postMessage errors that a plain-text retry can fix
REJECTED_ERRORS = {"invalid_blocks", "msg_too_long", "invalid_arguments", "no_text"}
FATAL_AUTH_ERRORS = {"invalid_auth", "not_authed", "account_inactive", "token_revoked"}


class SlackConnectorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bot_token: str = Field(default="", alias="botToken")
    app_token: str = Field(default="", alias="appToken")
    respond_in_channels: bool = Field(default=True, alias="respondInChannels")


class SlackConnector(SessionConnector):
    channel_type = "slack"
    display_name = "Slack"
    max_message_chars = 3000

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.config = SlackConnectorConfig.model_validate(self.raw_config)
        self._client: httpx.AsyncClient | None = None
        self._bot_user_id: str | None = None

    async def _prepare(self) -> None:
        if not self.config.bot_token.strip():
            raise ConnectorError("Slack bot token is missing")
        if not self.config.app_token.strip():
            raise ConnectorError("Slack app-level token is missing (Socket Mode)")
        self._client = self._http_client(base_url=self.defaults.slack_api_base)
        body = await self._api("auth.test", token=self.config.bot_token)
        self._bot_user_id = body.get("user_id")

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _api(self, method: str, *, token: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._client is None:
            raise ConnectorError("Slack client is not open")
        resp = await self._client.post(
            f"/{method}",
            json=payload or {},
            headers={"Authorization": f"Bearer {token.strip()}"},
        )
        resp.raise_for_status()
        body = resp.json()
        if not body.get("ok"):
            error = str(body.get("error") or "unknown_error")
            if error in REJECTED_ERRORS:
                raise DeliveryRejectedError(f"Slack {method} rejected: {error}")
            raise ConnectorError(f"Slack {method} failed: {error}")
        return body

    async def _session_url(self) -> str:
        try:
            body = await self._api("apps.connections.open", token=self.config.app_token)
        except ConnectorError as e:
            if any(code in str(e) for code in FATAL_AUTH_ERRORS):
                raise FatalSessionError(str(e)) from e
            raise
        url = body.get("url")
        if not isinstance(url, str) or not url:
            raise ConnectorError("Slack apps.connections.open returned no url")
        return url

    async def _run_session(self, ws: Any) -> None:
        async for raw in ws:
            try:
                envelope = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                self._log.warning("channels.slack.bad_frame")
                continue
            if not isinstance(envelope, dict):
                continue

            envelope_id = envelope.get("envelope_id")
            if envelope_id:
                await ws.send(json.dumps({"envelope_id": envelope_id}))

            kind = envelope.get("type")
            if kind == "disconnect":
                self._log.info("channels.slack.disconnect", reason=envelope.get("reason"))
                return
            if kind == "events_api":
                event = (envelope.get("payload") or {}).get("event") or {}
                self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> None:
        if event.get("type") not in ("message", "app_mention"):
            return
        if event.get("bot_id") or event.get("subtype"):
            return

        channel = event.get("channel")
        text = str(event.get("text") or "")
        is_dm = event.get("channel_type") == "im"
        # In channels the bot answers app_mention only; the plain message copy is dropped.
        if not is_dm and (event.get("type") != "app_mention" or not self.config.respond_in_channels):
            return
        if self._bot_user_id:
            text = re.sub(rf"<@{self._bot_user_id}>", "", text)
        text = text.strip()
        if not channel or not text:
            return

        self.dispatch_inbound(
            InboundMessage(
                peer=str(channel),
                text=text,
                reply_to_id=event.get("thread_ts") or event.get("ts"),
                sender_id=event.get("user"),
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
        payload: dict[str, Any] = {"channel": peer, "text": text, "mrkdwn": formatted}
        if reply_to:
            payload["thread_ts"] = reply_to
        await self._api("chat.postMessage", token=self.config.bot_token, payload=payload)
