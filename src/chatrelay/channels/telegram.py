"""Telegram connector (long-polling by default, webhook when configured)."""

from __future__ import annotations

import asyncio
import contextlib
import secrets
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.channels.base import Connector, InboundMessage
from chatrelay.errors import ConnectorError, DeliveryRejectedError

WELCOME_TEXT = "Welcome! Send me any message and I'll respond with AI."


class TelegramConnectorConfig(BaseModel):
    """Per-account Telegram settings stored with the channel row."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bot_token: str = Field(default="", alias="botToken")
    webhook_url: str | None = Field(default=None, alias="webhookUrl")
    webhook_secret: str | None = Field(default=None, alias="webhookSecret")
    parse_mode: str | None = Field(default="Markdown", alias="parseMode")


class TelegramConnector(Connector):
    channel_type = "telegram"
    display_name = "Telegram"
    max_message_chars = 4000

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.config = TelegramConnectorConfig.model_validate(self.raw_config)
        self._client: httpx.AsyncClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._offset = 0
        self._bot_username: str | None = None
        if self.webhook_mode and not self.config.webhook_secret:
            self.config.webhook_secret = secrets.token_urlsafe(24)

    @property
    def webhook_mode(self) -> bool:
        return bool((self.config.webhook_url or "").strip())

    async def _open(self) -> None:
        token = self.config.bot_token.strip()
        if not token:
            raise ConnectorError("Telegram bot token is missing")

        poll_timeout = self.defaults.telegram_poll_timeout_s
        self._client = self._http_client(
            base_url=f"{self.defaults.telegram_api_base}/bot{token}",
            timeout=httpx.Timeout(
                connect=self.defaults.request_timeout_s,
                read=poll_timeout + 10.0,
                write=self.defaults.request_timeout_s,
                pool=self.defaults.request_timeout_s,
            ),
        )
        await self._load_bot_identity()

        if self.webhook_mode:
            await self._call(
                "setWebhook",
                {
                    "url": self.config.webhook_url,
                    "secret_token": self.config.webhook_secret,
                    "allowed_updates": ["message", "edited_message"],
                },
            )
            self._log.info("channels.telegram.webhook_set")
            return

        # getUpdates is refused while a webhook is registered.
        await self._call("deleteWebhook", {"drop_pending_updates": False})
        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop(), name=f"telegram-poll-{self.key}")

    async def _close(self) -> None:
        self._stop_event.set()
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._client is None:
            raise ConnectorError("Telegram client is not open")
        resp = await self._client.post(f"/{method}", json=payload)
        if resp.status_code == 400:
            raise DeliveryRejectedError(f"Telegram {method} rejected: {resp.text[:300]}")
        resp.raise_for_status()
        body = resp.json()
        if not body.get("ok"):
            raise ConnectorError(f"Telegram {method} failed: {body}")
        return body

    async def _load_bot_identity(self) -> None:
        assert self._client is not None
        resp = await self._client.get("/getMe")
        if resp.status_code in (401, 404):
            raise ConnectorError("Telegram rejected the bot token")
        resp.raise_for_status()
        result = resp.json().get("result") or {}
        username = result.get("username")
        if isinstance(username, str) and username.strip():
            self._bot_username = username.strip().lower()

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                updates = await self._get_updates()
                for update in updates:
                    await self.handle_update(update)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                self._log.warning("channels.telegram.poll_error", error=str(e))
                await asyncio.sleep(self.defaults.telegram_retry_delay_s)

    async def _get_updates(self) -> list[dict[str, Any]]:
        assert self._client is not None
        resp = await self._client.get(
            "/getUpdates",
            params={
                "offset": self._offset,
                "timeout": self.defaults.telegram_poll_timeout_s,
                "allowed_updates": '["message","edited_message"]',
            },
        )
        resp.raise_for_status()
        payload = resp.json()
        if not payload.get("ok"):
            raise RuntimeError(f"Telegram getUpdates failed: {payload}")

        result = payload.get("result", [])
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    def verify_webhook_secret(self, header_value: str | None) -> bool:
        expected = (self.config.webhook_secret or "").strip()
        if not expected:
            return True
        return secrets.compare_digest(expected, (header_value or "").strip())

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Process one update from getUpdates or the webhook route."""
        update_id = update.get("update_id")
        if isinstance(update_id, int):
            self._offset = max(self._offset, update_id + 1)

        message = update.get("message") or update.get("edited_message")
        if not isinstance(message, dict):
            return

        chat = message.get("chat") or {}
        chat_id = chat.get("id")
        text = (message.get("text") or "").strip()
        if chat_id is None or not text:
            return

        chat_type = str(chat.get("type") or "private")
        if chat_type != "private" and not self._mentions_bot(text):
            self._log.debug("channels.telegram.group_ignored", chat_type=chat_type)
            return

        peer = str(chat_id)
        if text == "/start":
            await self.send_reply(peer, WELCOME_TEXT)
            return

        message_id = message.get("message_id")
        sender = message.get("from") or {}
        await self.handle_inbound(
            InboundMessage(
                peer=peer,
                text=text,
                reply_to_id=str(message_id) if message_id is not None else None,
                sender_id=str(sender.get("id") or "") or None,
            )
        )

    def _mentions_bot(self, text: str) -> bool:
        if not self._bot_username:
            return False
        return f"@{self._bot_username}" in text.lower()

    async def _deliver(
        self,
        peer: str,
        text: str,
        *,
        reply_to: str | None,
        formatted: bool,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": peer,
            "text": text,
            "disable_web_page_preview": True,
        }
        if formatted and self.config.parse_mode:
            payload["parse_mode"] = self.config.parse_mode
        if reply_to:
            payload["reply_parameters"] = {
                "message_id": int(reply_to) if reply_to.isdigit() else reply_to,
                "allow_sending_without_reply": True,
            }
        await self._call("sendMessage", payload)

    async def _typing(self, peer: str) -> None:
        await self._call("sendChatAction", {"chat_id": peer, "action": "typing"})
