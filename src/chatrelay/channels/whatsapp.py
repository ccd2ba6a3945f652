"""WhatsApp connector.

Two transports, chosen by the stored config:
- session mode: a multi-device bridge process exposes the phone session
  over a websocket (QR pairing, inbound messages, outbound sends)
- token mode: the Cloud API with an ``accessToken``; inbound arrives on
  the webhook route and the connector holds no socket at all
"""

from __future__ import annotations

import json
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.channels.base import (
    ConnectorState,
    FatalSessionError,
    InboundMessage,
    SessionConnector,
)
from chatrelay.errors import ConnectorError, DeliveryRejectedError


class WhatsAppConnectorConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    access_token: str | None = Field(default=None, alias="accessToken")
    phone_number_id: str | None = Field(default=None, alias="phoneNumberId")
    bridge_url: str | None = Field(default=None, alias="bridgeUrl")
    bridge_token: str | None = Field(default=None, alias="bridgeToken")
    respond_in_groups: bool = Field(default=False, alias="respondInGroups")


def parse_cloud_webhook(payload: dict[str, Any]) -> list[InboundMessage]:
    """Text messages from a Cloud API webhook body; everything else is skipped."""
    messages: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            for msg in value.get("messages") or []:
                if not isinstance(msg, dict) or msg.get("type") != "text":
                    continue
                text = ((msg.get("text") or {}).get("body") or "").strip()
                sender = str(msg.get("from") or "")
                if not text or not sender:
                    continue
                messages.append(
                    InboundMessage(
                        peer=sender,
                        text=text,
                        reply_to_id=msg.get("id"),
                        sender_id=sender,
                    )
                )
    return messages


class WhatsAppConnector(SessionConnector):
    channel_type = "whatsapp"
    display_name = "WhatsApp"
    max_message_chars = 4096

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.config = WhatsAppConnectorConfig.model_validate(self.raw_config)
        self._client: httpx.AsyncClient | None = None

    @property
    def token_mode(self) -> bool:
        return bool((self.config.access_token or "").strip())

    @property
    def uses_alternate_transport(self) -> bool:
        return self.token_mode

    @property
    def is_healthy(self) -> bool:
        if self.token_mode:
            return self.state is ConnectorState.RUNNING
        return super().is_healthy

    # ── Lifecycle ───────────────────────────────────────────────────

    async def _open(self) -> None:
        if not self.token_mode:
            await super()._open()
            return

        if not (self.config.phone_number_id or "").strip():
            raise ConnectorError("WhatsApp Cloud API needs phoneNumberId with accessToken")
        self._client = self._http_client(
            base_url=self.defaults.whatsapp_graph_base,
            headers={"Authorization": f"Bearer {self.config.access_token}"},
        )
        resp = await self._client.get(f"/{self.config.phone_number_id}")
        if resp.status_code in (401, 403):
            raise ConnectorError("WhatsApp Cloud API rejected the access token")
        resp.raise_for_status()

    async def _prepare(self) -> None:
        return None

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def _close(self) -> None:
        if self.token_mode:
            await self._teardown()
            return
        await super()._close()

    # ── Bridge session ──────────────────────────────────────────────

    async def _session_url(self) -> str:
        return (self.config.bridge_url or "").strip() or self.defaults.whatsapp_bridge_url

    async def _run_session(self, ws: Any) -> None:
        if self.config.bridge_token:
            await ws.send(json.dumps({"type": "auth", "token": self.config.bridge_token}))

        async for raw in ws:
            try:
                event = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                self._log.warning("channels.whatsapp.bad_frame")
                continue
            if isinstance(event, dict):
                self._handle_bridge_event(event)

    def _handle_bridge_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "message":
            if event.get("fromMe"):
                return
            if event.get("isGroup") and not self.config.respond_in_groups:
                return
            text = str(event.get("content") or "").strip()
            peer = str(event.get("chatId") or event.get("sender") or "")
            if text and peer:
                self.dispatch_inbound(
                    InboundMessage(
                        peer=peer,
                        text=text,
                        reply_to_id=event.get("id"),
                        sender_id=event.get("sender"),
                    )
                )
        elif kind == "qr":
            self.record_event("qr", {"qr": event.get("qr")})
            self._log.info("channels.whatsapp.qr_received")
        elif kind == "status":
            self._log.info("channels.whatsapp.status", status=event.get("status"))
            self.record_event("status", {"status": event.get("status")})
        elif kind == "logged_out":
            raise FatalSessionError("WhatsApp session logged out; pair the device again")
        elif kind == "error":
            self._log.warning("channels.whatsapp.bridge_error", error=event.get("error"))

    # ── Outbound ────────────────────────────────────────────────────

    async def _deliver(
        self,
        peer: str,
        text: str,
        *,
        reply_to: str | None,
        formatted: bool,
    ) -> None:
        if self.token_mode:
            await self._deliver_cloud(peer, text, reply_to=reply_to, formatted=formatted)
            return

        ws = self._socket
        if ws is None:
            raise ConnectorError("WhatsApp bridge is not connected")
        frame: dict[str, Any] = {"type": "send", "to": peer, "text": text}
        if reply_to:
            frame["quoted"] = reply_to
        await ws.send(json.dumps(frame))

    async def _deliver_cloud(
        self,
        peer: str,
        text: str,
        *,
        reply_to: str | None,
        formatted: bool,
    ) -> None:
        if self._client is None:
            raise ConnectorError("WhatsApp Cloud API client is not open")
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": peer,
            "type": "text",
            "text": {"body": text, "preview_url": formatted},
        }
        if reply_to and formatted:
            payload["context"] = {"message_id": reply_to}
        resp = await self._client.post(f"/{self.config.phone_number_id}/messages", json=payload)
        if resp.status_code == 400:
            raise DeliveryRejectedError(f"WhatsApp send rejected: {resp.text[:300]}")
        resp.raise_for_status()

    async def _typing(self, peer: str) -> None:
        ws = self._socket
        if ws is not None:
            await ws.send(json.dumps({"type": "presence", "to": peer, "state": "composing"}))

    async def handle_webhook(self, payload: dict[str, Any]) -> int:
        """Dispatch Cloud API webhook messages; returns how many were accepted."""
        messages = parse_cloud_webhook(payload)
        for message in messages:
            self.dispatch_inbound(message)
        return len(messages)
