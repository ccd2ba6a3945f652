from __future__ import annotations

from fastapi.testclient import TestClient

from chatrelay.channels.base import ConnectorKey, ConnectorStatus
from chatrelay.channels.telegram import TelegramConnector
from chatrelay.channels.whatsapp import WhatsAppConnector
from chatrelay.config import ChannelDefaults, RelayConfig
from chatrelay.main import create_app


class FakeRegistry:
    def __init__(self, connectors: dict[tuple[str, str], object]) -> None:
        self.connectors = connectors

    def find(self, account_id: str, channel_type: str, where=None):
        found = self.connectors.get((account_id, channel_type))
        candidates = found if isinstance(found, list) else [found] if found else []
        return next((c for c in candidates if where is None or where(c)), None)

    def statuses(self) -> list[ConnectorStatus]:
        return [
            ConnectorStatus(key="acct-1:telegram:business", channel_type="telegram", state="running", healthy=True),
            ConnectorStatus(key="acct-1:whatsapp:business", channel_type="whatsapp", state="faulted", healthy=False),
        ]


def _telegram(received: list[dict]) -> TelegramConnector:
    connector = TelegramConnector(
        ConnectorKey("acct-1", "telegram"),
        {"botToken": "1:a", "webhookUrl": "https://relay.example/hook", "webhookSecret": "s3cret"},
        pipeline=None,  # type: ignore[arg-type]
    )

    async def handle_update(update: dict) -> None:
        received.append(update)

    connector.handle_update = handle_update  # type: ignore[method-assign]
    return connector


def _whatsapp(received: list[dict], *, session_mode: bool = False) -> WhatsAppConnector:
    connector = WhatsAppConnector(
        ConnectorKey("acct-1", "whatsapp", "personal" if session_mode else "business"),
        {"bridgeUrl": "ws://bridge.test"} if session_mode else {"accessToken": "EAAG", "phoneNumberId": "pn"},
        pipeline=None,  # type: ignore[arg-type]
    )

    async def handle_webhook(payload: dict) -> int:
        received.append(payload)
        return 1

    connector.handle_webhook = handle_webhook  # type: ignore[method-assign]
    return connector


def _client(api_key: str = "") -> TestClient:
    app = create_app()
    app.state.config = RelayConfig(
        api_key=api_key,
        channels=ChannelDefaults(whatsapp_verify_token="verify-me"),
    )
    app.state.connectors = FakeRegistry({})
    return TestClient(app)


def test_health_reports_connector_counts() -> None:
    response = _client().get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["connectors"] == 2
    assert body["healthy_connectors"] == 1


def test_channel_status_requires_api_key_when_configured() -> None:
    client = _client(api_key="ops-key")

    assert client.get("/v1/channels/status").status_code == 401
    assert client.get("/v1/channels/status", headers={"X-API-Key": "nope"}).status_code == 403

    response = client.get("/v1/channels/status", headers={"X-API-Key": "ops-key"})
    assert response.status_code == 200
    channels = response.json()["channels"]
    assert [c["state"] for c in channels] == ["running", "faulted"]


def test_telegram_webhook_checks_secret_then_acknowledges() -> None:
    received: list[dict] = []
    client = _client()
    client.app.state.connectors = FakeRegistry({("acct-1", "telegram"): _telegram(received)})
    update = {"update_id": 1, "message": {"text": "hi", "chat": {"id": 1, "type": "private"}}}

    bad = client.post(
        "/v1/webhooks/telegram/acct-1",
        json=update,
        headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
    )
    good = client.post(
        "/v1/webhooks/telegram/acct-1",
        json=update,
        headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
    )
    unknown = client.post("/v1/webhooks/telegram/someone-else", json=update)

    assert bad.status_code == 401
    assert good.status_code == 200
    assert good.json() == {"ok": True}
    assert unknown.status_code == 200
    assert received == [update]


def test_whatsapp_verification_handshake() -> None:
    client = _client()

    ok = client.get(
        "/v1/webhooks/whatsapp/acct-1",
        params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
    )
    denied = client.get(
        "/v1/webhooks/whatsapp/acct-1",
        params={"hub.mode": "subscribe", "hub.verify_token": "bad", "hub.challenge": "12345"},
    )

    assert ok.status_code == 200
    assert ok.text == "12345"
    assert denied.status_code == 403


def test_whatsapp_webhook_always_acknowledges() -> None:
    received: list[dict] = []
    client = _client()
    client.app.state.connectors = FakeRegistry({("acct-1", "whatsapp"): _whatsapp(received)})

    ok = client.post("/v1/webhooks/whatsapp/acct-1", json={"entry": []})
    garbage = client.post(
        "/v1/webhooks/whatsapp/acct-1",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    missing = client.post("/v1/webhooks/whatsapp/nobody", json={"entry": []})

    assert [r.status_code for r in (ok, garbage, missing)] == [200, 200, 200]
    assert received == [{"entry": []}, {}]


def test_whatsapp_webhook_skips_session_mode_connector_for_same_account() -> None:
    bridge_received: list[dict] = []
    cloud_received: list[dict] = []
    client = _client()
    client.app.state.connectors = FakeRegistry(
        {
            ("acct-1", "whatsapp"): [
                _whatsapp(bridge_received, session_mode=True),
                _whatsapp(cloud_received),
            ]
        }
    )

    resp = client.post("/v1/webhooks/whatsapp/acct-1", json={"entry": [{"id": "e1"}]})

    assert resp.status_code == 200
    assert cloud_received == [{"entry": [{"id": "e1"}]}]
    assert bridge_received == []
