"""Webhook ingress for push-based platforms.

Platforms retry aggressively on non-2xx answers, so once a request is
authentic it is acknowledged immediately and processed in the background.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from chatrelay.channels.telegram import TelegramConnector
from chatrelay.channels.whatsapp import WhatsAppConnector

logger = structlog.get_logger()

router = APIRouter()


async def _run_detached(label: str, handler: Callable[..., Awaitable[Any]], *args: Any) -> None:
    try:
        await handler(*args)
    except Exception as e:
        logger.error("webhooks.processing_failed", source=label, error=str(e))


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _cloud_api_connector(connector: Any) -> bool:
    return isinstance(connector, WhatsAppConnector) and connector.token_mode


@router.post("/v1/webhooks/telegram/{account_id}")
async def telegram_webhook(
    account_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> dict:
    connector = request.app.state.connectors.find(account_id, "telegram")
    if not isinstance(connector, TelegramConnector):
        logger.info("webhooks.telegram.no_connector", account_id=account_id)
        return {"ok": True}

    if not connector.verify_webhook_secret(x_telegram_bot_api_secret_token):
        logger.warning("webhooks.telegram.bad_secret", account_id=account_id)
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    update = await _json_body(request)
    if update:
        background_tasks.add_task(_run_detached, "telegram", connector.handle_update, update)
    return {"ok": True}


@router.get("/v1/webhooks/whatsapp/{account_id}")
async def whatsapp_verify(
    account_id: str,
    request: Request,
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse:
    expected = request.app.state.config.channels.whatsapp_verify_token.strip()
    if mode == "subscribe" and expected and token == expected and challenge is not None:
        logger.info("webhooks.whatsapp.verified", account_id=account_id)
        return PlainTextResponse(challenge)
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/v1/webhooks/whatsapp/{account_id}")
async def whatsapp_webhook(
    account_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
) -> dict:
    payload = await _json_body(request)
    connector = request.app.state.connectors.find(account_id, "whatsapp", where=_cloud_api_connector)
    if not isinstance(connector, WhatsAppConnector):
        logger.info("webhooks.whatsapp.no_connector", account_id=account_id)
        return {"ok": True}

    background_tasks.add_task(_run_detached, "whatsapp", connector.handle_webhook, payload)
    return {"ok": True}
