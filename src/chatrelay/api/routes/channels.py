"""Connector status endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request

from chatrelay.api.middleware.auth import verify_api_key

router = APIRouter()


@router.get("/v1/channels/status")
async def list_channel_status(
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    registry = request.app.state.connectors
    return {"channels": [asdict(status) for status in registry.statuses()]}


@router.get("/v1/channels/{account_id}/{channel_type}/events")
async def list_channel_events(
    account_id: str,
    channel_type: str,
    request: Request,
    limit: int = 50,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    events = await request.app.state.db.channel_events_list(
        account_id,
        channel_type,
        limit=max(1, min(limit, 200)),
    )
    return {"account_id": account_id, "channel_type": channel_type, "events": events}
