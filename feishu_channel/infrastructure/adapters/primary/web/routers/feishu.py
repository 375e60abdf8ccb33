"""Feishu webhook, card callback and message action endpoints."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from feishu_channel.application.services.channels.message_actions import ActionValidationError
from feishu_channel.configuration.di_container import DIContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/feishu", tags=["feishu"])


class MessageActionRequest(BaseModel):
    """Body of a message action call."""

    action: str = Field(..., description="react, delete or edit")
    params: dict[str, Any] = Field(default_factory=dict)


class MessageActionResponse(BaseModel):
    ok: bool
    message_id: str | None = None
    reaction_id: str | None = None
    error: str | None = None


class AccountSummary(BaseModel):
    account_id: str
    configured: bool
    enabled: bool
    domain: str
    connection_mode: str
    bot_name: str | None = None
    bot_open_id: str | None = None
    connected: bool = False


def get_container(request: Request) -> DIContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Feishu channel not initialized",
        )
    return container


@router.post("/{account_id}/events")
async def receive_events(
    account_id: str,
    request: Request,
    container: DIContainer = Depends(get_container),
) -> dict[str, Any]:
    """Webhook endpoint for im.message.receive_v1 and card.action.trigger events."""
    gateway = container.gateway(account_id)
    if gateway is None or gateway.webhook is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No webhook receiver for account: {account_id}",
        )
    return await gateway.webhook.handle_request(request)


@router.post("/card-callback")
async def card_callback(
    request: Request,
    container: DIContainer = Depends(get_container),
) -> dict[str, Any]:
    """Card button callbacks; answered at once, dispatched in the background."""
    try:
        data = json.loads(await request.body())
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e

    if data.get("type") == "url_verification":
        return {"challenge": data.get("challenge")}

    payload = data.get("event") if isinstance(data.get("event"), dict) else data
    container.card_action_handler().handle(payload)
    return {}


@router.post("/{account_id}/actions", response_model=MessageActionResponse)
async def message_action(
    account_id: str,
    data: MessageActionRequest,
    container: DIContainer = Depends(get_container),
) -> MessageActionResponse:
    """React to, delete or edit a message."""
    try:
        result = await container.message_action_service().handle(
            account_id, data.action, data.params
        )
    except ActionValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return MessageActionResponse(
        ok=result.ok,
        message_id=result.message_id,
        reaction_id=result.reaction_id,
        error=result.error,
    )


@router.get("/accounts", response_model=list[AccountSummary])
async def list_accounts(container: DIContainer = Depends(get_container)) -> list[AccountSummary]:
    registry = container.bot_registry()
    summaries = []
    for account in container.accounts():
        bot = registry.get_by_account_id(account.account_id)
        gateway = container.gateway(account.account_id)
        summaries.append(
            AccountSummary(
                account_id=account.account_id,
                configured=account.configured,
                enabled=account.enabled,
                domain=account.domain,
                connection_mode="webhook" if account.use_webhook else "websocket",
                bot_name=bot.display_name if bot else None,
                bot_open_id=bot.platform_id if bot else None,
                connected=gateway.connected if gateway else False,
            )
        )
    return summaries


@router.get("/{account_id}/probe")
async def probe_account(
    account_id: str,
    container: DIContainer = Depends(get_container),
) -> dict[str, Any]:
    if not container.has_account(account_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Feishu account not found: {account_id}",
        )
    client = container.client(account_id)
    if client is None:
        return {"ok": False, "error": "missing credentials (app_id, app_secret)"}
    return await client.probe()
