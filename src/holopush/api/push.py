"""Subscription and broadcast endpoints."""

import hmac
import json
from typing import Any

import structlog
from fastapi import APIRouter, Request
from pydantic import ValidationError

from holopush.config import get_settings
from holopush.notifications.errors import AuthError, ClientInputError
from holopush.notifications.models import Subscription, Unsubscribe

logger = structlog.get_logger()

router = APIRouter()


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ClientInputError("Invalid JSON body") from e


def _check_bearer(request: Request) -> None:
    """Reject callers without ``Authorization: Bearer <auth_key>``."""
    auth_key = get_settings().auth_key
    presented = request.headers.get("Authorization", "")
    if not auth_key or not hmac.compare_digest(
        presented.encode(), f"Bearer {auth_key}".encode()
    ):
        raise AuthError("Unauthorized")


@router.post("/subscribe", status_code=201)
async def subscribe(request: Request) -> dict:
    """Store (or replace) a browser's push subscription."""
    data = await _json_body(request)
    try:
        subscription = Subscription.model_validate(data)
    except ValidationError as e:
        raise ClientInputError("Invalid subscription") from e
    key = await request.app.state.push_store.put(subscription)
    logger.info("subscription_saved", key=key)
    return {"success": True}


@router.post("/unsubscribe")
async def unsubscribe(request: Request) -> dict:
    """Forget a push subscription by endpoint."""
    data = await _json_body(request)
    try:
        body = Unsubscribe.model_validate(data)
    except ValidationError as e:
        raise ClientInputError("Invalid subscription") from e
    removed = await request.app.state.push_store.remove_endpoint(body.endpoint)
    logger.info("subscription_removed", removed=removed)
    return {"success": True, "removed": removed}


@router.post("/send-notification")
async def send_notification(request: Request) -> dict:
    """Broadcast the request body to every subscriber."""
    _check_bearer(request)
    payload = await _json_body(request)
    result = await request.app.state.push_dispatcher.dispatch_to_all(payload)
    return {"success": True, "sent": result.sent}
