"""
Billing provider webhook endpoint.

The raw body is verified before it is parsed. Redelivered events are
acknowledged with ``duplicate`` so the provider stops retrying them.
"""

from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from ..config import settings
from ..core.exceptions import InvalidWebhookPayloadError
from ..core.logging import get_logger
from ..dependencies import get_services
from ..schemas.api import WebhookResponse
from ..services.billing_webhook_service import verify_webhook_signature
from ..services.container import Services

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/v1/webhooks",
    tags=["Billing webhooks"],
    responses={
        400: {"description": "Invalid signature or payload"},
        409: {"description": "Transition rejected"},
    },
)


@router.post("/billing", response_model=WebhookResponse, summary="Receive a billing provider event")
async def receive_billing_event(
    request: Request,
    signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> WebhookResponse:
    payload = await request.body()

    if settings.billing_webhook_secret:
        verify_webhook_signature(
            payload,
            signature,
            settings.billing_webhook_secret,
            tolerance_seconds=settings.billing_webhook_tolerance_seconds,
        )

    try:
        body = json.loads(payload)
    except json.JSONDecodeError as e:
        raise InvalidWebhookPayloadError("Webhook body is not valid JSON") from e

    event_id = body.get("id") if isinstance(body, dict) else None
    event_type = body.get("type") if isinstance(body, dict) else None
    if not event_id or not event_type:
        raise InvalidWebhookPayloadError(
            "Webhook body must carry id and type",
            details={"has_id": bool(event_id), "has_type": bool(event_type)},
        )

    data = (body.get("data") or {}).get("object") or {}
    outcome = services.webhooks.process(event_id, event_type, data)
    return WebhookResponse(status=outcome.status, event_ids=outcome.event_ids)
