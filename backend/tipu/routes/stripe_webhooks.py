# backend/tipu/routes/stripe_webhooks.py
"""
Stripe webhook receiver.

The raw body is passed through untouched; signature verification needs the
exact bytes Stripe signed.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from ..api.dependencies import get_webhook_service
from ..api.errors import handle_domain_exception
from ..core.exceptions import DomainException
from ..schemas.payment import WebhookResponse
from ..services.stripe_webhook_service import StripeWebhookService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookResponse,
    responses={400: {"description": "Missing or invalid signature"}},
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    webhook_service: StripeWebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    payload = await request.body()
    try:
        result = await asyncio.to_thread(webhook_service.handle, payload, stripe_signature)
    except DomainException as e:
        logger.warning("Stripe webhook rejected: %s", e.message)
        handle_domain_exception(e)
    return WebhookResponse(status=result["status"], event_type=result["event_type"])
