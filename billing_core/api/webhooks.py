"""Billing provider webhook endpoint.

verify signature -> parse -> (ledger insert + state transition) in one
transaction. A duplicate delivery is acknowledged without side effects; any
failure while applying rolls everything back and answers 500 so the provider
retries.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.config import ProviderConfig
from billing_core.database import get_db
from billing_core.dependencies import get_plan_catalog, get_provider_config
from billing_core.errors import WebhookPayloadError
from billing_core.services.subscription_machine import PlanCatalog, TransitionContext, apply_event
from billing_core.services.unit_of_work import UnitOfWork
from billing_core.services.webhook_events import parse_event, verify_signature

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/billing")
async def billing_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    config: ProviderConfig = Depends(get_provider_config),
    plans: PlanCatalog = Depends(get_plan_catalog),
):
    """Handle Lemon Squeezy subscription webhooks."""
    body = await request.body()

    signature = request.headers.get("X-Signature")
    if not signature:
        logger.error("Webhook missing X-Signature header")
        return JSONResponse(status_code=401, content={"error": "Missing signature"})
    if not verify_signature(config.webhook_secret, body, signature):
        logger.error("Webhook signature verification failed")
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        event = parse_event(body)
    except WebhookPayloadError as exc:
        logger.error("Rejected webhook payload: %s", exc)
        return JSONResponse(status_code=400, content={"error": "Invalid payload"})

    if event is None:
        return {"received": True}

    if event.test_mode and not config.test_mode:
        logger.warning("Test-mode %s delivered to a live deployment", event.type.value)

    ctx = TransitionContext(now=datetime.now(timezone.utc), plans=plans)
    try:
        async with db.begin():
            uow = UnitOfWork(db)
            if not await uow.events.record_if_new(event.key, event.type.value, event.payload):
                return {"received": True, "duplicate": True}
            await apply_event(uow, event, ctx)
    except Exception:
        logger.exception(
            "Webhook %s for subscription %s failed, rolled back",
            event.type.value, event.external_subscription_id,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return {"received": True}
