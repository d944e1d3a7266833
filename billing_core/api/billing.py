"""Billing endpoints: subscription status, hosted checkout, customer portal."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.api.auth import get_current_account
from billing_core.config import settings
from billing_core.database import get_db
from billing_core.dependencies import get_plan_catalog, get_provider_client, get_usage_quotas
from billing_core.errors import ProviderError
from billing_core.models import Account, PlanTier, ensure_utc
from billing_core.services.provider_client import BillingProviderClient
from billing_core.services.subscription_machine import PlanCatalog
from billing_core.services.unit_of_work import SubscriptionRepository
from billing_core.services.usage_meter import UsageQuotas, evaluate_usage

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Schemas ---

class SubscriptionResponse(BaseModel):
    tier: str
    status: str  # "active", "past_due", "paused", "cancelled", "expired", "none"
    plan: str | None = None
    renews_at: datetime | None = None
    ends_at: datetime | None = None
    usage_count: int = 0
    usage_limit: int | None = None  # None = unlimited
    usage_reset_at: datetime | None = None


class CreateCheckoutRequest(BaseModel):
    plan: PlanTier


class CheckoutResponse(BaseModel):
    checkout_url: str


class PortalResponse(BaseModel):
    portal_url: str


# --- Endpoints ---

@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    account: Account = Depends(get_current_account),
    quotas: UsageQuotas = Depends(get_usage_quotas),
):
    """Current tier, usage and subscription status, from the internal ledger."""
    subscription = await SubscriptionRepository(db).get_current_for_account(account.id)
    usage = evaluate_usage(account, quotas)
    return SubscriptionResponse(
        tier=account.tier.value,
        status=subscription.status.value if subscription else "none",
        plan=subscription.tier.value if subscription else None,
        renews_at=ensure_utc(subscription.renews_at) if subscription else None,
        ends_at=ensure_utc(subscription.ends_at) if subscription else None,
        usage_count=account.usage_count,
        usage_limit=usage.limit,
        usage_reset_at=ensure_utc(account.usage_reset_at),
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    db: AsyncSession = Depends(get_db),
    account: Account = Depends(get_current_account),
    plans: PlanCatalog = Depends(get_plan_catalog),
    client: BillingProviderClient = Depends(get_provider_client),
):
    """Create a hosted checkout for the chosen plan."""
    active = await SubscriptionRepository(db).get_active_for_account(account.id)
    if active is not None and active.tier == request.plan:
        raise HTTPException(status_code=400, detail=f"You already have an active {request.plan.value} plan")

    try:
        url = await client.create_checkout(
            plans.variant_for(request.plan),
            user_id=account.id,
            email=account.email,
            redirect_url=f"{settings.app_url.rstrip('/')}/checkout/success",
        )
    except ProviderError as e:
        logger.error("Checkout creation failed for %s: %s", account.id, e)
        raise HTTPException(
            status_code=502, detail="Could not start checkout. Please try again later."
        )

    logger.info("Checkout created: account=%s plan=%s", account.id, request.plan.value)
    return CheckoutResponse(checkout_url=url)


@router.post("/portal", response_model=PortalResponse)
async def customer_portal(
    account: Account = Depends(get_current_account),
    client: BillingProviderClient = Depends(get_provider_client),
):
    """URL of the provider's customer portal for managing the subscription."""
    if not account.external_customer_id:
        raise HTTPException(status_code=403, detail="No subscription to manage")

    try:
        url = await client.get_customer_portal_url(account.external_customer_id)
    except ProviderError as e:
        logger.error("Portal URL lookup failed for %s: %s", account.id, e)
        raise HTTPException(
            status_code=502, detail="Could not open the billing portal. Please try again later."
        )
    return PortalResponse(portal_url=url)
