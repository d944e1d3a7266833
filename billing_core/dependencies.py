"""FastAPI dependencies for the long-lived billing collaborators.

The lifespan builds these once at startup and parks them on app.state. The
getters below fall back to building them on first use so routers also work
without a lifespan (tests override them through app.dependency_overrides).
"""

from fastapi import Depends, Request

from billing_core.config import ProviderConfig, settings
from billing_core.services.cost_breaker import BudgetLimits, CostCircuitBreaker
from billing_core.services.counter_store import CounterStore, create_counter_store
from billing_core.services.provider_client import BillingProviderClient
from billing_core.services.reconciliation import ReconciliationThresholds
from billing_core.services.subscription_machine import PlanCatalog
from billing_core.services.usage_meter import UsageQuotas


def get_provider_config(request: Request) -> ProviderConfig:
    config = getattr(request.app.state, "provider_config", None)
    if config is None:
        config = ProviderConfig.from_settings(settings)
        request.app.state.provider_config = config
    return config


def get_plan_catalog(config: ProviderConfig = Depends(get_provider_config)) -> PlanCatalog:
    return PlanCatalog.from_config(config)


def get_provider_client(
    request: Request, config: ProviderConfig = Depends(get_provider_config)
) -> BillingProviderClient:
    client = getattr(request.app.state, "provider_client", None)
    if client is None:
        client = BillingProviderClient(config)
        request.app.state.provider_client = client
    return client


def get_counter_store(request: Request) -> CounterStore:
    store = getattr(request.app.state, "counter_store", None)
    if store is None:
        store = create_counter_store(settings.redis_url)
        request.app.state.counter_store = store
    return store


def get_cost_breaker(store: CounterStore = Depends(get_counter_store)) -> CostCircuitBreaker:
    return CostCircuitBreaker(
        store, BudgetLimits.from_settings(settings), fail_open=settings.cost_breaker_fail_open
    )


def get_usage_quotas() -> UsageQuotas:
    return UsageQuotas.from_settings(settings)


def get_reconciliation_thresholds() -> ReconciliationThresholds:
    return ReconciliationThresholds.from_settings(settings)
