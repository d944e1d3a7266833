"""Daily reconciliation: internal ledger vs. the billing provider.

Detection only. Findings are returned and logged; nothing is corrected
automatically. Correction is an operator action.

Checks:
  - every live subscription: exists at the provider, same status, same plan,
    renewal date within tolerance, account tier agrees with the subscription
  - subscription-tier accounts: usage_reset_at equals the active renews_at
  - every active metered subscription: reported units this period vs. the
    provider's recorded usage
  - subscriptions active at the provider that we have never seen (orphans)
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.config import Settings
from billing_core.errors import ProviderError, WebhookProcessingError
from billing_core.models import (
    Account,
    AccountTier,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
)
from billing_core.services.provider_client import BillingProviderClient, ProviderSubscription
from billing_core.services.subscription_machine import PlanCatalog, map_status
from billing_core.services.unit_of_work import LIVE_STATUSES, UnitOfWork

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationThresholds:
    subscription_mismatches: int = 5
    usage_discrepancy: float = 0.05
    renewal_tolerance: timedelta = timedelta(days=1)

    @classmethod
    def from_settings(cls, s: Settings) -> "ReconciliationThresholds":
        return cls(
            subscription_mismatches=s.reconciliation_subscription_threshold,
            usage_discrepancy=s.reconciliation_usage_threshold,
            renewal_tolerance=timedelta(hours=s.reconciliation_renewal_tolerance_hours),
        )


@dataclass
class SubscriptionIssue:
    account_id: str
    external_subscription_id: str
    issue_type: str
    internal_value: Any = None
    provider_value: Any = None


@dataclass
class UsageIssue:
    account_id: str
    external_subscription_id: str
    internal_count: int
    provider_count: int

    @property
    def difference(self) -> int:
        # Positive: under-reported to the provider
        return self.internal_count - self.provider_count


@dataclass
class ReconciliationReport:
    started_at: datetime
    subscriptions_checked: int = 0
    metered_checked: int = 0
    internal_usage_total: int = 0
    usage_difference_total: int = 0
    subscription_issues: list[SubscriptionIssue] = field(default_factory=list)
    usage_issues: list[UsageIssue] = field(default_factory=list)
    orphaned: list[dict[str, str | None]] = field(default_factory=list)
    alerts: list[str] = field(default_factory=list)

    @property
    def subscriptions_mismatched(self) -> int:
        return len(self.subscription_issues)

    @property
    def missing_subscriptions(self) -> int:
        return sum(1 for i in self.subscription_issues if i.issue_type == "missing_at_provider")

    @property
    def usage_discrepancy_ratio(self) -> float:
        if self.internal_usage_total == 0:
            return 1.0 if self.usage_difference_total else 0.0
        return self.usage_difference_total / self.internal_usage_total

    def summary(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "subscriptions_checked": self.subscriptions_checked,
            "metered_checked": self.metered_checked,
            "subscriptions_mismatched": self.subscriptions_mismatched,
            "missing_subscriptions": self.missing_subscriptions,
            "usage_mismatched": len(self.usage_issues),
            "usage_discrepancy_percent": round(self.usage_discrepancy_ratio * 100, 2),
            "orphaned_subscriptions": len(self.orphaned),
            "alerts": self.alerts,
        }

    def details(self) -> dict[str, Any]:
        return {
            "subscription_issues": [_jsonable(asdict(i)) for i in self.subscription_issues],
            "usage_issues": [
                {**asdict(i), "difference": i.difference} for i in self.usage_issues
            ],
            "orphaned": self.orphaned,
        }


def _jsonable(issue: dict[str, Any]) -> dict[str, Any]:
    for key in ("internal_value", "provider_value"):
        if isinstance(issue[key], datetime):
            issue[key] = issue[key].isoformat()
    return issue


def _normalize_status(raw: str) -> str:
    try:
        return map_status(raw).value
    except WebhookProcessingError:
        return raw


@dataclass
class _LocalSubscription:
    """Row snapshot, so no session stays open across provider calls."""

    account_id: str
    account_tier: AccountTier
    usage_reset_at: datetime | None
    external_subscription_id: str
    item_id: str | None
    status: SubscriptionStatus
    tier: PlanTier
    renews_at: datetime | None


class ReconciliationJob:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: BillingProviderClient,
        plans: PlanCatalog,
        thresholds: ReconciliationThresholds | None = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.plans = plans
        self.thresholds = thresholds or ReconciliationThresholds()

    async def run(self, now: datetime | None = None) -> ReconciliationReport:
        report = ReconciliationReport(started_at=now or datetime.now(timezone.utc))
        logger.info("Starting reconciliation run")

        local = await self._load_live_subscriptions()
        report.subscriptions_checked = len(local)
        for sub in local:
            await self._check_subscription(sub, report)
        for sub in local:
            if sub.status == SubscriptionStatus.ACTIVE and sub.tier == PlanTier.METERED:
                await self._check_usage(sub, report)
        await self._find_orphans(report)

        self._raise_alerts(report)
        logger.info(
            "Reconciliation complete: checked=%d mismatched=%d usage_mismatched=%d orphaned=%d",
            report.subscriptions_checked, report.subscriptions_mismatched,
            len(report.usage_issues), len(report.orphaned),
        )
        return report

    async def _load_live_subscriptions(self) -> list[_LocalSubscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription, Account)
                .join(Account, Subscription.account_id == Account.id)
                .where(Subscription.status.in_(LIVE_STATUSES))
                .order_by(Subscription.id)
            )
            return [
                _LocalSubscription(
                    account_id=account.id,
                    account_tier=account.tier,
                    usage_reset_at=ensure_utc(account.usage_reset_at),
                    external_subscription_id=sub.external_subscription_id,
                    item_id=sub.external_subscription_item_id,
                    status=sub.status,
                    tier=sub.tier,
                    renews_at=ensure_utc(sub.renews_at),
                )
                for sub, account in result.all()
            ]

    async def _check_subscription(self, sub: _LocalSubscription, report: ReconciliationReport) -> None:
        def issue(issue_type: str, internal=None, provider=None) -> None:
            report.subscription_issues.append(
                SubscriptionIssue(sub.account_id, sub.external_subscription_id, issue_type, internal, provider)
            )

        # Ledger-only checks first; they need no provider call
        if sub.status == SubscriptionStatus.ACTIVE and sub.account_tier.value != sub.tier.value:
            issue("account_tier_mismatch", sub.account_tier.value, sub.tier.value)
        if (
            sub.status == SubscriptionStatus.ACTIVE
            and sub.tier == PlanTier.SUBSCRIPTION
            and sub.account_tier == AccountTier.SUBSCRIPTION
            and sub.usage_reset_at != sub.renews_at
        ):
            issue("usage_reset_misaligned", sub.usage_reset_at, sub.renews_at)

        try:
            remote = await self.client.get_subscription(sub.external_subscription_id)
        except ProviderError as exc:
            logger.error(
                "Reconciliation lookup failed for subscription %s: %s",
                sub.external_subscription_id, exc,
            )
            issue("provider_error", sub.status.value, str(exc))
            return

        if remote is None:
            issue("missing_at_provider", sub.status.value, None)
            return

        remote_status = _normalize_status(remote.status)
        if remote_status != sub.status.value:
            issue("status_mismatch", sub.status.value, remote.status)

        remote_tier = self.plans.tier_for(remote.variant_id) if remote.variant_id else None
        if remote_tier is not None and remote_tier != sub.tier:
            issue("plan_mismatch", sub.tier.value, remote_tier.value)

        if sub.renews_at and remote.renews_at:
            if abs(sub.renews_at - remote.renews_at) > self.thresholds.renewal_tolerance:
                issue("renewal_date_mismatch", sub.renews_at, remote.renews_at)

    async def _check_usage(self, sub: _LocalSubscription, report: ReconciliationReport) -> None:
        if not sub.item_id:
            logger.warning(
                "Metered subscription %s has no subscription item id", sub.external_subscription_id
            )
            return
        try:
            usage = await self.client.get_current_usage(sub.item_id)
        except ProviderError as exc:
            logger.error("Usage lookup failed for item %s: %s", sub.item_id, exc)
            return
        if usage is None or usage.period_start is None:
            logger.warning("No current usage period for item %s", sub.item_id)
            return

        async with self.session_factory() as session:
            _, reported = await UnitOfWork(session).usage_units.count_in_period(
                sub.account_id, usage.period_start, usage.period_end
            )

        report.metered_checked += 1
        report.internal_usage_total += reported
        difference = abs(reported - usage.quantity)
        report.usage_difference_total += difference
        # 5% tolerance, but never less than one unit
        if difference > max(reported * self.thresholds.usage_discrepancy, 1):
            report.usage_issues.append(
                UsageIssue(sub.account_id, sub.external_subscription_id, reported, usage.quantity)
            )

    async def _find_orphans(self, report: ReconciliationReport) -> None:
        try:
            remote: list[ProviderSubscription] = await self.client.list_subscriptions()
        except ProviderError as exc:
            logger.error("Could not list provider subscriptions: %s", exc)
            return

        async with self.session_factory() as session:
            known = await UnitOfWork(session).subscriptions.list_external_ids()

        for sub in remote:
            if sub.id not in known and _normalize_status(sub.status) == SubscriptionStatus.ACTIVE.value:
                report.orphaned.append({"external_subscription_id": sub.id, "customer_id": sub.customer_id})

    def _raise_alerts(self, report: ReconciliationReport) -> None:
        if report.subscriptions_mismatched > self.thresholds.subscription_mismatches:
            message = (
                f"{report.subscriptions_mismatched} subscription mismatches "
                f"(threshold {self.thresholds.subscription_mismatches})"
            )
            report.alerts.append(message)
            logger.warning(
                "Reconciliation alert: %s",
                message,
                extra={
                    "alert": "subscription_mismatch",
                    "mismatched": report.subscriptions_mismatched,
                    "threshold": self.thresholds.subscription_mismatches,
                },
            )

        if report.metered_checked and report.usage_discrepancy_ratio > self.thresholds.usage_discrepancy:
            message = (
                f"usage discrepancy {report.usage_discrepancy_ratio:.1%} "
                f"(threshold {self.thresholds.usage_discrepancy:.1%})"
            )
            report.alerts.append(message)
            logger.error(
                "Reconciliation alert: %s",
                message,
                extra={
                    "alert": "usage_discrepancy",
                    "discrepancy_ratio": report.usage_discrepancy_ratio,
                    "threshold": self.thresholds.usage_discrepancy,
                    "usage_issues": len(report.usage_issues),
                },
            )
