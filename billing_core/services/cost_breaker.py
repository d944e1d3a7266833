"""Cost circuit breaker: rolling monetary budgets for paid work.

Three layers are checked together before any work is dispatched:

    caller       per-caller spend for the current UTC day
    global_hour  spend across all callers for the current UTC hour
    global_day   spend across all callers for the current UTC day

A layer trips once its tracked total reaches its cap. Real costs are tracked
after the work completes; estimates are never tracked.
"""

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from billing_core.config import Settings
from billing_core.services.counter_store import CounterStore, CounterStoreError

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600
DAY_SECONDS = 86400


class BudgetLayer(str, enum.Enum):
    CALLER = "caller"
    GLOBAL_HOUR = "global_hour"
    GLOBAL_DAY = "global_day"


@dataclass(frozen=True)
class BudgetLimits:
    caller_daily: float = 1.0
    global_hourly: float = 5.0
    global_daily: float = 50.0
    warning_ratio: float = 0.8

    @classmethod
    def from_settings(cls, s: Settings) -> "BudgetLimits":
        return cls(
            caller_daily=s.cost_limit_caller_daily,
            global_hourly=s.cost_limit_hourly,
            global_daily=s.cost_limit_daily,
            warning_ratio=s.cost_warning_ratio,
        )


@dataclass
class BudgetCheck:
    allowed: bool
    layer: BudgetLayer | None = None
    current_cost: float = 0.0
    limit: float = 0.0
    reason: str | None = None
    degraded: bool = False  # Counter store unreachable, check skipped


@dataclass
class LayerStatus:
    layer: BudgetLayer
    key: str
    current_cost: float
    limit: float
    ttl_seconds: int

    @property
    def percent_used(self) -> float:
        return round(self.current_cost / self.limit * 100, 1) if self.limit else 0.0

    @property
    def tripped(self) -> bool:
        return self.current_cost >= self.limit


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CostCircuitBreaker:
    def __init__(
        self,
        store: CounterStore,
        limits: BudgetLimits,
        fail_open: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.limits = limits
        self.fail_open = fail_open
        self._clock = clock

    # --- Keys ---

    def _keys(self, caller_id: str) -> dict[BudgetLayer, tuple[str, float, int]]:
        """layer -> (key, limit, ttl). Window ids come from the UTC clock."""
        now = self._clock().astimezone(timezone.utc)
        day = now.strftime("%Y-%m-%d")
        return {
            BudgetLayer.GLOBAL_DAY: (f"cost:daily:{day}", self.limits.global_daily, DAY_SECONDS),
            BudgetLayer.GLOBAL_HOUR: (
                f"cost:hourly:{day}:{now.strftime('%H')}",
                self.limits.global_hourly,
                HOUR_SECONDS,
            ),
            BudgetLayer.CALLER: (
                f"cost:caller:{caller_id}:{day}",
                self.limits.caller_daily,
                DAY_SECONDS,
            ),
        }

    # --- Check / track ---

    async def check_budget(self, caller_id: str) -> BudgetCheck:
        """Must return allowed=True before paid work for caller_id is dispatched."""
        layers = self._keys(caller_id)
        try:
            totals = await self.store.get_many([key for key, _, _ in layers.values()])
        except CounterStoreError as exc:
            if self.fail_open:
                logger.error("Cost counters unreachable, allowing request: %s", exc)
                return BudgetCheck(allowed=True, degraded=True)
            logger.error("Cost counters unreachable, refusing request: %s", exc)
            return BudgetCheck(
                allowed=False,
                reason="Budget check unavailable. Please try again shortly.",
                degraded=True,
            )

        # Global layers first: they name the wider outage
        for (layer, (_, limit, _)), total in zip(layers.items(), totals):
            if total >= limit:
                logger.warning(
                    "Cost breaker tripped: layer=%s caller=%s cost=$%.4f limit=$%.2f",
                    layer.value, caller_id, total, limit,
                )
                return BudgetCheck(
                    allowed=False,
                    layer=layer,
                    current_cost=total,
                    limit=limit,
                    reason=self._reason(layer),
                )
            if layer != BudgetLayer.CALLER and total >= limit * self.limits.warning_ratio:
                logger.warning(
                    "Cost breaker at %.0f%% of %s budget ($%.4f of $%.2f)",
                    total / limit * 100, layer.value, total, limit,
                )

        return BudgetCheck(allowed=True)

    async def track_cost(self, caller_id: str, amount_usd: float) -> None:
        """Add the real cost of completed work to all three windows. Never raises."""
        if amount_usd <= 0:
            return
        for layer, (key, _, ttl) in self._keys(caller_id).items():
            try:
                await self.store.increment(key, amount_usd, ttl)
            except CounterStoreError as exc:
                logger.error(
                    "Failed to track $%.4f for %s (layer=%s): %s",
                    amount_usd, caller_id, layer.value, exc,
                )

    async def status(self, caller_id: str | None = None) -> list[LayerStatus]:
        """Read-only view of every layer. Raises CounterStoreError if unreachable."""
        layers = self._keys(caller_id or "-")
        if caller_id is None:
            del layers[BudgetLayer.CALLER]
        totals = await self.store.get_many([key for key, _, _ in layers.values()])
        return [
            LayerStatus(layer=layer, key=key, current_cost=total, limit=limit, ttl_seconds=ttl)
            for (layer, (key, limit, ttl)), total in zip(layers.items(), totals)
        ]

    @staticmethod
    def _reason(layer: BudgetLayer) -> str:
        if layer == BudgetLayer.CALLER:
            return "You have reached today's usage budget. It resets at midnight UTC."
        return "The service is temporarily at capacity. Please try again later."
