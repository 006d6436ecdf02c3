"""
Immutable plan/price lookup table.

Built once at process start from settings and injected into the services that
need it. Nothing mutates it afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from ..config import Settings
from ..core.exceptions import ErrorCode, NotFoundError
from ..models.enums import BillingCycle


@dataclass(frozen=True)
class Plan:
    plan_id: str
    tier_code: str
    rank: int
    max_terminals: int
    prices: Mapping[BillingCycle, Decimal]
    price_ids: Mapping[BillingCycle, str]

    def price(self, billing_cycle: BillingCycle) -> Decimal:
        return self.prices[billing_cycle]


@dataclass(frozen=True)
class PriceRef:
    """What a billing provider price id stands for."""
    plan_id: str
    billing_cycle: BillingCycle


class PlanCatalog:
    """Read-only view over the configured plans."""

    REISSUE_POLICIES = ("tier", "any_change", "never")

    def __init__(self, plans: Iterable[Plan], reissue_policy: str = "tier"):
        if reissue_policy not in self.REISSUE_POLICIES:
            raise ValueError(f"Unknown license key reissue policy: {reissue_policy}")

        plans_by_id = {plan.plan_id: plan for plan in plans}
        price_index = {
            price_id: PriceRef(plan.plan_id, cycle)
            for plan in plans_by_id.values()
            for cycle, price_id in plan.price_ids.items()
        }
        self._plans = MappingProxyType(plans_by_id)
        self._price_index = MappingProxyType(price_index)
        self.reissue_policy = reissue_policy

    @classmethod
    def from_settings(cls, settings: Settings) -> PlanCatalog:
        def plan(plan_id: str, tier_code: str, rank: int) -> Plan:
            return Plan(
                plan_id=plan_id,
                tier_code=tier_code,
                rank=rank,
                max_terminals=getattr(settings, f"plan_{plan_id}_max_terminals"),
                prices=MappingProxyType({
                    cycle: Decimal(str(getattr(settings, f"plan_{plan_id}_{cycle.value}_price")))
                    for cycle in BillingCycle
                }),
                price_ids=MappingProxyType({
                    cycle: getattr(settings, f"plan_{plan_id}_{cycle.value}_price_id")
                    for cycle in BillingCycle
                }),
            )

        return cls(
            [
                plan("basic", "BAS", 1),
                plan("professional", "PRO", 2),
                plan("enterprise", "ENT", 3),
            ],
            reissue_policy=settings.license_key_reissue_policy,
        )

    @property
    def plans(self) -> Mapping[str, Plan]:
        return self._plans

    def get(self, plan_id: str) -> Plan:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise NotFoundError(
                f"Unknown plan: {plan_id}",
                error_code=ErrorCode.PLAN_NOT_FOUND,
                details={"plan_id": plan_id},
            ) from None

    def resolve_price(self, price_id: Optional[str]) -> Optional[PriceRef]:
        if price_id is None:
            return None
        return self._price_index.get(price_id)

    def requires_key_reissue(
        self,
        previous_plan_id: str,
        new_plan_id: str,
        previous_cycle: BillingCycle,
        new_cycle: BillingCycle,
    ) -> bool:
        """Whether a plan change must issue a new license key."""
        if self.reissue_policy == "never":
            return False
        if self.reissue_policy == "any_change":
            return previous_plan_id != new_plan_id or previous_cycle != new_cycle
        return self.get(previous_plan_id).tier_code != self.get(new_plan_id).tier_code
