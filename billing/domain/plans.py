from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from billing.errors import ValidationError

from .enums import DurationUnit, PlanTier

MONTHS_PER_UNIT = {
    DurationUnit.MONTH: 1,
    DurationUnit.QUARTER: 3,
    DurationUnit.YEAR: 12,
}


@dataclass(frozen=True)
class Plan:
    plan_id: str
    tier: PlanTier
    duration_unit: DurationUnit
    duration_count: int
    price_minor_units: int
    checkout_price_cents: int
    display_name: str

    @property
    def price(self) -> Decimal:
        """Price in major units (TRY) as charged through Param."""
        return (Decimal(self.price_minor_units) / 100).quantize(Decimal("0.01"))

    @property
    def months(self) -> int:
        return MONTHS_PER_UNIT[self.duration_unit] * self.duration_count


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month addition clamped to the last day of the target month.

    2024-01-31 + 1 month is 2024-02-29, not March 2nd.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _plan(plan_id: str, tier: PlanTier, unit: DurationUnit, price: int, cents: int, label: str) -> Plan:
    return Plan(
        plan_id=plan_id,
        tier=tier,
        duration_unit=unit,
        duration_count=1,
        price_minor_units=price,
        checkout_price_cents=cents,
        display_name=label,
    )


_PLANS = (
    _plan("basic_monthly", PlanTier.BASIC, DurationUnit.MONTH, 100, 99, "Basic Monthly Subscription"),
    _plan("basic_3months", PlanTier.BASIC, DurationUnit.QUARTER, 200, 199, "Basic 3-Month Subscription"),
    _plan("basic_yearly", PlanTier.BASIC, DurationUnit.YEAR, 900, 899, "Basic Yearly Subscription"),
    _plan("premium_monthly", PlanTier.PREMIUM, DurationUnit.MONTH, 300, 299, "Premium Monthly Subscription"),
    _plan("premium_3months", PlanTier.PREMIUM, DurationUnit.QUARTER, 650, 649, "Premium 3-Month Subscription"),
    _plan("premium_yearly", PlanTier.PREMIUM, DurationUnit.YEAR, 2000, 1999, "Premium Yearly Subscription"),
    _plan("vip_monthly", PlanTier.VIP, DurationUnit.MONTH, 750, 749, "VIP Monthly Subscription"),
    _plan("vip_3months", PlanTier.VIP, DurationUnit.QUARTER, 1500, 1499, "VIP 3-Month Subscription"),
    _plan("vip_yearly", PlanTier.VIP, DurationUnit.YEAR, 2600, 2599, "VIP Yearly Subscription"),
)


class PlanCatalog:
    """Read-only plan lookup."""

    def __init__(self, plans: tuple[Plan, ...] = _PLANS) -> None:
        self._plans: Mapping[str, Plan] = MappingProxyType({p.plan_id: p for p in plans})

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans

    def __iter__(self):
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)

    def get(self, plan_id: str) -> Plan | None:
        return self._plans.get(plan_id)

    def require(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise ValidationError(f"Invalid subscription type: {plan_id}")
        return plan

    def expiry_for(self, plan_id: str, purchase_date: datetime) -> datetime:
        return add_months(purchase_date, self.require(plan_id).months)

    def infer_from_product_id(self, product_id: str) -> Plan:
        """Guess the plan from an app-store product identifier.

        Store product ids embed the tier and duration (``com.app.vip_yearly``);
        anything unrecognised falls back to the basic tier and monthly duration.
        """
        lowered = product_id.lower()
        if "vip" in lowered:
            tier = PlanTier.VIP
        elif "premium" in lowered:
            tier = PlanTier.PREMIUM
        else:
            tier = PlanTier.BASIC
        if "yearly" in lowered:
            suffix = "yearly"
        elif "3months" in lowered:
            suffix = "3months"
        else:
            suffix = "monthly"
        return self._plans[f"{tier.value}_{suffix}"]


def features_for(tier: PlanTier | None, active: bool) -> dict[str, bool]:
    """Feature availability matrix per subscription tier."""
    paid = active and tier in {PlanTier.PREMIUM, PlanTier.VIP}
    vip = active and tier is PlanTier.VIP
    return {
        "basic_matching": True,
        "messages": True,
        "ai_matches": paid,
        "lightning_matches": paid,
        "map_love": vip,
        "popup_dating": vip,
        "ai_dating_coach": True,
    }


catalog = PlanCatalog()
