"""Subscription plan tiers and the plan catalog.

Pure domain definitions. No DB access.
Tier order is TRIAL < STARTER < PRO < AGENCY; every monotonic-upgrade check
goes through tier_rank().
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType


class Plan(StrEnum):
    """Subscription tiers, declared in ascending order."""

    TRIAL = "trial"
    STARTER = "starter"
    PRO = "pro"
    AGENCY = "agency"


PLAN_ORDER: tuple[Plan, ...] = (Plan.TRIAL, Plan.STARTER, Plan.PRO, Plan.AGENCY)


@dataclass(frozen=True)
class PlanTerms:
    """Commercial terms of one tier."""

    plan: Plan
    name: str
    monthly_quota: int | None  # None = unbounded
    price_cents: int

    @property
    def is_unbounded(self) -> bool:
        return self.monthly_quota is None


PLAN_CATALOG: Mapping[Plan, PlanTerms] = MappingProxyType({
    Plan.TRIAL: PlanTerms(Plan.TRIAL, "Trial", monthly_quota=15, price_cents=0),
    Plan.STARTER: PlanTerms(Plan.STARTER, "Starter", monthly_quota=50, price_cents=1900),
    Plan.PRO: PlanTerms(Plan.PRO, "Pro", monthly_quota=200, price_cents=5900),
    Plan.AGENCY: PlanTerms(Plan.AGENCY, "Agency", monthly_quota=500, price_cents=14900),
})


def tier_rank(plan: Plan | str) -> int:
    """Position of a plan in the tier order (TRIAL == 0)."""
    return PLAN_ORDER.index(Plan(plan))


def parse_plan(value: object) -> Plan | None:
    """Case-insensitive plan lookup. Returns None for anything unrecognised."""
    if isinstance(value, Plan):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Plan(value.strip().lower())
    except ValueError:
        return None


def is_upgrade_or_lateral(current: Plan | str, target: Plan | str) -> bool:
    """True when moving current -> target does not lower the tier."""
    return tier_rank(target) >= tier_rank(current)


def next_plan(plan: Plan | str) -> Plan | None:
    """The tier directly above plan, or None at the top."""
    index = tier_rank(plan) + 1
    return PLAN_ORDER[index] if index < len(PLAN_ORDER) else None
