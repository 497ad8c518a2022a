"""Promo code evaluation.

Pure domain functions. The promo table is immutable configuration handed to
the subscription state machine at construction time.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from hookly.domain.plans import Plan, is_upgrade_or_lateral

DEFAULT_BETA_DURATION_DAYS = 30


@dataclass(frozen=True)
class PromoCode:
    target_plan: Plan
    description: str
    is_beta_grant: bool = False
    duration_days: int | None = None


DEFAULT_PROMO_CODES: Mapping[str, PromoCode] = MappingProxyType({
    "STARTER50": PromoCode(Plan.STARTER, "Launch Special - 50% off Starter"),
    "LAUNCH50": PromoCode(Plan.STARTER, "Launch Special - 50% off Starter"),
    "BETA_PRO": PromoCode(Plan.PRO, "Beta Tester - 30 Days Free PRO Access", is_beta_grant=True, duration_days=30),
    "AGENCY30": PromoCode(Plan.AGENCY, "Agency Trial - 30 days free", duration_days=30),
})


@dataclass(frozen=True)
class PromoEvaluation:
    """Outcome of checking a code against the account's current plan."""

    is_valid: bool
    message: str
    promo: PromoCode | None = None

    @property
    def beta_duration_days(self) -> int:
        if self.promo is None or self.promo.duration_days is None:
            return DEFAULT_BETA_DURATION_DAYS
        return self.promo.duration_days


def evaluate_promo_code(
    current_plan: Plan,
    code: str,
    promo_codes: Mapping[str, PromoCode] = DEFAULT_PROMO_CODES,
) -> PromoEvaluation:
    """Check whether code exists and would not lower current_plan.

    Codes are matched case-insensitively.
    """
    promo = promo_codes.get(code.strip().upper()) if code else None
    if promo is None:
        return PromoEvaluation(is_valid=False, message="Invalid promo code")

    if not is_upgrade_or_lateral(current_plan, promo.target_plan):
        return PromoEvaluation(
            is_valid=False,
            message="Promo code not applicable to your current plan",
            promo=promo,
        )

    return PromoEvaluation(is_valid=True, message=promo.description, promo=promo)
