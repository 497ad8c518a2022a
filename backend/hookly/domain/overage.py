"""Usage-versus-quota accounting.

evaluate_overage() is a pure function: it reads counters and returns a
report. Persisting counters or the warning-sent flag happens in
OverageAccountant, not here.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from hookly.domain.plans import PLAN_CATALOG, Plan, next_plan

CENT = Decimal("0.01")


@dataclass(frozen=True)
class OverageRates:
    rate_per_unit: Decimal = Decimal("0.15")
    warn_threshold: float = 0.8
    upgrade_threshold: float = 0.9


@dataclass(frozen=True)
class OverageReport:
    current_usage: int
    limit: int | None  # None = unbounded
    overage_units: int
    overage_charge: Decimal
    usage_percentage: float
    should_warn: bool
    should_prompt_upgrade: bool
    recommended_plan: Plan


def evaluate_overage(
    plan: Plan,
    usage_count: int,
    usage_limit: int | None,
    rates: OverageRates = OverageRates(),
) -> OverageReport:
    """Compute overage units, charge and prompt flags for one account.

    Args:
        plan: Current plan of the account
        usage_count: Units consumed this period
        usage_limit: Quota for the period, None when unbounded
        rates: Per-unit rate and warning/upgrade thresholds

    Returns:
        OverageReport. Unbounded quotas never produce overage and report 0%.
    """
    usage = max(0, usage_count)

    if usage_limit is None:
        overage_units = 0
        ratio = 0.0
    elif usage_limit <= 0:
        overage_units = usage
        ratio = 1.0 if usage else 0.0
    else:
        overage_units = max(0, usage - usage_limit)
        ratio = usage / usage_limit

    overage_charge = (Decimal(overage_units) * rates.rate_per_unit).quantize(CENT, rounding=ROUND_HALF_UP)

    # Thresholds compare against the ratio, not the percentage, so 40/50 meets 0.8 exactly
    usage_percentage = ratio * 100
    should_warn = usage_limit is not None and ratio >= rates.warn_threshold
    should_prompt_upgrade = (usage_limit is not None and ratio >= rates.upgrade_threshold) or overage_charge > 0

    return OverageReport(
        current_usage=usage,
        limit=usage_limit,
        overage_units=overage_units,
        overage_charge=overage_charge,
        usage_percentage=usage_percentage,
        should_warn=should_warn,
        should_prompt_upgrade=should_prompt_upgrade,
        recommended_plan=recommend_plan(plan, usage, usage_limit),
    )


def recommend_plan(plan: Plan, usage_count: int, usage_limit: int | None) -> Plan:
    """Suggest a tier from the usage ratio.

    Rules:
        - unbounded quota or usage under 80%: stay on the current plan
        - zero quota: AGENCY
        - 80% to 150%: next tier up
        - 150% and above: AGENCY
    """
    if usage_limit is None:
        return plan
    if usage_limit <= 0:
        return Plan.AGENCY

    ratio = usage_count / usage_limit
    if ratio >= 1.5:
        return Plan.AGENCY
    if ratio >= 0.8:
        return next_plan(plan) or plan
    return plan


def upgrade_prompt(report: OverageReport, plan: Plan) -> str:
    """User-facing nudge text for a report, empty when no prompt is due."""
    target = PLAN_CATALOG[report.recommended_plan].name
    suggestion = f" Upgrading to {target} raises your limit." if report.recommended_plan != plan else ""
    if report.overage_charge > 0:
        return (
            f"You've exceeded your monthly limit by {report.overage_units} generations. "
            f"Current overage charges: ${report.overage_charge:.2f}. "
            "Consider upgrading to avoid additional charges."
            f"{suggestion}"
        )
    if report.should_prompt_upgrade:
        return (
            f"You're at {report.usage_percentage:.1f}% of your monthly limit. "
            "Upgrade now to avoid overage charges and unlock more features."
            f"{suggestion}"
        )
    return ""
