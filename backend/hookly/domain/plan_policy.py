"""Plan determination: provider product data -> internal plan tier.

Pure domain logic. No DB access, no logging; callers log fallback results.

Priority order:
1. explicit plan in custom metadata (meta.custom_data.plan or
   data.attributes.custom_data.plan)
2. configured product/variant id mapping
3. tier keywords in product_name + variant_name, highest tier wins
4. configured fallback plan, flagged with fallback_used=True
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from hookly.domain.plans import Plan, parse_plan, tier_rank
from hookly.domain.webhooks import WebhookEnvelope


class PlanSource(StrEnum):
    CUSTOM_DATA = "custom_data"
    PRODUCT_ID = "product_id"
    PRODUCT_NAME = "product_name"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PlanDeterminationResult:
    plan: Plan
    source: PlanSource

    @property
    def fallback_used(self) -> bool:
        return self.source == PlanSource.FALLBACK


DEFAULT_PRODUCT_PLAN_MAPPING: Mapping[str, Plan] = MappingProxyType({
    "starter_monthly": Plan.STARTER,
    "starter_yearly": Plan.STARTER,
    "pro_monthly": Plan.PRO,
    "pro_yearly": Plan.PRO,
    "agency_monthly": Plan.AGENCY,
    "agency_yearly": Plan.AGENCY,
})

DEFAULT_PLAN_KEYWORDS: Mapping[str, Plan] = MappingProxyType({
    "starter": Plan.STARTER,
    "pro": Plan.PRO,
    "agency": Plan.AGENCY,
})

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


class PlanDeterminationPolicy:
    """Maps provider product metadata to a plan. Total and deterministic."""

    def __init__(
        self,
        product_mapping: Mapping[str, Plan] = DEFAULT_PRODUCT_PLAN_MAPPING,
        keywords: Mapping[str, Plan] = DEFAULT_PLAN_KEYWORDS,
        fallback_plan: Plan = Plan.PRO,
    ):
        self._product_mapping = MappingProxyType({k.lower(): Plan(v) for k, v in product_mapping.items()})
        self._keywords = MappingProxyType({k.lower(): Plan(v) for k, v in keywords.items()})
        self._fallback_plan = Plan(fallback_plan)

    @property
    def fallback_plan(self) -> Plan:
        return self._fallback_plan

    def determine_plan(self, envelope: WebhookEnvelope) -> PlanDeterminationResult:
        plan = self._plan_from_custom_data(envelope)
        if plan is not None:
            return PlanDeterminationResult(plan, PlanSource.CUSTOM_DATA)

        plan = self._plan_from_product_ids(envelope.product_id, envelope.variant_id)
        if plan is not None:
            return PlanDeterminationResult(plan, PlanSource.PRODUCT_ID)

        plan = self._plan_from_names(envelope.product_name, envelope.variant_name)
        if plan is not None:
            return PlanDeterminationResult(plan, PlanSource.PRODUCT_NAME)

        return PlanDeterminationResult(self._fallback_plan, PlanSource.FALLBACK)

    def _plan_from_custom_data(self, envelope: WebhookEnvelope) -> Plan | None:
        attributes = envelope.raw.get("data", {}).get("attributes", {})
        attribute_custom = attributes.get("custom_data") if isinstance(attributes, dict) else None
        candidates = [envelope.custom_data.get("plan")]
        if isinstance(attribute_custom, dict):
            candidates.append(attribute_custom.get("plan"))
        for candidate in candidates:
            plan = parse_plan(candidate)
            if plan is not None:
                return plan
        return None

    def _plan_from_product_ids(self, *ids: str | None) -> Plan | None:
        for product_id in ids:
            if product_id and product_id.lower() in self._product_mapping:
                return self._product_mapping[product_id.lower()]
        return None

    def _plan_from_names(self, *names: str | None) -> Plan | None:
        tokens = _tokens(name for name in names if name)
        matches = [plan for keyword, plan in self._keywords.items() if keyword in tokens]
        if not matches:
            return None
        return max(matches, key=tier_rank)


def _tokens(texts: Iterable[str]) -> set[str]:
    words: set[str] = set()
    for text in texts:
        words.update(token for token in _TOKEN_SPLIT.split(text.lower()) if token)
    return words
