"""Result types returned by the state machine and the event router.

Handlers report what happened through these values instead of raising, so
the webhook processor can pick COMPLETED, FAILED or SKIPPED for the ledger
without inspecting exception types.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any

from hookly.domain.plans import Plan


class ErrorKind(StrEnum):
    USER_NOT_FOUND = "user_not_found"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_PROMO_CODE = "invalid_promo_code"
    PROCESSING = "processing"


class HandlerKind(StrEnum):
    APPLIED = "applied"
    NOOP = "noop"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Conversion:
    """Audit record of one plan change, published after the change is stored."""

    user_id: str
    from_plan: Plan
    to_plan: Plan
    amount: Decimal
    source: str


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one state machine operation.

    ok and changed: the account was written.
    ok, not changed: nothing to do (stale event).
    not ok: rejected, error_kind says why; the account is untouched.
    """

    ok: bool
    changed: bool = False
    from_plan: Plan | None = None
    to_plan: Plan | None = None
    error_kind: ErrorKind | None = None
    reason: str = ""
    conversion: Conversion | None = None
    account: Any = None

    @classmethod
    def rejected(cls, error_kind: ErrorKind, reason: str, from_plan: Plan | None = None, to_plan: Plan | None = None):
        return cls(ok=False, error_kind=error_kind, reason=reason, from_plan=from_plan, to_plan=to_plan)

    @classmethod
    def unchanged(cls, reason: str, plan: Plan | None = None):
        return cls(ok=True, changed=False, reason=reason, from_plan=plan, to_plan=plan)


@dataclass(frozen=True)
class HandlerResult:
    kind: HandlerKind
    reason: str = ""
    error_kind: ErrorKind | None = None
    transition: TransitionResult | None = None

    @classmethod
    def skipped(cls, reason: str) -> "HandlerResult":
        return cls(HandlerKind.SKIPPED, reason=reason)

    @classmethod
    def noop(cls, reason: str) -> "HandlerResult":
        return cls(HandlerKind.NOOP, reason=reason)

    @classmethod
    def failed(cls, error_kind: ErrorKind, reason: str) -> "HandlerResult":
        return cls(HandlerKind.FAILED, reason=reason, error_kind=error_kind)

    @classmethod
    def from_transition(cls, transition: TransitionResult) -> "HandlerResult":
        if not transition.ok:
            return cls(HandlerKind.FAILED, reason=transition.reason, error_kind=transition.error_kind, transition=transition)
        if not transition.changed:
            return cls(HandlerKind.NOOP, reason=transition.reason, transition=transition)
        return cls(HandlerKind.APPLIED, reason=transition.reason, transition=transition)
