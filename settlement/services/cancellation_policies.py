"""
Cancellation policies: refund rules per policy id, and the refund window length
the transfer scheduler waits out before releasing money to the guide.

Policy ids are the named presets below or ``custom_<hours>`` (e.g. ``custom_36``).
Anything unknown or malformed resolves to ``flexible``.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from settlement.core.timeutil import ensure_utc, utcnow

DEFAULT_POLICY_ID = "flexible"
NON_REFUNDABLE = "nonRefundable"
# Refund window assumed when the policy cannot be resolved at all
DEFAULT_MAX_REFUND_HOURS = 24


@dataclass(frozen=True)
class CancellationRule:
    hours_before_tour: int
    refund_percentage: int
    description: str


@dataclass(frozen=True)
class CancellationPolicy:
    id: str
    name: str
    description: str
    rules: tuple[CancellationRule, ...]


@dataclass(frozen=True)
class RefundCalculation:
    is_refundable: bool
    refund_percentage: int
    refund_amount: Decimal
    rule: str
    hours_until_tour: float
    can_cancel: bool

    def as_dict(self) -> dict:
        return {
            "isRefundable": self.is_refundable,
            "refundPercentage": self.refund_percentage,
            "refundAmount": str(self.refund_amount),
            "rule": self.rule,
            "timeUntilTour": round(self.hours_until_tour, 2),
            "canCancel": self.can_cancel,
        }


CANCELLATION_POLICIES: dict[str, CancellationPolicy] = {
    "flexible": CancellationPolicy(
        id="flexible",
        name="Flexible",
        description="Full refund up to 24 hours before the tour",
        rules=(
            CancellationRule(24, 100, "Full refund if cancelled 24+ hours before tour"),
            CancellationRule(12, 50, "50% refund if cancelled 12-24 hours before tour"),
            CancellationRule(0, 0, "No refund if cancelled less than 12 hours before tour"),
        ),
    ),
    "moderate": CancellationPolicy(
        id="moderate",
        name="Moderate",
        description="Full refund up to 48 hours before the tour",
        rules=(
            CancellationRule(48, 100, "Full refund if cancelled 48+ hours before tour"),
            CancellationRule(24, 50, "50% refund if cancelled 24-48 hours before tour"),
            CancellationRule(0, 0, "No refund if cancelled less than 24 hours before tour"),
        ),
    ),
    "strict": CancellationPolicy(
        id="strict",
        name="Strict",
        description="Full refund up to 7 days before the tour",
        rules=(
            CancellationRule(168, 100, "Full refund if cancelled 7+ days before tour"),
            CancellationRule(72, 50, "50% refund if cancelled 3-7 days before tour"),
            CancellationRule(24, 25, "25% refund if cancelled 1-3 days before tour"),
            CancellationRule(0, 0, "No refund if cancelled less than 24 hours before tour"),
        ),
    ),
    NON_REFUNDABLE: CancellationPolicy(
        id=NON_REFUNDABLE,
        name="Non-Refundable",
        description="No refunds allowed",
        rules=(CancellationRule(0, 0, "No refunds - all sales are final"),),
    ),
    "veryFlexible": CancellationPolicy(
        id="veryFlexible",
        name="Very Flexible",
        description="Full refund up to 2 hours before the tour",
        rules=(
            CancellationRule(2, 100, "Full refund if cancelled 2+ hours before tour"),
            CancellationRule(0, 0, "No refund if cancelled less than 2 hours before tour"),
        ),
    ),
}


def _custom_hours(policy_id: str) -> int | None:
    if not policy_id.startswith("custom_"):
        return None
    raw = policy_id.split("_", 1)[1]
    if not raw.isdigit():
        return None
    hours = int(raw)
    return hours if hours > 0 else None


def _custom_policy(policy_id: str, hours: int) -> CancellationPolicy:
    half = hours // 2
    return CancellationPolicy(
        id=policy_id,
        name=f"Custom ({hours}h)",
        description=f"Custom {hours}-hour cancellation window",
        rules=(
            CancellationRule(hours, 100, f"100% refund if cancelled {hours}+ hours before tour"),
            CancellationRule(half, 50, f"50% refund if cancelled {half}-{hours} hours before tour"),
            CancellationRule(0, 0, f"No refund if cancelled less than {half} hours before tour"),
        ),
    )


def resolve_policy(policy_id: str | None) -> CancellationPolicy:
    policy_id = (policy_id or "").strip()
    if policy_id in CANCELLATION_POLICIES:
        return CANCELLATION_POLICIES[policy_id]
    hours = _custom_hours(policy_id)
    if hours is not None:
        return _custom_policy(policy_id, hours)
    return CANCELLATION_POLICIES[DEFAULT_POLICY_ID]


def get_max_refund_hours(policy_id: str | None) -> int:
    """Length of the refund window in hours. 0 means money can move right away."""
    policy_id = (policy_id or "").strip()
    if policy_id == NON_REFUNDABLE:
        return 0
    if policy_id in CANCELLATION_POLICIES:
        return max(r.hours_before_tour for r in CANCELLATION_POLICIES[policy_id].rules)
    hours = _custom_hours(policy_id)
    if hours is not None:
        return hours
    return DEFAULT_MAX_REFUND_HOURS


def calculate_refund(
    amount: Decimal,
    tour_start_time: datetime,
    policy_id: str | None = DEFAULT_POLICY_ID,
    cancelled_by: str = "customer",
    now: datetime | None = None,
) -> RefundCalculation:
    now = ensure_utc(now) or utcnow()
    amount = Decimal(str(amount))
    hours_until = (ensure_utc(tour_start_time) - now).total_seconds() / 3600

    if hours_until < 0:
        return RefundCalculation(False, 0, Decimal("0.00"), "Tour has already started", hours_until, False)

    # guide cancellations always refund in full
    if cancelled_by == "guide":
        return RefundCalculation(
            True, 100, amount.quantize(Decimal("0.01")),
            "Tour guide cancelled - full refund guaranteed", hours_until, True,
        )

    rules = sorted(resolve_policy(policy_id).rules, key=lambda r: r.hours_before_tour, reverse=True)
    applicable = rules[-1]
    for rule in rules:
        if hours_until >= rule.hours_before_tour:
            applicable = rule
            break

    refund = (amount * applicable.refund_percentage / Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return RefundCalculation(
        applicable.refund_percentage > 0, applicable.refund_percentage, refund,
        applicable.description, hours_until, True,
    )
