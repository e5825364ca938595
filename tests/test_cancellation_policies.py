from datetime import timedelta
from decimal import Decimal

import pytest

from settlement.services.cancellation_policies import (
    CANCELLATION_POLICIES,
    calculate_refund,
    get_max_refund_hours,
    resolve_policy,
)
from tests.factories import NOW


@pytest.mark.parametrize("policy_id, hours", [
    ("flexible", 24),
    ("moderate", 48),
    ("strict", 168),
    ("veryFlexible", 2),
    ("nonRefundable", 0),
    ("custom_36", 36),
    ("custom_0", 24),
    ("custom_abc", 24),
    ("somethingElse", 24),
    (None, 24),
])
def test_max_refund_hours(policy_id, hours):
    assert get_max_refund_hours(policy_id) == hours


def test_custom_policy_rules_halve_the_window():
    policy = resolve_policy("custom_36")
    assert [(r.hours_before_tour, r.refund_percentage) for r in policy.rules] == [(36, 100), (18, 50), (0, 0)]


def test_unknown_and_invalid_custom_fall_back_to_flexible():
    assert resolve_policy("nope") is CANCELLATION_POLICIES["flexible"]
    assert resolve_policy("custom_-5") is CANCELLATION_POLICIES["flexible"]
    assert resolve_policy("") is CANCELLATION_POLICIES["flexible"]


def test_refund_full_when_outside_window():
    calc = calculate_refund(Decimal("80.00"), NOW + timedelta(hours=30), "flexible", now=NOW)
    assert calc.is_refundable is True
    assert calc.refund_percentage == 100
    assert calc.refund_amount == Decimal("80.00")


def test_refund_half_inside_window():
    calc = calculate_refund(Decimal("80.00"), NOW + timedelta(hours=13), "flexible", now=NOW)
    assert calc.refund_percentage == 50
    assert calc.refund_amount == Decimal("40.00")


def test_strict_quarter_refund():
    calc = calculate_refund(Decimal("99.99"), NOW + timedelta(hours=30), "strict", now=NOW)
    assert calc.refund_percentage == 25
    assert calc.refund_amount == Decimal("25.00")


def test_no_refund_close_to_start_but_cancel_allowed():
    calc = calculate_refund(Decimal("80.00"), NOW + timedelta(hours=1), "flexible", now=NOW)
    assert calc.is_refundable is False
    assert calc.can_cancel is True
    assert calc.refund_amount == Decimal("0.00")


def test_started_tour_cannot_be_cancelled():
    calc = calculate_refund(Decimal("80.00"), NOW - timedelta(minutes=5), "flexible", now=NOW)
    assert calc.can_cancel is False
    assert calc.rule == "Tour has already started"


def test_guide_cancellation_always_refunds_in_full():
    calc = calculate_refund(Decimal("80.00"), NOW + timedelta(hours=1), "nonRefundable", cancelled_by="guide", now=NOW)
    assert calc.refund_percentage == 100
    assert calc.refund_amount == Decimal("80.00")
    assert calc.as_dict()["refundAmount"] == "80.00"
