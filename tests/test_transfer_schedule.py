from datetime import timedelta

import pytest

from settlement.core.errors import SettlementValidationError
from settlement.models.audit_log import AuditLog
from settlement.services.transfer_schedule import (
    calculate_tour_completion_time,
    calculate_transfer_time,
    describe_transfer_status,
    get_optimal_transfer_time,
    is_ready_for_transfer,
    schedule_booking_transfer,
)
from tests.factories import NOW, make_booking, make_guide


@pytest.mark.parametrize("start_offset", [timedelta(minutes=-90), timedelta(hours=1), timedelta(days=30)])
def test_non_refundable_transfers_within_three_minutes(start_offset):
    t = calculate_transfer_time(NOW + start_offset, "nonRefundable", now=NOW)
    assert NOW <= t < NOW + timedelta(minutes=3)


@pytest.mark.parametrize("policy_id, hours", [("flexible", 24), ("moderate", 48), ("strict", 168), ("custom_10", 10)])
def test_transfer_waits_for_refund_window_plus_an_hour(policy_id, hours):
    start = NOW + timedelta(days=10)
    assert calculate_transfer_time(start, policy_id, now=NOW) == start - timedelta(hours=hours + 1)


def test_window_already_closed_collapses_to_buffer():
    start = NOW + timedelta(hours=2)
    assert calculate_transfer_time(start, "flexible", now=NOW) == NOW + timedelta(minutes=2)


def test_window_closing_exactly_now_is_kept():
    start = NOW + timedelta(hours=25)
    assert calculate_transfer_time(start, "flexible", now=NOW) == NOW


def test_completion_time_adds_duration_and_buffer():
    assert calculate_tour_completion_time(NOW, 90) == NOW + timedelta(minutes=120)


def test_completed_tour_is_immediate():
    start = NOW - timedelta(hours=5)
    schedule = get_optimal_transfer_time(start, 120, "strict", "completed", now=NOW)
    assert schedule.immediate is True
    assert schedule.transfer_time == NOW + timedelta(minutes=2)


@pytest.mark.parametrize("elapsed", [timedelta(hours=-5), timedelta(hours=5), timedelta(days=60)])
def test_confirmed_booking_is_never_immediate(elapsed):
    schedule = get_optimal_transfer_time(NOW - elapsed, 60, "flexible", "confirmed", now=NOW)
    assert schedule.immediate is False


def test_completed_but_still_running_uses_window():
    schedule = get_optimal_transfer_time(NOW - timedelta(minutes=30), 120, "flexible", "completed", now=NOW)
    assert schedule.immediate is False


def test_schedule_booking_transfer_persists_and_audits(db):
    guide = make_guide(db)
    booking = make_booking(db, guide, tour_start=NOW + timedelta(days=5), policy="moderate")

    schedule = schedule_booking_transfer(db, booking, now=NOW)

    db.refresh(booking)
    assert schedule.transfer_time == NOW + timedelta(days=5) - timedelta(hours=49)
    assert booking.transfer_scheduled_for.replace(tzinfo=None) == schedule.transfer_time.replace(tzinfo=None)
    assert db.query(AuditLog).filter_by(entity_id=booking.id, action="transfer.scheduled").count() == 1


def test_schedule_refused_for_pending_booking(db):
    guide = make_guide(db)
    booking = make_booking(db, guide, status="pending")
    with pytest.raises(SettlementValidationError):
        schedule_booking_transfer(db, booking, now=NOW)


def test_is_ready_for_transfer(db):
    guide = make_guide(db)
    due = make_booking(db, guide, scheduled_for=NOW - timedelta(minutes=1))
    future = make_booking(db, guide, scheduled_for=NOW + timedelta(minutes=1))
    unpaid = make_booking(db, guide, payment_status="pending", scheduled_for=NOW - timedelta(hours=1))
    unscheduled = make_booking(db, guide)

    assert is_ready_for_transfer(due, NOW) is True
    assert is_ready_for_transfer(future, NOW) is False
    assert is_ready_for_transfer(unpaid, NOW) is False
    assert is_ready_for_transfer(unscheduled, NOW) is False


def test_status_messages(db):
    guide = make_guide(db)
    assert describe_transfer_status(make_booking(db, guide, scheduled_for=NOW + timedelta(hours=50)), NOW)["text"] == "Transfer in 3 days"
    assert describe_transfer_status(make_booking(db, guide, scheduled_for=NOW + timedelta(minutes=30)), NOW)["text"] == "Transfer in 1 hour"
    assert describe_transfer_status(make_booking(db, guide, scheduled_for=NOW - timedelta(minutes=1)), NOW)["text"] == "Processing transfer..."
    assert describe_transfer_status(make_booking(db, guide, transfer_id="tr_x", transfer_status="completed"), NOW)["text"] == "Transferred to your account"
    assert describe_transfer_status(make_booking(db, guide, transfer_id="tr_y", transfer_status="reversed"), NOW)["state"] == "reversed"
    assert describe_transfer_status(make_booking(db, guide, transfer_status="failed"), NOW)["text"] == "Transfer failed - contact support"
    assert describe_transfer_status(make_booking(db, guide, status="cancelled"), NOW)["text"] == "Booking cancelled"
    assert describe_transfer_status(make_booking(db, guide), NOW)["text"] == "Payment received"
