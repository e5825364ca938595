from datetime import timedelta

from settlement.models.booking import Booking
from settlement.services.sweep_service import run_transfer_sweep
from settlement.services.transfer_schedule import SWEEP_BUFFER, schedule_booking_transfer
from tests.factories import NOW, make_booking, make_guide


def test_non_refundable_booking_is_paid_out_on_the_next_sweep(db, ctx, clock, processor):
    guide = make_guide(db)
    booking = make_booking(db, guide, tour_start=NOW + timedelta(days=1), policy="nonRefundable", amount="80.00")

    schedule = schedule_booking_transfer(db, booking, now=clock())
    assert schedule.transfer_time == NOW + SWEEP_BUFFER

    # first sweep runs before the buffer has elapsed
    assert run_transfer_sweep(db, ctx)["totalPending"] == 0

    clock.advance(minutes=3)
    summary = run_transfer_sweep(db, ctx)

    assert summary["succeeded"] == 1
    db.expire_all()
    booking = db.get(Booking, booking.id)
    assert booking.transfer_status == "completed"
    assert booking.transfer_id == "tr_1"
    assert processor.transfers[0]["amount"] == booking.total_amount


def test_booking_confirmed_after_window_closed_is_swept_right_away(db, ctx, clock, processor):
    guide = make_guide(db)
    # flexible: refund window closes 24h before the tour, so it is already shut
    booking = make_booking(db, guide, tour_start=NOW + timedelta(hours=2), policy="flexible")

    schedule = schedule_booking_transfer(db, booking, now=clock())
    assert schedule.transfer_time == NOW + SWEEP_BUFFER
    assert schedule.reason == "Refund window already closed"

    clock.advance(minutes=2)
    summary = run_transfer_sweep(db, ctx)

    assert summary["succeeded"] == 1
    assert [t["idempotency_key"] for t in processor.transfers] == [f"transfer_{booking.id}"]


def test_booking_waits_until_refund_window_closes(db, ctx, clock, processor):
    guide = make_guide(db)
    booking = make_booking(db, guide, tour_start=NOW + timedelta(days=10), policy="moderate")

    schedule = schedule_booking_transfer(db, booking, now=clock())
    assert schedule.transfer_time > NOW + timedelta(days=1)

    clock.advance(days=1)
    assert run_transfer_sweep(db, ctx)["totalPending"] == 0

    clock.current = schedule.transfer_time
    assert run_transfer_sweep(db, ctx)["succeeded"] == 1
    assert len(processor.transfers) == 1
