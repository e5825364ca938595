from datetime import timedelta

from settlement.core.errors import ProcessorError
from settlement.models.audit_log import AuditLog
from settlement.models.booking import Booking
from settlement.services.sweep_service import claim_booking, diagnose_transfers, run_transfer_sweep
from tests.factories import NOW, make_booking, make_guide


def _due(db, guide, **kw):
    return make_booking(db, guide, scheduled_for=NOW - timedelta(minutes=5), **kw)


def test_sweep_transfers_due_booking(db, ctx, processor):
    guide = make_guide(db, full_name="Marta Lopez")
    booking = _due(db, guide, amount="125.50")

    summary = run_transfer_sweep(db, ctx)

    assert summary["success"] is True
    assert summary["totalPending"] == 1
    assert summary["succeeded"] == 1
    db.refresh(booking)
    assert booking.transfer_id == "tr_1"
    assert booking.transfer_status == "completed"
    assert booking.transfer_processed_at is not None
    assert booking.transfer_notes == "Transferred EUR125.50 to Marta Lopez"
    call = processor.transfers[0]
    assert str(call["amount"]) == "125.50"
    assert call["destination"] == "acct_guide"
    assert call["idempotency_key"] == f"transfer_{booking.id}"
    assert call["metadata"].booking_reference == booking.booking_reference
    assert db.query(AuditLog).filter_by(entity_id=booking.id, action="transfer.completed").count() == 1


def test_sweep_ignores_not_yet_due_and_unpaid(db, ctx, processor):
    guide = make_guide(db)
    make_booking(db, guide, scheduled_for=NOW + timedelta(minutes=1))
    make_booking(db, guide, scheduled_for=NOW - timedelta(hours=1), payment_status="pending")
    make_booking(db, guide, scheduled_for=NOW - timedelta(hours=1), status="cancelled")
    make_booking(db, guide)

    summary = run_transfer_sweep(db, ctx)

    assert summary["totalPending"] == 0
    assert processor.transfers == []


def test_two_sweeps_transfer_once(db, ctx, processor):
    guide = make_guide(db)
    booking = _due(db, guide)

    run_transfer_sweep(db, ctx)
    second = run_transfer_sweep(db, ctx)

    assert second["totalPending"] == 0
    assert len(processor.transfers) == 1
    db.refresh(booking)
    assert booking.transfer_id == "tr_1"


def test_booking_claimed_by_another_run_is_left_alone(db, ctx, processor):
    guide = make_guide(db)
    booking = _due(db, guide, transfer_status="processing", transfer_claimed_at=NOW - timedelta(minutes=1))

    summary = run_transfer_sweep(db, ctx)

    assert summary["totalPending"] == 0
    assert processor.transfers == []
    db.refresh(booking)
    assert booking.transfer_id is None


def test_stale_claim_is_taken_over(db, ctx, processor):
    guide = make_guide(db)
    booking = _due(db, guide, transfer_status="processing", transfer_claimed_at=NOW - timedelta(hours=1))

    summary = run_transfer_sweep(db, ctx)

    assert summary["succeeded"] == 1
    db.refresh(booking)
    assert booking.transfer_status == "completed"


def test_claim_is_exclusive(db, ctx):
    guide = make_guide(db)
    booking = _due(db, guide)

    assert claim_booking(db, booking.id, NOW, ctx) is True
    assert claim_booking(db, booking.id, NOW, ctx) is False


def test_one_failure_does_not_abort_batch(db, ctx, processor, alerts):
    guide = make_guide(db)
    bookings = [_due(db, guide) for _ in range(5)]
    bad = bookings[2]
    processor.fail_bookings[bad.id] = ProcessorError("Stripe transfer failed: rate limited", code="rate_limit")

    summary = run_transfer_sweep(db, ctx)

    assert summary["success"] is True
    assert summary["succeeded"] == 4
    assert summary["failed"] == 1
    failed = [r for r in summary["results"] if r["status"] == "failed"]
    assert failed[0]["bookingId"] == bad.id
    assert failed[0]["retryable"] is True

    db.refresh(bad)
    assert bad.transfer_id is None
    assert bad.transfer_status == "failed"
    assert bad.transfer_notes.startswith("Transfer failed:")
    assert bad.transfer_needs_review is False
    assert len(alerts) == 1


def test_transient_failure_is_retried_next_run(db, ctx, processor):
    guide = make_guide(db)
    booking = _due(db, guide)
    processor.fail_bookings[booking.id] = TimeoutError("read timed out")

    first = run_transfer_sweep(db, ctx)
    assert first["failed"] == 1

    del processor.fail_bookings[booking.id]
    second = run_transfer_sweep(db, ctx)

    assert second["succeeded"] == 1
    db.refresh(booking)
    assert booking.transfer_status == "completed"
    assert booking.transfer_id is not None


def test_missing_stripe_account_is_permanent(db, ctx, processor, alerts):
    guide = make_guide(db, stripe_account_id=None)
    booking = _due(db, guide)

    first = run_transfer_sweep(db, ctx)

    assert first["failed"] == 1
    assert first["results"][0]["retryable"] is False
    assert processor.transfers == []
    db.refresh(booking)
    assert booking.transfer_needs_review is True
    assert "no Stripe account" in booking.transfer_notes
    assert alerts

    second = run_transfer_sweep(db, ctx)
    assert second["totalPending"] == 0


def test_missing_payment_reference_is_permanent(db, ctx, processor):
    guide = make_guide(db)
    booking = _due(db, guide, payment_id=None)

    summary = run_transfer_sweep(db, ctx)

    assert summary["failed"] == 1
    assert processor.transfers == []
    db.refresh(booking)
    assert booking.transfer_needs_review is True


def test_unsupported_currency_flags_data_problem(db, ctx, processor, alerts):
    guide = make_guide(db, currency="XXX")
    booking = _due(db, guide)

    summary = run_transfer_sweep(db, ctx)

    assert summary["failed"] == 1
    assert processor.transfers == []
    assert booking.booking_reference in alerts[0][1]


def test_batch_limit(db, ctx, processor):
    ctx.transfer_batch_limit = 3
    guide = make_guide(db)
    for _ in range(5):
        _due(db, guide)

    summary = run_transfer_sweep(db, ctx)

    assert summary["totalPending"] == 3
    assert db.query(Booking).filter(Booking.transfer_id.isnot(None)).count() == 3


def test_diagnose_lists_reasons(db):
    ready_guide = make_guide(db)
    no_account = make_guide(db, stripe_account_id=None)
    ready = _due(db, ready_guide)
    make_booking(db, ready_guide, scheduled_for=NOW + timedelta(minutes=90))
    make_booking(db, no_account, scheduled_for=NOW - timedelta(minutes=1), payment_status="pending")

    report = diagnose_transfers(db, NOW)

    assert report["summary"] == {"total": 3, "readyForCron": 1, "notReady": 2}
    by_ref = {b["bookingReference"]: b for b in report["bookings"]}
    assert by_ref[ready.booking_reference]["reasons"] == ["Ready for transfer"]
    assert report["commonIssues"]["Scheduled for future (in 90 minutes)"] == 1
    assert report["commonIssues"]["Guide has no Stripe account"] == 1
    assert report["commonIssues"]["Payment status is 'pending' (needs 'paid')"] == 1
