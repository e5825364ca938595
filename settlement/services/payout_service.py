"""
Weekly payouts for platform_collected payments.

Guides in countries without Stripe Connect direct transfers are paid in one batch
per week: every paid, not yet paid out platform_collected payment created up to the
end of the last completed Sunday-Saturday week (UTC) is summed per guide and sent
as one transfer, stamped with that week. Sums below the currency minimum stay
queued and are picked up by a later week. Payments are never converted: only those
in the guide's payout currency are paid. Each guide's payout is a single database
transaction.
"""
from datetime import datetime, timedelta
from decimal import Decimal
import logging
import uuid

from sqlalchemy import func
from sqlalchemy.orm import Session

from settlement.core.errors import ConfigurationError, SettlementValidationError
from settlement.core.timeutil import ensure_utc
from settlement.models.payment import Payment
from settlement.models.payout import Payout
from settlement.models.payout_item import PayoutItem
from settlement.models.user import User
from settlement.services.audit_service import log_audit
from settlement.services.job_context import JobContext
from settlement.services.money import normalize_currency, validate_amount
from settlement.services.processor import PayoutMetadata

logger = logging.getLogger(__name__)

MINIMUM_PAYOUT_AMOUNTS = {
    "USD": Decimal("10"),
    "EUR": Decimal("10"),
    "GBP": Decimal("10"),
    "CAD": Decimal("15"),
    "AUD": Decimal("15"),
    "JPY": Decimal("1000"),
    "SEK": Decimal("100"),
    "NOK": Decimal("100"),
    "DKK": Decimal("75"),
    "CHF": Decimal("10"),
    "PLN": Decimal("40"),
    "CZK": Decimal("250"),
    "HUF": Decimal("3500"),
}
DEFAULT_MINIMUM_PAYOUT = Decimal("10")

PAYOUT_WEEKDAY = 2  # Wednesday
PAYOUT_HOUR = 12

# Countries Stripe only serves through cross-border payouts: money is collected by the platform
CROSSBORDER_ONLY_COUNTRIES = frozenset("""
AD AL DZ AG AR AM AW AZ BS BH BD BB BY BZ BJ BT BO BA BW BN BF KH CM CV CF TD CL CN CO KM CG CD
CK CR CI CU CW DJ DM DO EC EG SV GQ ER ET FJ GA GM GE GL GD GT GN GW GY HT HN IS IN ID IR IQ IL
JM JO KZ KE KI KP KR KW KG LA LB LS LR LY MO MK MG MW MV ML MH MR MU FM MD MC MN ME MA MZ MM NA
NR NP NI NE NG NU OM PK PW PS PA PG PY PE PH QA RW KN LC VC WS SM ST SA SN RS SC SL SB SO ZA SS
LK SD SR SZ SY TW TJ TL TG TO TT TN TR TM TV UG UA UY UZ VU VE VN YE ZM ZW
""".split())


def get_minimum_payout_amount(currency: str | None) -> Decimal:
    return MINIMUM_PAYOUT_AMOUNTS.get((currency or "").upper(), DEFAULT_MINIMUM_PAYOUT)


def last_completed_week(now: datetime) -> tuple[datetime, datetime]:
    """(Sunday 00:00, Saturday 23:59:59.999999) UTC of the last fully elapsed week."""
    now = ensure_utc(now)
    days_since_sunday = (now.weekday() + 1) % 7
    this_week_start = (now - timedelta(days=days_since_sunday)).replace(hour=0, minute=0, second=0, microsecond=0)
    period_start = this_week_start - timedelta(days=7)
    period_end = this_week_start - timedelta(microseconds=1)
    return period_start, period_end


def next_payout_date(now: datetime) -> datetime:
    """Next Wednesday 12:00 UTC; today if it is Wednesday before noon."""
    now = ensure_utc(now)
    days = (PAYOUT_WEEKDAY - now.weekday()) % 7
    candidate = (now + timedelta(days=days)).replace(hour=PAYOUT_HOUR, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def payout_idempotency_key(guide_id: str, period_start: datetime) -> str:
    return f"payout_{guide_id}_{period_start:%Y%m%d}"


def _payable_filter(period_end: datetime):
    # no lower bound: sums skipped as below minimum roll into a later week
    return (
        Payment.payment_type == "platform_collected",
        Payment.status == "paid",
        Payment.payout_completed.is_(False),
        Payment.created_at <= period_end,
    )


def process_weekly_payouts(db: Session, ctx: JobContext) -> dict:
    now = ctx.now()
    period_start, period_end = last_completed_week(now)
    logger.info("weekly payouts for %s .. %s", period_start.isoformat(), period_end.isoformat())

    groups = (
        db.query(Payment.tour_guide_user_id, Payment.currency, func.sum(Payment.net_amount), func.count(Payment.id))
        .filter(*_payable_filter(period_end), Payment.tour_guide_user_id.isnot(None))
        .group_by(Payment.tour_guide_user_id, Payment.currency)
        .having(func.sum(Payment.net_amount) > 0)
        .all()
    )

    summary = {
        "success": True,
        "periodStart": period_start.isoformat(),
        "periodEnd": period_end.isoformat(),
        "processedRecipients": 0,
        "totalPayouts": 0,
        "totalAmount": Decimal("0"),
        "skipped": [],
        "errors": [],
    }

    for guide_id, payment_currency, total, count in groups:
        guide = db.get(User, guide_id)
        if guide is None:
            summary["errors"].append(f"{guide_id}: guide not found")
            continue
        currency = (guide.currency or "EUR").upper()
        if (payment_currency or "").upper() != currency:
            # never convert: these wait for ops to move the guide or the payments to one currency
            logger.error("payout for %s: %s payment(s) in %s do not match payout currency %s", guide_id, count,
                         payment_currency, currency, extra={"guide_id": guide_id})
            summary["errors"].append(f"{guide.full_name or guide.email}: {count} payment(s) in {payment_currency} "
                                     f"do not match payout currency {currency}")
            continue
        total = Decimal(str(total))
        minimum = get_minimum_payout_amount(currency)
        if total < minimum:
            logger.info("payout for %s skipped: %s %s below minimum %s", guide_id, total, currency, minimum,
                        extra={"guide_id": guide_id})
            summary["skipped"].append({"tourGuideUserId": guide_id, "amount": str(total), "currency": currency,
                                       "minimum": str(minimum), "reason": "below_minimum"})
            continue

        try:
            payout = _pay_out_guide(db, ctx, guide, currency, period_start, period_end, now)
        except Exception as e:
            db.rollback()
            logger.exception("payout for %s failed", guide_id, extra={"guide_id": guide_id})
            summary["errors"].append(f"{guide.full_name or guide.email}: {e}")
            continue

        if payout is None:
            summary["skipped"].append({"tourGuideUserId": guide_id, "amount": str(total), "currency": currency,
                                       "reason": "already_paid_for_period"})
            continue
        summary["processedRecipients"] += 1
        summary["totalPayouts"] += 1
        summary["totalAmount"] += payout.total_amount

    summary["totalAmount"] = str(summary["totalAmount"])
    logger.info("weekly payouts done: %s payouts, %s errors", summary["totalPayouts"], len(summary["errors"]))
    if summary["errors"]:
        try:
            ctx.send_alert(f"[settlement] {len(summary['errors'])} weekly payout(s) failed", "\n".join(summary["errors"]))
        except Exception:
            logger.exception("could not queue payout failure alert")
    return summary


def _pay_out_guide(db: Session, ctx: JobContext, guide: User, currency: str,
                   period_start: datetime, period_end: datetime, now: datetime) -> Payout | None:
    """One guide, one transaction. Returns None if the window was already paid out."""
    existing = (
        db.query(Payout)
        .filter(Payout.tour_guide_user_id == guide.id, Payout.period_start == period_start, Payout.period_end == period_end)
        .first()
    )
    if existing is not None:
        return None
    if not guide.stripe_account_id:
        raise ConfigurationError("guide has no payout destination account")
    currency = normalize_currency(currency)

    # re-read under lock: the aggregate may be stale by now
    payments = (
        db.query(Payment)
        .filter(*_payable_filter(period_end), Payment.tour_guide_user_id == guide.id, Payment.currency == currency)
        .with_for_update()
        .all()
    )
    total = sum((Decimal(str(p.net_amount)) for p in payments), Decimal("0"))
    if total < get_minimum_payout_amount(currency):
        raise SettlementValidationError(f"payments changed, {total} {currency} is below the payout minimum")
    total = validate_amount(total)

    payout = Payout(
        id=str(uuid.uuid4()),
        tour_guide_user_id=guide.id,
        total_amount=total,
        payout_currency=currency,
        status="processing",
        period_start=period_start,
        period_end=period_end,
        processing_started_at=now,
    )
    db.add(payout)
    db.flush()

    metadata = PayoutMetadata(
        payout_id=payout.id,
        tour_guide_user_id=guide.id,
        period_start=period_start,
        period_end=period_end,
        payment_count=len(payments),
    )
    transfer_id = ctx.processor.create_transfer(
        total, currency, guide.stripe_account_id, metadata,
        idempotency_key=payout_idempotency_key(guide.id, period_start),
    )
    payout.stripe_payout_id = transfer_id

    for p in payments:
        db.add(PayoutItem(id=str(uuid.uuid4()), payout_id=payout.id, payment_id=p.id,
                          amount=p.net_amount, currency=p.currency))
        p.payout_id = payout.id
        p.payout_completed = True

    log_audit(db, ctx.actor, "payout.created", "payout", payout.id, {
        "tourGuideUserId": guide.id, "amount": str(total), "currency": currency,
        "transferId": transfer_id, "payments": len(payments),
    })
    db.commit()
    logger.info("payout %s: %s %s to %s (%s payments)", payout.id, total, currency, guide.id, len(payments),
                extra={"payout_id": payout.id, "guide_id": guide.id})
    return payout


def reconcile_payouts(db: Session, ctx: JobContext) -> dict:
    """Fail payouts whose items are missing or do not add up to the payout total."""
    payouts = db.query(Payout).filter(Payout.status.in_(["pending", "processing"])).all()
    failed = []
    for payout in payouts:
        items = db.query(PayoutItem).filter(PayoutItem.payout_id == payout.id).all()
        item_sum = sum((Decimal(str(i.amount)) for i in items), Decimal("0"))
        if not items:
            reason = "payout has no items"
        elif item_sum != Decimal(str(payout.total_amount)):
            reason = f"items sum to {item_sum}, payout total is {payout.total_amount}"
        else:
            continue
        payout.status = "failed"
        payout.failure_reason = reason
        log_audit(db, ctx.actor, "payout.reconcile_failed", "payout", payout.id, {"reason": reason})
        failed.append({"payoutId": payout.id, "reason": reason})
        logger.error("payout %s inconsistent: %s", payout.id, reason, extra={"payout_id": payout.id})
    db.commit()
    if failed:
        try:
            ctx.send_alert(f"[settlement] {len(failed)} inconsistent payout(s)",
                           "\n".join(f"{f['payoutId']}: {f['reason']}" for f in failed))
        except Exception:
            logger.exception("could not queue reconciliation alert")
    return {"checked": len(payouts), "failed": failed}


def payout_method_for(user: User) -> str:
    return "weekly_payout" if (user.country or "").upper() in CROSSBORDER_ONLY_COUNTRIES else "direct"


def payout_status_for_guide(db: Session, user: User, now: datetime) -> dict:
    now = ensure_utc(now)
    pending = (
        db.query(Payment.currency, func.sum(Payment.net_amount), func.count(Payment.id))
        .filter(
            Payment.tour_guide_user_id == user.id,
            Payment.payment_type == "platform_collected",
            Payment.status == "paid",
            Payment.payout_completed.is_(False),
        )
        .group_by(Payment.currency)
        .all()
    )
    lifetime = (
        db.query(Payment.currency, func.sum(Payment.net_amount), func.count(Payment.id))
        .filter(
            Payment.tour_guide_user_id == user.id,
            Payment.payment_type == "platform_collected",
            Payment.status == "paid",
        )
        .group_by(Payment.currency)
        .all()
    )
    recent = (
        db.query(Payout)
        .filter(Payout.tour_guide_user_id == user.id, Payout.created_at >= now - timedelta(days=183))
        .order_by(Payout.created_at.desc())
        .limit(20)
        .all()
    )

    def _iso(value):
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "payoutMethod": payout_method_for(user),
        "userCountry": user.country,
        "userCurrency": user.currency or "EUR",
        "pendingEarnings": [
            {"amount": str(Decimal(str(total))), "currency": currency, "paymentCount": count}
            for currency, total, count in pending
        ],
        "recentPayouts": [
            {
                "id": p.id,
                "amount": str(p.total_amount),
                "currency": p.payout_currency,
                "status": p.status,
                "periodStart": _iso(p.period_start),
                "periodEnd": _iso(p.period_end),
                "processingStartedAt": _iso(p.processing_started_at),
                "completedAt": _iso(p.completed_at),
                "failureReason": p.failure_reason,
                "createdAt": _iso(p.created_at),
            }
            for p in recent
        ],
        "lifetimeStats": [
            {"totalEarnings": str(Decimal(str(total))), "totalPayments": count, "currency": currency}
            for currency, total, count in lifetime
        ],
        "nextPayoutDate": next_payout_date(now).isoformat(),
    }
