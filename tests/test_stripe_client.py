from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from settlement.core.errors import ConfigurationError, ProcessorError
from settlement.services.processor import PayoutMetadata, RefundMetadata, ReversalMetadata, TransferMetadata
from settlement.services.stripe_client import StripeConfig, StripeProcessor

META = TransferMetadata(
    booking_id="b-1", booking_reference="BK-1", tour_id="t-1", tour_guide_user_id="u-1", payment_intent_id="pi_1",
)


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def stripe_processor(client):
    return StripeProcessor(StripeConfig(secret_key="sk_test_123"), client=client)


def test_requires_secret_key():
    with pytest.raises(ConfigurationError):
        StripeProcessor(StripeConfig(secret_key=""))


def test_transfer_converts_to_minor_units_and_passes_idempotency_key(stripe_processor, client):
    client.transfers.create.return_value = SimpleNamespace(id="tr_123")

    transfer_id = stripe_processor.create_transfer(Decimal("125.50"), "EUR", "acct_1", META, idempotency_key="transfer_b-1")

    assert transfer_id == "tr_123"
    kwargs = client.transfers.create.call_args.kwargs
    assert kwargs["params"]["amount"] == 12550
    assert kwargs["params"]["currency"] == "eur"
    assert kwargs["params"]["destination"] == "acct_1"
    assert kwargs["params"]["metadata"]["booking_reference"] == "BK-1"
    assert kwargs["params"]["metadata"]["kind"] == "booking_transfer"
    assert kwargs["options"] == {"idempotency_key": "transfer_b-1"}


def test_zero_decimal_currency(stripe_processor, client):
    client.transfers.create.return_value = SimpleNamespace(id="tr_jpy")
    meta = PayoutMetadata(payout_id="po-1", tour_guide_user_id="u-1",
                          period_start=datetime(2026, 10, 4, tzinfo=timezone.utc),
                          period_end=datetime(2026, 10, 10, 23, 59, 59, tzinfo=timezone.utc), payment_count=2)

    stripe_processor.create_transfer(Decimal("1500"), "JPY", "acct_1", meta, idempotency_key="payout_u-1_20261004")

    params = client.transfers.create.call_args.kwargs["params"]
    assert params["amount"] == 1500
    assert params["metadata"]["period_start"] == "2026-10-04T00:00:00+00:00"
    assert params["metadata"]["payment_count"] == "2"


def test_connection_error_is_retryable(stripe_processor, client):
    client.transfers.create.side_effect = stripe.APIConnectionError("connection reset")

    with pytest.raises(ProcessorError) as exc:
        stripe_processor.create_transfer(Decimal("10"), "EUR", "acct_1", META, idempotency_key="k")
    assert exc.value.retryable is True


def test_authentication_error_is_permanent(stripe_processor, client):
    client.transfers.create.side_effect = stripe.AuthenticationError("Invalid API Key provided")

    with pytest.raises(ProcessorError) as exc:
        stripe_processor.create_transfer(Decimal("10"), "EUR", "acct_1", META, idempotency_key="k")
    assert exc.value.retryable is False


def test_invalid_destination_is_permanent(stripe_processor, client):
    client.transfers.create.side_effect = stripe.InvalidRequestError("No such destination", "destination", code="account_invalid")

    with pytest.raises(ProcessorError) as exc:
        stripe_processor.create_transfer(Decimal("10"), "EUR", "acct_x", META, idempotency_key="k")
    assert exc.value.retryable is False
    assert exc.value.code == "account_invalid"


def test_partial_reversal(stripe_processor, client):
    client.transfers.reversals.create.return_value = SimpleNamespace(id="trr_1")

    reversal_id = stripe_processor.create_reversal(
        "tr_1", amount=Decimal("20.00"), currency="EUR",
        metadata=ReversalMetadata(booking_id="b-1", reason="refund_required", requested_by="ops"),
        idempotency_key="reversal_b-1",
    )

    assert reversal_id == "trr_1"
    args = client.transfers.reversals.create.call_args
    assert args.args[0] == "tr_1"
    assert args.kwargs["params"]["amount"] == 2000
    assert args.kwargs["options"] == {"idempotency_key": "reversal_b-1"}


def test_refund(stripe_processor, client):
    client.refunds.create.return_value = SimpleNamespace(id="re_1")
    meta = RefundMetadata(booking_id="b-1", booking_reference="BK-1", reason="requested_by_customer", requested_by="ops")

    refund_id = stripe_processor.create_refund("pi_1", Decimal("15.00"), "GBP", "requested_by_customer", meta,
                                               idempotency_key="refund_b-1")

    assert refund_id == "re_1"
    params = client.refunds.create.call_args.kwargs["params"]
    assert params == {
        "payment_intent": "pi_1",
        "amount": 1500,
        "reason": "requested_by_customer",
        "metadata": meta.as_stripe_metadata(),
    }
    assert "reversal_id" not in params["metadata"]
