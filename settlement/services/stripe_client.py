"""Stripe adapter for the PaymentProcessor boundary (separate charges and transfers)."""
from dataclasses import dataclass
from decimal import Decimal
import logging

import stripe
from stripe import StripeClient

from settlement.core.errors import ConfigurationError, ProcessorError
from settlement.services.money import to_minor_units
from settlement.services.processor import PayoutMetadata, RefundMetadata, ReversalMetadata, TransferMetadata

logger = logging.getLogger(__name__)

# Stripe error codes that will not go away by retrying the same request
_PERMANENT_CODES = {"account_invalid", "resource_missing", "transfers_not_allowed", "parameter_invalid_integer"}


@dataclass
class StripeConfig:
    secret_key: str
    timeout: int = 20


class StripeProcessor:
    def __init__(self, cfg: StripeConfig, client: StripeClient | None = None):
        if not cfg.secret_key and client is None:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")
        self.cfg = cfg
        # No SDK-level retries: the next sweep is the retry, guarded by the idempotency key
        self._client = client or StripeClient(
            cfg.secret_key,
            max_network_retries=0,
            http_client=stripe.RequestsClient(timeout=cfg.timeout),
        )

    def create_transfer(self, amount: Decimal, currency: str, destination: str,
                        metadata: TransferMetadata | PayoutMetadata, idempotency_key: str) -> str:
        params = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "destination": destination,
            "metadata": metadata.as_stripe_metadata(),
        }
        try:
            transfer = self._client.transfers.create(params=params, options={"idempotency_key": idempotency_key})
        except stripe.StripeError as e:
            raise _classify(e, "transfer") from e
        logger.info("stripe transfer %s created (%s %s -> %s)", transfer.id, amount, currency, destination,
                    extra={"transfer_id": transfer.id})
        return transfer.id

    def create_reversal(self, transfer_id: str, amount: Decimal | None = None, currency: str | None = None,
                        metadata: ReversalMetadata | None = None, idempotency_key: str | None = None) -> str:
        params = {}
        if metadata is not None:
            params["metadata"] = metadata.as_stripe_metadata()
        if amount is not None:
            if not currency:
                raise ConfigurationError("currency is required for a partial reversal")
            params["amount"] = to_minor_units(amount, currency)
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            reversal = self._client.transfers.reversals.create(transfer_id, params=params, options=options)
        except stripe.StripeError as e:
            raise _classify(e, "reversal") from e
        logger.info("stripe transfer %s reversed (%s)", transfer_id, reversal.id, extra={"transfer_id": transfer_id})
        return reversal.id

    def create_refund(self, payment_intent_id: str, amount: Decimal, currency: str, reason: str,
                      metadata: RefundMetadata, idempotency_key: str | None = None) -> str:
        params = {
            "payment_intent": payment_intent_id,
            "amount": to_minor_units(amount, currency),
            "reason": reason if reason in ("duplicate", "fraudulent", "requested_by_customer") else "requested_by_customer",
            "metadata": metadata.as_stripe_metadata(),
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            refund = self._client.refunds.create(params=params, options=options)
        except stripe.StripeError as e:
            raise _classify(e, "refund") from e
        logger.info("stripe refund %s created for %s", refund.id, payment_intent_id)
        return refund.id


def _classify(e: stripe.StripeError, operation: str) -> ProcessorError:
    code = getattr(e, "code", None)
    message = getattr(e, "user_message", None) or str(e) or e.__class__.__name__
    if isinstance(e, (stripe.AuthenticationError, stripe.PermissionError)):
        retryable = False
    elif isinstance(e, stripe.InvalidRequestError) and code in _PERMANENT_CODES:
        retryable = False
    else:
        # timeouts, connection errors, rate limits, 5xx, insufficient platform balance
        retryable = True
    logger.warning("stripe %s failed: %s (code=%s, retryable=%s)", operation, message, code, retryable)
    return ProcessorError(f"Stripe {operation} failed: {message}", code=code, retryable=retryable)


def build_stripe_processor(secret_key: str, timeout: int = 20) -> StripeProcessor:
    return StripeProcessor(StripeConfig(secret_key=secret_key, timeout=timeout))
