from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from settlement.core.errors import SettlementValidationError

# Currencies guides can be paid out in (Stripe Connect payout currencies we onboard)
SUPPORTED_CURRENCIES = {
    "USD", "EUR", "GBP", "CAD", "AUD", "NZD", "JPY", "SEK", "NOK", "DKK",
    "CHF", "PLN", "CZK", "HUF", "RON", "BGN", "SGD", "HKD", "MXN",
}

# No minor unit: 1000 JPY is sent to Stripe as 1000, not 100000
ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}

CENT = Decimal("0.01")


def normalize_currency(currency: str | None) -> str:
    code = (currency or "").strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise SettlementValidationError(f"unsupported currency: {currency!r}")
    return code


def validate_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise SettlementValidationError(f"invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise SettlementValidationError(f"amount must be positive, got {amount!r}")
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount, currency: str) -> int:
    value = Decimal(str(amount))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
