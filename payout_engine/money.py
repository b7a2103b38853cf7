from decimal import Decimal, ROUND_HALF_UP, ROUND_HALF_EVEN, ROUND_DOWN, InvalidOperation

from .exceptions import ConfigurationError

ZERO = Decimal("0")

# Minor units per ISO 4217 code. Storage keeps two decimal places.
CURRENCY_MINOR_UNITS = {
    "AED": 2, "USD": 2, "EUR": 2, "GBP": 2, "KZT": 2, "SAR": 2, "QAR": 2,
    "INR": 2, "CAD": 2, "AUD": 2, "CHF": 2,
    "JPY": 0, "KRW": 0,
}

ROUNDING_MODES = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "down": ROUND_DOWN,
}


def minor_unit(currency: str) -> Decimal:
    """Smallest representable amount of a currency, e.g. Decimal('0.01')."""
    try:
        digits = CURRENCY_MINOR_UNITS[currency.upper()]
    except (KeyError, AttributeError):
        raise ConfigurationError(f"Unsupported currency: {currency}", currency=currency)
    return Decimal(1).scaleb(-digits)


def rounding_for(mode: str) -> str:
    try:
        return ROUNDING_MODES[mode]
    except KeyError:
        raise ConfigurationError(f"Unknown rounding mode: {mode}", rounding_mode=mode)


def to_decimal(value) -> Decimal:
    """Coerce user/webhook input to Decimal without going through float."""
    if isinstance(value, Decimal):
        result = value
    else:
        if isinstance(value, float):
            value = repr(value)
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid amount: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


def quantize(amount, currency: str, mode: str = "half_up") -> Decimal:
    """Round an amount to the currency's minor unit."""
    return to_decimal(amount).quantize(minor_unit(currency), rounding=rounding_for(mode))


def percentage_of(amount: Decimal, rate: Decimal, currency: str, mode: str = "half_up") -> Decimal:
    """round(amount * rate / 100) in the currency's minor unit."""
    return quantize(to_decimal(amount) * to_decimal(rate) / Decimal(100), currency, mode)
