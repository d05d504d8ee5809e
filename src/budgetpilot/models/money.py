"""
Money helpers — every amount in the ledger is an integer count of minor units.

User input arrives as strings, ``Decimal`` or numbers; it is quantised with
``ROUND_HALF_UP`` to the currency's exponent exactly once, at the boundary.
All arithmetic after that is plain ``int`` arithmetic, so repeated
add/subtract cycles never drift.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# Minor-unit exponent per ISO 4217 code (USD cents = 2, JPY = 0)
CURRENCY_EXPONENTS: dict[str, int] = {
    "USD": 2,
    "CAD": 2,
    "EUR": 2,
    "GBP": 2,
    "AUD": 2,
    "MXN": 2,
    "JPY": 0,
    "KRW": 0,
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "CAD": "CA$",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
    "MXN": "MX$",
    "JPY": "¥",
    "KRW": "₩",
}


def exponent_for(currency: str) -> int:
    """Number of decimal places in the currency's minor unit."""
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


def to_minor_units(value: str | int | float | Decimal, currency: str = "USD") -> int:
    """Parse a user-facing amount into integer minor units.

    ``"150"`` and ``"150.00"`` and ``Decimal("150")`` all give ``15000`` for
    USD. Thousands separators and a leading currency symbol are tolerated.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be a number")

    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        symbol = CURRENCY_SYMBOLS.get(currency.upper(), "")
        if symbol and cleaned.startswith(symbol):
            cleaned = cleaned[len(symbol):]
        cleaned = cleaned.lstrip("$").strip()
        if not cleaned:
            raise ValueError("Amount is required")
        raw = cleaned
    elif isinstance(value, float):
        # repr of a float is the shortest string that round-trips
        raw = repr(value)
    else:
        raw = value

    try:
        amount = Decimal(raw)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a valid amount: {value!r}") from e

    if not amount.is_finite():
        raise ValueError(f"Not a valid amount: {value!r}")

    places = exponent_for(currency)
    quantum = Decimal(1).scaleb(-places)
    try:
        scaled = amount.quantize(quantum, rounding=ROUND_HALF_UP).scaleb(places)
    except InvalidOperation as e:
        # Beyond the decimal context precision
        raise ValueError(f"Not a valid amount: {value!r} is too large") from e
    return int(scaled)


def from_minor_units(amount: int, currency: str = "USD") -> Decimal:
    """Exact ``Decimal`` value of an integer minor-unit amount."""
    return Decimal(amount).scaleb(-exponent_for(currency))


def format_amount(amount: int, currency: str = "USD", signed: bool = False) -> str:
    """Render minor units for display, e.g. ``-85000`` -> ``-$850.00``.

    With ``signed=True`` positive amounts get an explicit ``+`` so variances
    and over-budget remainders never read as unsigned.
    """
    places = exponent_for(currency)
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    magnitude = from_minor_units(abs(amount), currency)
    text = f"{symbol}{magnitude:,.{places}f}"
    if amount < 0:
        return f"-{text}"
    if signed and amount > 0:
        return f"+{text}"
    return text


def percent_of(part: int, whole: int) -> Decimal:
    """``part / whole`` as a percentage rounded half-up to one decimal place.

    Returns zero when ``whole`` is not positive (nothing budgeted).
    """
    if whole <= 0:
        return Decimal("0.0")
    return (Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
