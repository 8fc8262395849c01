"""Currency-aware amount formatting for CLI output."""

from __future__ import annotations

# Currencies written without minor units
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "VND", "CLP", "ISK"}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
}


def decimals_for(currency: str | None) -> int:
    return 0 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 2


def format_amount(amount: float, currency: str | None = "USD") -> str:
    """Format an amount with its currency: "-$1,234.50", "¥12,000", "CHF 10.00"."""
    code = (currency or "USD").upper()
    places = decimals_for(code)
    sign = "-" if amount < 0 and round(abs(amount), places) != 0 else ""
    number = f"{abs(amount):,.{places}f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{number}"
    return f"{sign}{code} {number}"
