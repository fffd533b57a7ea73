"""Currency display formatting."""
from decimal import Decimal
from typing import Union

from babel.numbers import format_currency

CURRENCY_LOCALES = {
    "NGN": "en_NG",
    "USD": "en_US",
}
DEFAULT_LOCALE = "en_US"


def format_amount(amount: Union[Decimal, int, float, str], currency: str, decimals: int = 0) -> str:
    """
    Render an amount for display, e.g. ₦500,000 or $1,250.

    Whole units by default; grouping separators follow the currency's locale.
    """
    currency = currency.upper()
    pattern = "¤#,##0" + ("." + "0" * decimals if decimals > 0 else "")
    return format_currency(
        Decimal(str(amount)),
        currency,
        format=pattern,
        locale=CURRENCY_LOCALES.get(currency, DEFAULT_LOCALE),
        currency_digits=False,
    )
