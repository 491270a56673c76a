"""
Invoice money rules.

All amounts are integers in the currency's minor unit (cents for USD,
yen for JPY, fils for KWD). Nothing here ever produces a float; conversion
to major units happens only in `format_money`, at the response boundary.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from portivo.errors import ValidationFailedError


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    decimal_places: int
    symbol: str | None = None

    @property
    def minor_unit_factor(self) -> int:
        return 10 ** self.decimal_places


# ISO 4217 minor-unit exponents for the currencies an agency is likely to bill in
CURRENCIES: dict[str, CurrencyInfo] = {
    "USD": CurrencyInfo("USD", 2, "$"),
    "EUR": CurrencyInfo("EUR", 2, "€"),
    "GBP": CurrencyInfo("GBP", 2, "£"),
    "CAD": CurrencyInfo("CAD", 2, "CA$"),
    "AUD": CurrencyInfo("AUD", 2, "A$"),
    "NZD": CurrencyInfo("NZD", 2, "NZ$"),
    "CHF": CurrencyInfo("CHF", 2),
    "SEK": CurrencyInfo("SEK", 2),
    "NOK": CurrencyInfo("NOK", 2),
    "DKK": CurrencyInfo("DKK", 2),
    "PLN": CurrencyInfo("PLN", 2),
    "CZK": CurrencyInfo("CZK", 2),
    "INR": CurrencyInfo("INR", 2, "₹"),
    "BRL": CurrencyInfo("BRL", 2, "R$"),
    "MXN": CurrencyInfo("MXN", 2, "MX$"),
    "ZAR": CurrencyInfo("ZAR", 2),
    "SGD": CurrencyInfo("SGD", 2),
    "HKD": CurrencyInfo("HKD", 2),
    "AED": CurrencyInfo("AED", 2),
    "JPY": CurrencyInfo("JPY", 0, "¥"),
    "KRW": CurrencyInfo("KRW", 0, "₩"),
    "ISK": CurrencyInfo("ISK", 0),
    "CLP": CurrencyInfo("CLP", 0),
    "VND": CurrencyInfo("VND", 0),
    "BHD": CurrencyInfo("BHD", 3),
    "JOD": CurrencyInfo("JOD", 3),
    "KWD": CurrencyInfo("KWD", 3),
    "OMR": CurrencyInfo("OMR", 3),
    "TND": CurrencyInfo("TND", 3),
}

DEFAULT_CURRENCY = "USD"


def currency_info(code: str) -> CurrencyInfo:
    info = CURRENCIES.get(code.upper())
    if info is None:
        raise ValidationFailedError.for_field("currency", f"Unsupported currency: {code}")
    return info


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: int
    unit_price: int

    @property
    def total(self) -> int:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: int
    tax: int
    total: int


def _is_int(value) -> bool:
    # bool is an int subclass; True is not a quantity
    return isinstance(value, int) and not isinstance(value, bool)


def validate_line_items(items: Iterable[LineItem]) -> list[LineItem]:
    """Check every item; collect field errors as ``items.<n>.<field>``."""
    items = list(items)
    errors: dict[str, str] = {}
    if not items:
        errors["items"] = "At least one item is required"
    for index, item in enumerate(items):
        prefix = f"items.{index}"
        if not item.description or not item.description.strip():
            errors[f"{prefix}.description"] = "Description is required"
        if not _is_int(item.quantity) or item.quantity < 1:
            errors[f"{prefix}.quantity"] = "Quantity must be a whole number of at least 1"
        if not _is_int(item.unit_price) or item.unit_price < 0:
            errors[f"{prefix}.unit_price"] = "Unit price must be a non-negative integer in minor units"
    if errors:
        raise ValidationFailedError("Invalid invoice items", errors)
    return items


def validate_tax(tax: int) -> int:
    if not _is_int(tax) or tax < 0:
        raise ValidationFailedError.for_field("tax", "Tax must be a non-negative integer in minor units")
    return tax


def compute_totals(items: Iterable[LineItem], tax: int = 0) -> InvoiceTotals:
    """subtotal = sum(quantity * unit_price); total = subtotal + tax."""
    items = validate_line_items(items)
    tax = validate_tax(tax)
    subtotal = sum(item.total for item in items)
    return InvoiceTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def format_money(amount: int, currency: str = DEFAULT_CURRENCY) -> str:
    """Render minor units for display, e.g. ``format_money(10050, "USD") == "$100.50"``."""
    info = currency_info(currency)
    major = Decimal(amount).scaleb(-info.decimal_places)
    text = f"{abs(major):,.{info.decimal_places}f}"
    sign = "-" if amount < 0 else ""
    if info.symbol:
        return f"{sign}{info.symbol}{text}"
    return f"{sign}{text} {info.code}"
