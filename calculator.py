"""
Invoice totals

subtotal        = sum(quantity * price)
discount_amount = subtotal * discount_pct / 100
taxable_amount  = subtotal - discount_amount
tax_amount      = taxable_amount * tax_pct / 100
total           = taxable_amount + tax_amount

All arithmetic is Decimal. Numbers go through str() first so 0.1 means one
tenth, not the nearest binary float. Percentages are not clamped here; range
checks belong to the request models.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Union

CENTS = Decimal("0.01")
HUNDRED = Decimal(100)

Number = Union[int, float, str, Decimal, None]


def to_decimal(value: Number) -> Decimal:
    """Blank form values count as zero; anything else must parse."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return Decimal(0)
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result


def _field(item: Any, name: str) -> Number:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def line_total(item: Any) -> Decimal:
    return to_decimal(_field(item, "quantity")) * to_decimal(_field(item, "price"))


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    discount_amount: Decimal
    taxable_amount: Decimal
    tax_amount: Decimal
    total: Decimal

    def rounded(self) -> "InvoiceTotals":
        # each figure rounds on its own, so total may differ from taxable + tax by a cent
        return InvoiceTotals(
            subtotal=to_cents(self.subtotal),
            discount_amount=to_cents(self.discount_amount),
            taxable_amount=to_cents(self.taxable_amount),
            tax_amount=to_cents(self.tax_amount),
            total=to_cents(self.total),
        )

    def as_document(self) -> Dict[str, float]:
        """Cent-rounded floats for storage on the invoice document."""
        r = self.rounded()
        return {
            "subtotal": float(r.subtotal),
            "discount_amount": float(r.discount_amount),
            "tax_amount": float(r.tax_amount),
            "total": float(r.total),
        }


def compute_totals(items: Iterable[Any], discount_pct: Number = 0, tax_pct: Number = 0) -> InvoiceTotals:
    subtotal = sum((line_total(i) for i in items), Decimal(0))
    discount_amount = subtotal * to_decimal(discount_pct) / HUNDRED
    taxable_amount = subtotal - discount_amount
    tax_amount = taxable_amount * to_decimal(tax_pct) / HUNDRED
    return InvoiceTotals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        tax_amount=tax_amount,
        total=taxable_amount + tax_amount,
    )
