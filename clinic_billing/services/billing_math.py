# clinic_billing/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from clinic_billing.core.errors import ValidationError

Q2 = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Numeric(12, 2)
MAX_MONEY = Decimal("9999999999.99")
MAX_QUANTITY = 10000


def D(x) -> Decimal:
    """Lenient conversion for values read back from the DB."""
    try:
        return Decimal(str(x or 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def check_money_range(d: Decimal, *, field: str = "amount") -> Decimal:
    if abs(d) > MAX_MONEY:
        raise ValidationError(f"{field} is out of range",
                              details={
                                  "field": field,
                                  "max": str(MAX_MONEY)
                              })
    return d


def parse_money(value, *, field: str = "amount") -> Decimal:
    """
    Strict conversion for caller input: rejects garbage, out-of-range
    values and sub-cent precision instead of coercing them.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", details={"field": field})
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a valid decimal",
                              details={"field": field})
    if not d.is_finite():
        raise ValidationError(f"{field} is not a valid decimal",
                              details={"field": field})
    check_money_range(d, field=field)

    q = d.quantize(Q2, rounding=ROUND_HALF_UP)
    if q != d:
        raise ValidationError(f"{field} must have at most 2 decimal places",
                              details={
                                  "field": field,
                                  "value": str(value)
                              })
    return q


def parse_quantity(value) -> int:
    msg = f"quantity must be an integer between 1 and {MAX_QUANTITY}"
    if isinstance(value, bool):
        raise ValidationError(msg)
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(msg)
    if (not d.is_finite() or d < 1 or d > MAX_QUANTITY
            or d != d.to_integral_value()):
        raise ValidationError(msg, details={"quantity": str(value)})
    return int(d)


def parse_percent(value) -> Decimal:
    d = parse_money(value, field="coverage_percent")
    if d < 0 or d > HUNDRED:
        raise ValidationError("coverage_percent must be between 0 and 100",
                              details={"coverage_percent": str(value)})
    return d


def line_total(quantity, unit_price) -> Decimal:
    try:
        total = (D(quantity) * D(unit_price)).quantize(Q2,
                                                       rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError("Line total is out of range",
                              details={
                                  "quantity": str(quantity),
                                  "unit_price": str(unit_price)
                              })
    return check_money_range(total, field="line total")
