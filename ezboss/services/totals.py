"""
Totals calculator.

Pure functions over the financial fields of an estimate. ``apply_totals``
copies the computed amounts onto the aggregate and is called before every
persisted financial mutation.
"""
import math
from typing import Iterable, Optional

from ..exceptions import PaymentScheduleExceededError, ValidationError
from ..schemas.estimates import (
    DepositType,
    DiscountType,
    Estimate,
    EstimateTotals,
    LineItem,
    PaymentSchedule,
    PaymentScheduleMode,
)


# Tolerance for comparing rounded currency amounts
CENT_EPSILON = 0.005


def line_total(quantity: float, unit_price: float) -> float:
    return round(float(quantity) * float(unit_price), 2)


def calculate_totals(
    line_items: Iterable[LineItem],
    discount: float = 0.0,
    discount_type: DiscountType = DiscountType.amount,
    tax_rate: float = 0.0,
    deposit_type: DepositType = DepositType.none,
    deposit_value: float = 0.0,
) -> EstimateTotals:
    subtotal = sum(li.total for li in line_items)
    discount = discount or 0.0
    if discount_type == DiscountType.percentage:
        discount_amount = subtotal * discount / 100
    else:
        discount_amount = min(discount, subtotal)
    taxable_amount = subtotal - discount_amount
    tax_amount = taxable_amount * (tax_rate or 0.0) / 100
    total = round(taxable_amount + tax_amount, 2)

    if deposit_type == DepositType.percentage:
        deposit_amount = total * (deposit_value or 0.0) / 100
    elif deposit_type == DepositType.amount:
        deposit_amount = deposit_value or 0.0
    else:
        deposit_amount = 0.0

    return EstimateTotals(
        subtotal=round(subtotal, 2),
        discount_amount=round(discount_amount, 2),
        taxable_amount=round(taxable_amount, 2),
        tax_amount=round(tax_amount, 2),
        total=total,
        deposit_amount=round(deposit_amount, 2),
    )


def totals_for(estimate: Estimate) -> EstimateTotals:
    return calculate_totals(
        estimate.line_items,
        estimate.discount,
        estimate.discount_type,
        estimate.tax_rate,
        estimate.deposit_type,
        estimate.deposit_value,
    )


def apply_totals(estimate: Estimate) -> EstimateTotals:
    totals = totals_for(estimate)
    estimate.subtotal = totals.subtotal
    estimate.discount_amount = totals.discount_amount
    estimate.taxable_amount = totals.taxable_amount
    estimate.tax_amount = totals.tax_amount
    estimate.total = totals.total
    estimate.deposit_amount = totals.deposit_amount
    return totals


def validate_financial_terms(
    discount: float,
    discount_type: DiscountType,
    tax_rate: float,
    deposit_type: DepositType,
    deposit_value: float,
) -> None:
    errors = {}
    if not math.isfinite(discount) or discount < 0:
        errors["discount"] = "Discount must be 0 or greater"
    elif discount_type == DiscountType.percentage and discount > 100:
        errors["discount"] = "Percentage discount cannot exceed 100"
    if not math.isfinite(tax_rate) or tax_rate < 0:
        errors["tax_rate"] = "Tax rate must be 0 or greater"
    if not math.isfinite(deposit_value) or deposit_value < 0:
        errors["deposit_value"] = "Deposit must be 0 or greater"
    elif deposit_type == DepositType.percentage and deposit_value > 100:
        errors["deposit_value"] = "Percentage deposit cannot exceed 100"
    if errors:
        raise ValidationError("Invalid financial terms", errors=errors)


def validate_payment_schedule(schedule: Optional[PaymentSchedule], total: float) -> None:
    """Entries must be non-negative and must not add up to more than the total (or 100%)."""
    if schedule is None or not schedule.entries:
        return
    for entry in schedule.entries:
        if not math.isfinite(entry.value) or entry.value < 0:
            raise ValidationError(
                "Payment schedule entries must be 0 or greater",
                errors={entry.id: "value must be zero or greater"},
            )
    scheduled = round(sum(e.value for e in schedule.entries), 2)
    limit = 100.0 if schedule.mode == PaymentScheduleMode.percentage else total
    if scheduled > limit + CENT_EPSILON:
        raise PaymentScheduleExceededError(schedule.mode.value, scheduled, limit)
