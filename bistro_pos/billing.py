from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")

OPEN_ORDER_STATUSES = ("pending", "served", "payment_pending")
TERMINAL_ORDER_STATUSES = ("completed", "cancelled")

# Rank along the happy path; cancelled sits outside it.
ORDER_FLOW = {"pending": 0, "served": 1, "payment_pending": 2, "completed": 3}

# Table status mirrored while an order is open.
TABLE_STATUS_FOR_ORDER = {
    "pending": "occupied",
    "served": "served",
    "payment_pending": "payment_pending",
}


class InvalidTransition(ValueError):
    pass


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as Decimal("0.1") instead of its binary expansion.
    return Decimal(str(value))


@dataclass(frozen=True)
class SystemChargeSummary:
    total_system_charge_rate: Decimal = ZERO
    total_system_charges_amount: Decimal = ZERO


@dataclass(frozen=True)
class BillingInputs:
    discount_percent: Decimal = ZERO
    optional_charge: Decimal = ZERO
    system_charge_tax: Decimal = ZERO
    system_charge_amount: Decimal = ZERO
    applied_charges: Optional[list[dict]] = None


@dataclass(frozen=True)
class BillBreakdown:
    total_bill: Decimal
    discount_amount: Decimal
    optional_charge: Decimal
    tax_amount: Decimal
    final_amount: Decimal
    inputs: BillingInputs = field(default_factory=BillingInputs)


def calculate_charge_amount(charge_type: str, value: Any, order_total: Any) -> Decimal:
    value = to_decimal(value)
    if charge_type == "percentage":
        return to_decimal(order_total) * value / HUNDRED
    return value


def summarize_system_charges(charges: Iterable[Any]) -> SystemChargeSummary:
    # The rate applies to the discounted base; the flat amount is added after.
    rate = ZERO
    amount = ZERO
    for charge in charges:
        if charge.charge_type == "percentage":
            rate += to_decimal(charge.value)
        elif charge.charge_type == "fixed":
            amount += to_decimal(charge.value)
    return SystemChargeSummary(
        total_system_charge_rate=rate,
        total_system_charges_amount=amount,
    )


def compute_bill(total_bill: Any, inputs: BillingInputs) -> BillBreakdown:
    """Derive the bill from scratch.

    Discount comes off the raw subtotal, optional charges are added next, and
    the system percentage is taken on that base before the flat system amount
    is added.
    """
    total_bill = to_decimal(total_bill)
    discount_amount = total_bill * to_decimal(inputs.discount_percent) / HUNDRED
    base = total_bill - discount_amount
    base += to_decimal(inputs.optional_charge)
    tax_amount = base * to_decimal(inputs.system_charge_tax) / HUNDRED + to_decimal(
        inputs.system_charge_amount
    )
    return BillBreakdown(
        total_bill=total_bill,
        discount_amount=discount_amount,
        optional_charge=to_decimal(inputs.optional_charge),
        tax_amount=tax_amount,
        final_amount=base + tax_amount,
        inputs=inputs,
    )


def stored_inputs(order) -> BillingInputs:
    return BillingInputs(
        discount_percent=to_decimal(order.discount_percent),
        optional_charge=to_decimal(order.optional_charge),
        system_charge_tax=to_decimal(order.system_charge_tax),
        system_charge_amount=to_decimal(order.system_charge_amount),
        applied_charges=order.applied_charges,
    )


def apply_billing(order, inputs: BillingInputs) -> BillBreakdown:
    bill = compute_bill(order.total_bill, inputs)
    order.discount_percent = to_decimal(inputs.discount_percent)
    order.discount_applied = bill.discount_amount
    order.optional_charge = bill.optional_charge
    order.system_charge_tax = to_decimal(inputs.system_charge_tax)
    order.system_charge_amount = to_decimal(inputs.system_charge_amount)
    order.tax_amount = bill.tax_amount
    order.final_amount = bill.final_amount
    order.applied_charges = inputs.applied_charges
    return bill


def check_transition(current: str, target: str, allow_cancel_served: bool = False) -> None:
    if current == target and target != "cancelled":
        return
    if target == "cancelled":
        if current == "cancelled":
            raise InvalidTransition("order is already cancelled")
        if current == "completed":
            raise InvalidTransition("completed order cannot be cancelled")
        if current == "served" and not allow_cancel_served:
            raise InvalidTransition("served order cannot be cancelled")
        return
    if current in TERMINAL_ORDER_STATUSES:
        raise InvalidTransition(f"order is already {current}")
    if target not in ORDER_FLOW:
        raise InvalidTransition(f"unknown order status: {target}")
    if ORDER_FLOW[target] < ORDER_FLOW[current]:
        raise InvalidTransition(f"cannot move order from {current} back to {target}")
