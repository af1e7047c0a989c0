from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from bistro_pos import billing
from bistro_pos.invoice import render_invoice


class ApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PosApiClient:
    def __init__(self, http: httpx.Client, token: Optional[str] = None) -> None:
        self.http = http
        self.token = token

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.http.request(method, path, headers=headers, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error:
            message = body.get("message") if isinstance(body, dict) else None
            raise ApiError(message or response.reason_phrase, response.status_code)
        return body

    def list_charges(self, **filters: Any) -> dict:
        params = {key: value for key, value in filters.items() if value is not None}
        return self._request("GET", "/api/charges", params=params)

    def get_system_charges_summary(self) -> dict:
        return self._request("GET", "/api/charges/system/summary")["systemchargeSummary"]

    def get_optional_charges(self) -> list[dict]:
        return self._request("GET", "/api/charges/optional")["data"]

    def list_orders(self, status: Optional[str] = None) -> list[dict]:
        params = {"status": status} if status else {}
        return self._request("GET", "/api/orders", params=params)["data"]

    def get_order(self, order_id: int) -> dict:
        return self._request("GET", f"/api/orders/{order_id}")["data"]

    def update_order(self, order_id: int, patch: dict) -> dict:
        return self._request("PUT", f"/api/orders/{order_id}", json=patch)["data"]

    def cancel_order(self, order_id: int, reason: str = "") -> dict:
        return self._request("POST", f"/api/orders/{order_id}/cancel", json={"reason": reason})["data"]


def calculate_charge_amount(charge: dict, order_total: Any) -> Decimal:
    return billing.calculate_charge_amount(charge["chargeType"], charge["value"], order_total)


def _parse_percent(raw: Any) -> Decimal:
    # Free-text input; anything unparsable counts as no discount.
    try:
        value = billing.to_decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return billing.ZERO
    return value if value.is_finite() else billing.ZERO


class BillingSession:
    def __init__(self, api: PosApiClient, currency_symbol: str = "₹") -> None:
        self.api = api
        self.currency_symbol = currency_symbol
        self.selected_payment: dict[int, str] = {}
        self.discounts: dict[int, str] = {}
        self.selected_optional_charges: dict[int, list[dict]] = {}
        self.system_summary: dict = {"totalSystemChargeRate": 0, "totalSystemChargesAmount": 0}
        self.optional_charges: list[dict] = []
        self.orders: dict[int, dict] = {}

    def load(self) -> None:
        self.system_summary = self.api.get_system_charges_summary()
        self.optional_charges = self.api.get_optional_charges()

    def select_payment(self, order_id: int, method: str) -> None:
        self.selected_payment[order_id] = method

    def set_discount(self, order_id: int, value: str) -> None:
        self.discounts[order_id] = value

    def discount_percent(self, order_id: int) -> Decimal:
        return _parse_percent(self.discounts.get(order_id, ""))

    def toggle_optional_charge(self, order_id: int, charge: dict, order_total: Any) -> list[dict]:
        selected = self.selected_optional_charges.setdefault(order_id, [])
        for existing in selected:
            if existing["id"] == charge["id"]:
                selected.remove(existing)
                return selected
        selected.append({**charge, "amount": calculate_charge_amount(charge, order_total)})
        return selected

    def calculate_optional_charges_total(self, order_id: int, order_total: Any) -> Decimal:
        return sum(
            (
                calculate_charge_amount(charge, order_total)
                for charge in self.selected_optional_charges.get(order_id, [])
            ),
            billing.ZERO,
        )

    def preview(self, order: dict) -> dict:
        order_id = order["id"]
        bill = billing.compute_bill(
            order["totalBill"],
            billing.BillingInputs(
                discount_percent=self.discount_percent(order_id),
                optional_charge=self.calculate_optional_charges_total(order_id, order["totalBill"]),
                system_charge_tax=billing.to_decimal(self.system_summary["totalSystemChargeRate"]),
                system_charge_amount=billing.to_decimal(
                    self.system_summary["totalSystemChargesAmount"]
                ),
            ),
        )
        return {
            "totalBill": bill.total_bill,
            "discountAmount": bill.discount_amount,
            "optionalcharge": bill.optional_charge,
            "taxAmount": bill.tax_amount,
            "finalAmount": bill.final_amount,
        }

    def build_billing_patch(
        self,
        order: dict,
        status: str = "completed",
        completed_at: Optional[datetime] = None,
    ) -> dict:
        # Discount travels as a percentage, the optional charge as an amount.
        order_id = order["id"]
        completed_at = completed_at or datetime.now(timezone.utc)
        return {
            "status": status,
            "paymentMethod": self.selected_payment.get(order_id, order.get("paymentMethod", "cash")),
            "discountApplied": float(self.discount_percent(order_id)),
            "systemChargeTax": float(self.system_summary["totalSystemChargeRate"]),
            "systemChargeAmmount": float(self.system_summary["totalSystemChargesAmount"]),
            "optionalcharge": float(
                round(self.calculate_optional_charges_total(order_id, order["totalBill"]), 2)
            ),
            "completedAt": completed_at.isoformat(),
        }

    def complete_payment(self, order: dict) -> dict:
        patch = self.build_billing_patch(order)
        saved = self.api.update_order(order["id"], patch)
        self.orders[saved["id"]] = saved
        self._forget(order["id"])
        return saved

    def print_bill(self, order: dict) -> str:
        saved = self.orders.get(order["id"])
        if saved is None or saved["status"] != "completed":
            saved = self.complete_payment(order)
        return render_invoice(saved, currency_symbol=self.currency_symbol)

    def _forget(self, order_id: int) -> None:
        self.selected_payment.pop(order_id, None)
        self.discounts.pop(order_id, None)
        self.selected_optional_charges.pop(order_id, None)
