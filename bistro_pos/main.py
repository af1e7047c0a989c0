from __future__ import annotations

import logging
import math
import random
import traceback
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Literal, Optional, Union, get_args
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from bistro_pos.auth import CurrentUser, authorize, get_current_user
from bistro_pos.billing import (
    OPEN_ORDER_STATUSES,
    TABLE_STATUS_FOR_ORDER,
    TERMINAL_ORDER_STATUSES,
    BillingInputs,
    InvalidTransition,
    apply_billing,
    calculate_charge_amount,
    check_transition,
    stored_inputs,
    summarize_system_charges,
    to_decimal,
)
from bistro_pos.config import settings
from bistro_pos.db import SessionLocal
from bistro_pos.invoice import render_invoice
from bistro_pos.models import (
    CHARGE_CATEGORIES,
    CHARGE_TYPES,
    SPACE_TYPES,
    TABLE_PLACEHOLDER_IMAGE,
    Charge,
    DiningTable,
    Order,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Bistro POS")

PaymentMethod = Literal["cash", "card", "online", "upi"]
OrderStatus = Literal["pending", "served", "payment_pending", "completed", "cancelled"]
TableStatus = Literal["available", "occupied", "reserved", "served", "payment_pending"]
TimeFrame = Literal["today", "week", "month", "year"]

MERCHANT_ROLES = ("merchant", "manager")
ALL_ROLES = ("merchant", "manager", "supervisor", "staff")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _ok(data: Any, message: Optional[str] = None, **extra: Any) -> dict:
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    body["meta"] = _meta()
    return body


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Any) -> float:
    return float(round(to_decimal(value), 2))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _time_frame_start(time_frame: str, now: datetime) -> datetime:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if time_frame == "week":
        # Weeks start on Sunday.
        return today - timedelta(days=(today.weekday() + 1) % 7)
    if time_frame == "month":
        return today.replace(day=1)
    if time_frame == "year":
        return today.replace(month=1, day=1)
    return today


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        {"success": False, "message": exc.detail, "meta": _meta()},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part not in ("body", "query", "path"))
        messages.append(f"{field}: {error['msg']}" if field else error["msg"])
    return JSONResponse(
        {"success": False, "message": ", ".join(messages), "meta": _meta()},
        status_code=400,
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    body = {"success": False, "message": "Server error", "meta": _meta()}
    if settings.environment == "development":
        body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(body, status_code=500)


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok", "service": "Bistro POS"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy", "environment": settings.environment}


# Charges


def _charge_data(charge: Charge) -> dict:
    value = _money(charge.value)
    if charge.charge_type == "percentage":
        display_value = f"{value:g}%"
    else:
        display_value = f"{settings.currency_symbol}{value:g}"
    return {
        "id": charge.id,
        "chargeName": charge.charge_name,
        "chargeType": charge.charge_type,
        "value": value,
        "displayValue": display_value,
        "category": charge.category,
        "active": charge.active,
        "createdBy": charge.created_by,
        "createdAt": _iso(charge.created_at),
        "updatedAt": _iso(charge.updated_at),
    }


def _validate_charge(charge_type: str, value: Decimal, category: str) -> None:
    if charge_type not in CHARGE_TYPES:
        raise HTTPException(
            status_code=400, detail='Charge type must be either "percentage" or "fixed"'
        )
    if category not in CHARGE_CATEGORIES:
        raise HTTPException(
            status_code=400,
            detail='Category must be either "systemcharge" or "optionalcharge"',
        )
    if charge_type == "percentage" and (value < 0 or value > 100):
        raise HTTPException(status_code=400, detail="Percentage value must be between 0 and 100")
    if charge_type == "fixed" and value < 0:
        raise HTTPException(status_code=400, detail="Fixed value cannot be negative")


def _get_charge_or_404(db: Session, charge_id: int) -> Charge:
    charge = db.get(Charge, charge_id)
    if not charge:
        raise HTTPException(status_code=404, detail="Charge not found")
    return charge


def _charge_name_taken(db: Session, name: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Charge).filter(Charge.charge_name == name)
    if exclude_id is not None:
        query = query.filter(Charge.id != exclude_id)
    return query.first() is not None


def _commit_charge(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Charge name already exists") from exc


def _active_charges(db: Session, category: str) -> list[Charge]:
    return (
        db.query(Charge)
        .filter(Charge.category == category, Charge.active.is_(True))
        .order_by(Charge.created_at, Charge.id)
        .all()
    )


class ChargeCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "chargeName": "Service Tax",
                "chargeType": "percentage",
                "value": 5,
                "category": "systemcharge",
                "active": True,
            }
        },
    }
    charge_name: Optional[str] = Field(default=None, alias="chargeName", max_length=50)
    charge_type: Optional[str] = Field(default=None, alias="chargeType")
    value: Optional[Decimal] = None
    category: Optional[str] = None
    active: bool = True


class ChargeUpdate(BaseModel):
    model_config = {"populate_by_name": True}
    charge_name: Optional[str] = Field(default=None, alias="chargeName", max_length=50)
    charge_type: Optional[str] = Field(default=None, alias="chargeType")
    value: Optional[Decimal] = None
    category: Optional[str] = None
    active: Optional[bool] = None


class ChargeStatusUpdate(BaseModel):
    active: Optional[bool] = None


@app.post("/api/charges", tags=["Charges"], status_code=201)
def create_charge(
    payload: ChargeCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    name = (payload.charge_name or "").strip()
    if not name or not payload.charge_type or payload.value is None or not payload.category:
        raise HTTPException(
            status_code=400, detail="Charge name, type, value, and category are required"
        )
    _validate_charge(payload.charge_type, payload.value, payload.category)
    if _charge_name_taken(db, name):
        raise HTTPException(status_code=400, detail="Charge with this name already exists")
    now = _now()
    charge = Charge(
        charge_name=name,
        charge_type=payload.charge_type,
        value=payload.value,
        category=payload.category,
        active=payload.active,
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    db.add(charge)
    _commit_charge(db)
    db.refresh(charge)
    logger.info("charge %s created by %s", charge.charge_name, user.id)
    return _ok(_charge_data(charge), "Charge created successfully")


@app.get("/api/charges/system/summary", tags=["Charges"])
def get_system_charges_summary(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    summary = summarize_system_charges(_active_charges(db, "systemcharge"))
    return {
        "success": True,
        "systemchargeSummary": {
            "totalSystemChargeRate": _money(summary.total_system_charge_rate),
            "totalSystemChargesAmount": _money(summary.total_system_charges_amount),
        },
        "meta": _meta(),
    }


@app.get("/api/charges/system", tags=["Charges"])
def get_system_charges(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    charges = _active_charges(db, "systemcharge")
    return _ok([_charge_data(charge) for charge in charges], count=len(charges))


@app.get("/api/charges/optional", tags=["Charges"])
def get_optional_charges(
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    charges = _active_charges(db, "optionalcharge")
    return _ok([_charge_data(charge) for charge in charges], count=len(charges))


CHARGE_SORT_COLUMNS = {
    "createdAt": Charge.created_at,
    "updatedAt": Charge.updated_at,
    "chargeName": Charge.charge_name,
    "chargeType": Charge.charge_type,
    "value": Charge.value,
    "category": Charge.category,
    "active": Charge.active,
}


@app.get("/api/charges", tags=["Charges"])
def list_charges(
    category: Optional[str] = Query(default=None),
    active: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.default_page_limit, ge=1, le=settings.max_page_limit),
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*ALL_ROLES)),
) -> dict:
    query = db.query(Charge)
    if category and category.strip() in CHARGE_CATEGORIES:
        query = query.filter(Charge.category == category.strip())
    # An absent or empty flag means "any", not "inactive".
    if active is not None and active != "":
        query = query.filter(Charge.active.is_(active.lower() == "true"))
    if search and search.strip():
        query = query.filter(Charge.charge_name.ilike(f"%{search.strip()}%"))
    total = query.count()
    column = CHARGE_SORT_COLUMNS.get(sort_by, Charge.created_at)
    ordering = column.desc() if sort_order == "desc" else column.asc()
    tiebreak = Charge.id.desc() if sort_order == "desc" else Charge.id.asc()
    charges = query.order_by(ordering, tiebreak).offset((page - 1) * limit).limit(limit).all()
    return _ok(
        [_charge_data(charge) for charge in charges],
        count=len(charges),
        total=total,
        totalPages=math.ceil(total / limit),
        currentPage=page,
    )


@app.get("/api/charges/{charge_id}", tags=["Charges"])
def get_charge(
    charge_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    return _ok(_charge_data(_get_charge_or_404(db, charge_id)))


@app.put("/api/charges/{charge_id}", tags=["Charges"])
def update_charge(
    charge_id: int,
    payload: ChargeUpdate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    charge = _get_charge_or_404(db, charge_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "charge_name" in changes:
        changes["charge_name"] = changes["charge_name"].strip()
        if not changes["charge_name"]:
            raise HTTPException(status_code=400, detail="Charge name is required")
        if changes["charge_name"] != charge.charge_name and _charge_name_taken(
            db, changes["charge_name"], exclude_id=charge.id
        ):
            raise HTTPException(status_code=400, detail="Charge with this name already exists")
    _validate_charge(
        changes.get("charge_type", charge.charge_type),
        to_decimal(changes.get("value", charge.value)),
        changes.get("category", charge.category),
    )
    for key, value in changes.items():
        setattr(charge, key, value)
    charge.updated_at = _now()
    _commit_charge(db)
    db.refresh(charge)
    logger.info("charge %s updated by %s", charge.id, user.id)
    return _ok(_charge_data(charge), "Charge updated successfully")


@app.delete("/api/charges/{charge_id}", tags=["Charges"])
def delete_charge(
    charge_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    charge = _get_charge_or_404(db, charge_id)
    db.delete(charge)
    db.commit()
    logger.info("charge %s deleted by %s", charge_id, user.id)
    return _ok(None, "Charge deleted successfully")


@app.patch("/api/charges/{charge_id}/status", tags=["Charges"])
def toggle_charge_status(
    charge_id: int,
    payload: ChargeStatusUpdate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    if payload.active is None:
        raise HTTPException(status_code=400, detail="Active status is required")
    charge = _get_charge_or_404(db, charge_id)
    charge.active = payload.active
    charge.updated_at = _now()
    db.commit()
    db.refresh(charge)
    state = "activated" if payload.active else "deactivated"
    logger.info("charge %s %s by %s", charge.id, state, user.id)
    return _ok(_charge_data(charge), f"Charge {state} successfully")


# Tables


def _table_data(table: DiningTable) -> dict:
    return {
        "id": table.id,
        "tableName": table.table_name,
        "capacity": table.capacity,
        "spaceType": table.space_type,
        "status": table.status,
        "isReserved": table.is_reserved,
        "tableImage": table.table_image,
        "orderedMenu": table.ordered_menu or [],
        "totalBill": _money(table.total_bill),
        "currentOrderId": table.current_order_id,
        "createdBy": table.created_by,
        "createdAt": _iso(table.created_at),
        "updatedAt": _iso(table.updated_at),
    }


def _get_table_or_404(db: Session, table_id: int) -> DiningTable:
    table = db.get(DiningTable, table_id)
    if not table:
        raise HTTPException(status_code=404, detail="Table not found")
    return table


def _commit_table(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Table with this name already exists") from exc


class TableCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {"tableName": "T1", "capacity": 4, "spaceType": "Tables"}
        },
    }
    table_name: Optional[str] = Field(default=None, alias="tableName")
    capacity: Optional[int] = Field(default=None, ge=1)
    space_type: Optional[str] = Field(default=None, alias="spaceType")
    table_image: Optional[str] = Field(default=None, alias="tableImage")


class TableUpdate(BaseModel):
    model_config = {"populate_by_name": True}
    table_name: Optional[str] = Field(default=None, alias="tableName")
    capacity: Optional[int] = Field(default=None, ge=1)
    space_type: Optional[Literal["Tables", "Spa Room"]] = Field(default=None, alias="spaceType")
    status: Optional[TableStatus] = None
    is_reserved: Optional[bool] = Field(default=None, alias="isReserved")
    table_image: Optional[str] = Field(default=None, alias="tableImage")
    ordered_menu: Optional[list[dict]] = Field(default=None, alias="orderedMenu")
    total_bill: Optional[Decimal] = Field(default=None, alias="totalBill", ge=0)


@app.get("/api/tables", tags=["Tables"])
def list_tables(
    space_type: Optional[str] = Query(default=None, alias="spaceType"),
    status: Optional[TableStatus] = Query(default=None),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    query = db.query(DiningTable)
    if space_type:
        query = query.filter(DiningTable.space_type == space_type)
    if status:
        query = query.filter(DiningTable.status == status)
    tables = query.order_by(DiningTable.created_at.desc(), DiningTable.id.desc()).all()
    return _ok([_table_data(table) for table in tables], count=len(tables))


@app.post("/api/tables", tags=["Tables"], status_code=201)
def create_table(
    payload: TableCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    name = (payload.table_name or "").strip()
    if not name or not payload.capacity or payload.space_type not in SPACE_TYPES:
        raise HTTPException(
            status_code=400, detail="Please provide tableName, capacity, and spaceType"
        )
    if db.query(DiningTable).filter(DiningTable.table_name == name).first():
        raise HTTPException(status_code=400, detail="Table with this name already exists")
    now = _now()
    table = DiningTable(
        table_name=name,
        capacity=payload.capacity,
        space_type=payload.space_type,
        status="available",
        is_reserved=False,
        table_image=payload.table_image or TABLE_PLACEHOLDER_IMAGE,
        ordered_menu=[],
        total_bill=0,
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    db.add(table)
    _commit_table(db)
    db.refresh(table)
    logger.info("table %s created by %s", table.table_name, user.id)
    return _ok(_table_data(table), "Table created successfully")


@app.get("/api/tables/{table_id}", tags=["Tables"])
def get_table(
    table_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _ok(_table_data(_get_table_or_404(db, table_id)))


@app.put("/api/tables/{table_id}", tags=["Tables"])
def update_table(
    table_id: int,
    payload: TableUpdate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    table = _get_table_or_404(db, table_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if table.current_order_id is not None and (
        {"ordered_menu", "total_bill", "status"} & changes.keys()
    ):
        raise HTTPException(status_code=400, detail="Table is managed by its open order")
    if "table_name" in changes:
        changes["table_name"] = changes["table_name"].strip()
        if not changes["table_name"]:
            raise HTTPException(status_code=400, detail="Please provide tableName")
    for key, value in changes.items():
        setattr(table, key, value)
    table.updated_at = _now()
    _commit_table(db)
    db.refresh(table)
    return _ok(_table_data(table), "Table updated successfully")


@app.delete("/api/tables/{table_id}", tags=["Tables"])
def delete_table(
    table_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(authorize(*MERCHANT_ROLES)),
) -> dict:
    table = _get_table_or_404(db, table_id)
    if table.current_order_id is not None:
        raise HTTPException(status_code=400, detail="Table has an open order")
    # Order history keeps its table name snapshot.
    db.query(Order).filter(Order.table_id == table.id).update(
        {Order.table_id: None}, synchronize_session=False
    )
    db.delete(table)
    db.commit()
    logger.info("table %s deleted by %s", table_id, user.id)
    return _ok(None, "Table deleted successfully")


# Orders


def _order_data(order: Order) -> dict:
    return {
        "id": order.id,
        "orderId": order.order_code,
        "tableId": order.table_id,
        "tableName": order.table_name,
        "spaceType": order.space_type,
        "items": order.items or [],
        "totalBill": _money(order.total_bill),
        "status": order.status,
        "paymentMethod": order.payment_method,
        "discountPercent": _money(order.discount_percent),
        "discountApplied": _money(order.discount_applied),
        "optionalcharge": _money(order.optional_charge),
        "systemChargeTax": _money(order.system_charge_tax),
        "systemChargeAmmount": _money(order.system_charge_amount),
        "taxAmount": _money(order.tax_amount),
        "finalAmount": _money(order.final_amount),
        "appliedCharges": order.applied_charges,
        "guestCount": order.guest_count,
        "notes": order.notes,
        "billedAt": _iso(order.billed_at),
        "completedAt": _iso(order.completed_at),
        "createdBy": order.created_by,
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
    }


def _orders_summary(orders: list[Order]) -> dict:
    revenue = sum((to_decimal(order.final_amount) for order in orders), Decimal("0"))
    return {
        "totalOrders": len(orders),
        "totalRevenue": _money(revenue),
        "totalDiscount": _money(sum((to_decimal(o.discount_applied) for o in orders), Decimal("0"))),
        "totalTax": _money(sum((to_decimal(o.tax_amount) for o in orders), Decimal("0"))),
        "averageOrderValue": _money(revenue / len(orders)) if orders else 0.0,
    }


def _generate_order_code(db: Session) -> str:
    while True:
        stamp = int(_now().timestamp() * 1000) % 100_000_000
        code = f"ORD-{stamp:08d}-{random.randint(0, 999):03d}"
        if not db.query(Order).filter(Order.order_code == code).first():
            return code


def _get_order_or_404(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _resolve_order_ref(db: Session, ref: Union[int, str]) -> Order:
    if isinstance(ref, int) or str(ref).isdigit():
        return _get_order_or_404(db, int(ref))
    order = db.query(Order).filter(Order.order_code == str(ref)).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _open_order_for_table(db: Session, table_id: int) -> Order:
    table = _get_table_or_404(db, table_id)
    order = None
    if table.current_order_id is not None:
        order = db.get(Order, table.current_order_id)
    if order is None:
        order = (
            db.query(Order)
            .filter(Order.table_id == table.id, Order.status.in_(OPEN_ORDER_STATUSES))
            .order_by(Order.created_at.desc(), Order.id.desc())
            .first()
        )
    if order is None:
        raise HTTPException(status_code=404, detail="No open order for this table")
    return order


class OrderItemInput(BaseModel):
    id: Optional[str] = None
    name: str
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)
    subtotal: Optional[Decimal] = Field(default=None, ge=0)


def _normalize_items(items: list[OrderItemInput]) -> tuple[list[dict], Decimal]:
    normalized = []
    total = Decimal("0")
    for item in items:
        subtotal = item.subtotal if item.subtotal is not None else item.price * item.quantity
        total += subtotal
        normalized.append(
            {
                "id": item.id,
                "name": item.name,
                "price": _money(item.price),
                "quantity": item.quantity,
                "subtotal": _money(subtotal),
            }
        )
    return normalized, total


def _sync_table(db: Session, order: Order) -> None:
    table = db.get(DiningTable, order.table_id) if order.table_id is not None else None
    if table is None:
        logger.warning(
            "table %s missing for order %s; order saved without table sync",
            order.table_id,
            order.order_code,
        )
        return
    if order.status in TERMINAL_ORDER_STATUSES:
        if table.current_order_id not in (None, order.id):
            return
        table.status = "available"
        table.ordered_menu = []
        table.total_bill = 0
        table.current_order_id = None
    else:
        table.status = TABLE_STATUS_FOR_ORDER[order.status]
        table.ordered_menu = list(order.items or [])
        table.total_bill = order.total_bill
        table.current_order_id = order.id
    table.updated_at = _now()


def _set_status(db: Session, order: Order, target: str) -> None:
    if target == order.status and target != "cancelled":
        return
    try:
        check_transition(order.status, target, settings.allow_cancel_served)
    except InvalidTransition as exc:
        logger.warning("order %s: %s", order.order_code, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    order.status = target
    if target == "completed":
        order.completed_at = _now()
    _sync_table(db, order)


def _live_system_summary(db: Session):
    return summarize_system_charges(_active_charges(db, "systemcharge"))


def _optional_charges_snapshot(
    db: Session, charge_ids: list[int], total_bill: Any
) -> tuple[Decimal, list[dict]]:
    charges = (
        db.query(Charge)
        .filter(
            Charge.id.in_(charge_ids),
            Charge.category == "optionalcharge",
            Charge.active.is_(True),
        )
        .all()
    )
    found = {charge.id for charge in charges}
    missing = [charge_id for charge_id in charge_ids if charge_id not in found]
    if missing:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown or inactive optional charges: {', '.join(str(m) for m in missing)}",
        )
    amount = Decimal("0")
    snapshot = []
    for charge in charges:
        charge_amount = calculate_charge_amount(charge.charge_type, charge.value, total_bill)
        amount += charge_amount
        snapshot.append(
            {
                "chargeId": charge.id,
                "chargeName": charge.charge_name,
                "chargeType": charge.charge_type,
                "value": _money(charge.value),
                "amount": _money(charge_amount),
            }
        )
    return amount, snapshot


def _bill_order(
    db: Session,
    order: Order,
    *,
    discount_percent: Optional[Decimal] = None,
    optional_charge: Optional[Decimal] = None,
    optional_charge_ids: Optional[list[int]] = None,
    system_charge_tax: Optional[Decimal] = None,
    system_charge_amount: Optional[Decimal] = None,
) -> None:
    """Recompute ``order`` from its subtotal.

    Inputs left as ``None`` fall back to what the order already carries; system
    charges fall back to the live summary until the order has been billed once.
    """
    if order.status in TERMINAL_ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"order is already {order.status}")
    current = stored_inputs(order)
    applied_charges = current.applied_charges
    if optional_charge_ids is not None:
        optional_charge, applied_charges = _optional_charges_snapshot(
            db, optional_charge_ids, order.total_bill
        )
    elif optional_charge is not None:
        applied_charges = None
    if order.billed_at is None and (system_charge_tax is None or system_charge_amount is None):
        summary = _live_system_summary(db)
        default_tax = summary.total_system_charge_rate
        default_amount = summary.total_system_charges_amount
    else:
        default_tax = current.system_charge_tax
        default_amount = current.system_charge_amount
    inputs = BillingInputs(
        discount_percent=current.discount_percent if discount_percent is None else discount_percent,
        optional_charge=current.optional_charge if optional_charge is None else optional_charge,
        system_charge_tax=default_tax if system_charge_tax is None else system_charge_tax,
        system_charge_amount=default_amount if system_charge_amount is None else system_charge_amount,
        applied_charges=applied_charges,
    )
    bill = apply_billing(order, inputs)
    order.billed_at = _now()
    logger.info(
        "order %s billed: total %s discount %s tax %s final %s",
        order.order_code,
        bill.total_bill,
        bill.discount_amount,
        bill.tax_amount,
        bill.final_amount,
    )


class OrderCreate(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "tableId": 1,
                "items": [{"id": "m1", "name": "Paneer Tikka", "price": 250, "quantity": 2}],
                "guestCount": 2,
            }
        },
    }
    table_id: int = Field(alias="tableId")
    items: list[OrderItemInput] = Field(default_factory=list)
    total_bill: Optional[Decimal] = Field(default=None, alias="totalBill", ge=0)
    guest_count: int = Field(default=0, alias="guestCount", ge=0)
    notes: str = ""
    payment_method: PaymentMethod = Field(default="cash", alias="paymentMethod")


class OrderPatch(BaseModel):
    model_config = {"populate_by_name": True, "extra": "forbid"}
    status: Optional[OrderStatus] = None
    payment_method: Optional[PaymentMethod] = Field(default=None, alias="paymentMethod")
    items: Optional[list[OrderItemInput]] = None
    total_bill: Optional[Decimal] = Field(default=None, alias="totalBill", ge=0)
    guest_count: Optional[int] = Field(default=None, alias="guestCount", ge=0)
    notes: Optional[str] = None


class BillingRequest(BaseModel):
    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "discountPercent": 10,
                "optionalChargeIds": [3],
                "paymentMethod": "upi",
                "status": "completed",
            }
        },
    }
    discount_percent: Optional[Decimal] = Field(default=None, alias="discountPercent", ge=0, le=100)
    optional_charge: Optional[Decimal] = Field(default=None, alias="optionalcharge", ge=0)
    optional_charge_ids: Optional[list[int]] = Field(default=None, alias="optionalChargeIds")
    system_charge_tax: Optional[Decimal] = Field(default=None, alias="systemChargeTax", ge=0)
    system_charge_amount: Optional[Decimal] = Field(default=None, alias="systemChargeAmmount", ge=0)
    payment_method: Optional[PaymentMethod] = Field(default=None, alias="paymentMethod")
    status: Literal["served", "payment_pending", "completed"] = "completed"


class OrderUpdate(BaseModel):
    """Body of the legacy PUT, which mixes field merges and billing inputs.

    ``discountApplied`` is a percentage here; the stored field of the same
    name is the resulting amount. ``completedAt`` is ignored, the server
    stamps completion itself.
    """

    model_config = {"populate_by_name": True}
    status: Optional[OrderStatus] = None
    payment_method: Optional[PaymentMethod] = Field(default=None, alias="paymentMethod")
    items: Optional[list[OrderItemInput]] = None
    total_bill: Optional[Decimal] = Field(default=None, alias="totalBill", ge=0)
    guest_count: Optional[int] = Field(default=None, alias="guestCount", ge=0)
    notes: Optional[str] = None
    discount_applied: Optional[Decimal] = Field(default=None, alias="discountApplied", ge=0, le=100)
    system_charge_tax: Optional[Decimal] = Field(default=None, alias="systemChargeTax", ge=0)
    system_charge_amount: Optional[Decimal] = Field(default=None, alias="systemChargeAmmount", ge=0)
    optional_charge: Optional[Decimal] = Field(default=None, alias="optionalcharge", ge=0)

    def triggers_recompute(self) -> bool:
        return (
            self.discount_applied is not None
            and self.system_charge_tax is not None
            and self.system_charge_amount is not None
        )


class CompleteOrderRequest(BaseModel):
    model_config = {"populate_by_name": True}
    order_id: Optional[Union[int, str]] = Field(default=None, alias="orderId")
    table_id: Optional[int] = Field(default=None, alias="tableId")
    payment_method: Optional[PaymentMethod] = Field(default=None, alias="paymentMethod")
    discount_percent: Optional[Decimal] = Field(default=None, alias="discountPercent", ge=0, le=100)
    optional_charge: Optional[Decimal] = Field(default=None, alias="optionalcharge", ge=0)
    optional_charge_ids: Optional[list[int]] = Field(default=None, alias="optionalChargeIds")
    system_charge_tax: Optional[Decimal] = Field(default=None, alias="systemChargeTax", ge=0)
    system_charge_amount: Optional[Decimal] = Field(default=None, alias="systemChargeAmmount", ge=0)


class CancelOrderRequest(BaseModel):
    reason: str = ""


def _patch_order_fields(db: Session, order: Order, patch: Union[OrderPatch, OrderUpdate]) -> None:
    # Status moves are left to the caller so billing can run before them.
    if patch.payment_method is not None:
        order.payment_method = patch.payment_method
    if patch.guest_count is not None:
        order.guest_count = patch.guest_count
    if patch.notes is not None:
        order.notes = patch.notes
    totals_changed = False
    if (patch.items is not None or patch.total_bill is not None) and (
        order.status not in OPEN_ORDER_STATUSES
    ):
        raise HTTPException(status_code=400, detail=f"order is already {order.status}")
    if patch.items is not None:
        if not patch.items:
            raise HTTPException(status_code=400, detail="Please provide items")
        order.items, items_total = _normalize_items(patch.items)
        order.total_bill = patch.total_bill if patch.total_bill is not None else items_total
        totals_changed = True
    elif patch.total_bill is not None:
        order.total_bill = patch.total_bill
        totals_changed = True
    if totals_changed:
        apply_billing(order, stored_inputs(order))
        _sync_table(db, order)


def _cancel(db: Session, order: Order, reason: Optional[str]) -> None:
    _set_status(db, order, "cancelled")
    if reason:
        order.notes = reason


@app.post("/api/orders", tags=["Orders"], status_code=201)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    if not payload.items:
        raise HTTPException(status_code=400, detail="Please provide tableId and items")
    table = _get_table_or_404(db, payload.table_id)
    if table.current_order_id is not None:
        current = db.get(Order, table.current_order_id)
        if current is not None and current.status in OPEN_ORDER_STATUSES:
            raise HTTPException(status_code=400, detail="Table already has an open order")
    items, items_total = _normalize_items(payload.items)
    total_bill = payload.total_bill if payload.total_bill is not None else items_total
    now = _now()
    order = Order(
        order_code=_generate_order_code(db),
        table_id=table.id,
        table_name=table.table_name,
        space_type=table.space_type,
        items=items,
        total_bill=total_bill,
        status="pending",
        payment_method=payload.payment_method,
        guest_count=payload.guest_count,
        notes=payload.notes,
        created_by=user.id,
        created_at=now,
        updated_at=now,
    )
    apply_billing(order, BillingInputs())
    db.add(order)
    db.flush()
    _sync_table(db, order)
    db.commit()
    db.refresh(order)
    logger.info("order %s created on table %s by %s", order.order_code, table.table_name, user.id)
    return _ok(_order_data(order), "Order created successfully")


@app.get("/api/orders", tags=["Orders"])
def list_orders(
    status: Optional[OrderStatus] = Query(default=None),
    time_frame: Optional[TimeFrame] = Query(default=None, alias="timeFrame"),
    table_id: Optional[int] = Query(default=None, alias="tableId"),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    if table_id is not None:
        query = query.filter(Order.table_id == table_id)
    if time_frame:
        query = query.filter(Order.created_at >= _time_frame_start(time_frame, _now()))
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).all()
    return _ok(
        [_order_data(order) for order in orders],
        count=len(orders),
        summary=_orders_summary(orders),
    )


@app.get("/api/orders/summary/stats", tags=["Orders"])
def get_orders_summary(
    time_frame: TimeFrame = Query(default="today", alias="timeFrame"),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    orders = (
        db.query(Order)
        .filter(
            Order.status == "completed",
            Order.completed_at >= _time_frame_start(time_frame, _now()),
        )
        .all()
    )
    summary = {"timeFrame": time_frame, **_orders_summary(orders)}
    summary["paymentMethods"] = {
        method: sum(1 for order in orders if order.payment_method == method)
        for method in get_args(PaymentMethod)
    }
    return _ok(summary)


@app.post("/api/orders/complete", tags=["Orders"])
def complete_order(
    payload: CompleteOrderRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    if payload.order_id is not None:
        order = _resolve_order_ref(db, payload.order_id)
    elif payload.table_id is not None:
        order = _open_order_for_table(db, payload.table_id)
    else:
        raise HTTPException(status_code=400, detail="Please provide orderId or tableId")
    return _complete(db, order, payload, user)


@app.post("/api/orders/{table_id}/complete", tags=["Orders"])
def complete_table_order(
    table_id: int,
    payload: Optional[CompleteOrderRequest] = Body(default=None),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    order = _open_order_for_table(db, table_id)
    return _complete(db, order, payload or CompleteOrderRequest(), user)


def _complete(db: Session, order: Order, payload: CompleteOrderRequest, user: CurrentUser) -> dict:
    if payload.payment_method is not None:
        order.payment_method = payload.payment_method
    _bill_order(
        db,
        order,
        discount_percent=payload.discount_percent,
        optional_charge=payload.optional_charge,
        optional_charge_ids=payload.optional_charge_ids,
        system_charge_tax=payload.system_charge_tax,
        system_charge_amount=payload.system_charge_amount,
    )
    _set_status(db, order, "completed")
    order.updated_at = _now()
    db.commit()
    db.refresh(order)
    logger.info("order %s completed by %s", order.order_code, user.id)
    return _ok(_order_data(order), "Order completed successfully")


@app.get("/api/orders/{order_id}", tags=["Orders"])
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _ok(_order_data(_get_order_or_404(db, order_id)))


@app.get("/api/orders/{order_id}/invoice", tags=["Orders"], response_class=HTMLResponse)
def get_order_invoice(
    order_id: int,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> HTMLResponse:
    order = _get_order_or_404(db, order_id)
    return HTMLResponse(render_invoice(_order_data(order), currency_symbol=settings.currency_symbol))


@app.patch("/api/orders/{order_id}", tags=["Orders"])
def patch_order(
    order_id: int,
    payload: OrderPatch,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    order = _get_order_or_404(db, order_id)
    _patch_order_fields(db, order, payload)
    if payload.status is not None:
        _set_status(db, order, payload.status)
    order.updated_at = _now()
    db.commit()
    db.refresh(order)
    return _ok(_order_data(order), "Order updated successfully")


@app.post("/api/orders/{order_id}/billing", tags=["Orders"])
def bill_order(
    order_id: int,
    payload: BillingRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    order = _get_order_or_404(db, order_id)
    if payload.payment_method is not None:
        order.payment_method = payload.payment_method
    _bill_order(
        db,
        order,
        discount_percent=payload.discount_percent,
        optional_charge=payload.optional_charge,
        optional_charge_ids=payload.optional_charge_ids,
        system_charge_tax=payload.system_charge_tax,
        system_charge_amount=payload.system_charge_amount,
    )
    _set_status(db, order, payload.status)
    order.updated_at = _now()
    db.commit()
    db.refresh(order)
    return _ok(_order_data(order), "Order billed successfully")


@app.put("/api/orders/{order_id}", tags=["Orders"])
def update_order(
    order_id: int,
    payload: OrderUpdate,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    order = _get_order_or_404(db, order_id)
    _patch_order_fields(db, order, payload)
    if payload.triggers_recompute():
        _bill_order(
            db,
            order,
            discount_percent=payload.discount_applied,
            optional_charge=payload.optional_charge or Decimal("0"),
            system_charge_tax=payload.system_charge_tax,
            system_charge_amount=payload.system_charge_amount,
        )
    if payload.status is not None:
        _set_status(db, order, payload.status)
    order.updated_at = _now()
    db.commit()
    db.refresh(order)
    return _ok(_order_data(order), "Order updated successfully")


def _cancel_order(db: Session, order_id: int, reason: str, user: CurrentUser) -> dict:
    order = _get_order_or_404(db, order_id)
    _cancel(db, order, reason)
    order.updated_at = _now()
    db.commit()
    db.refresh(order)
    logger.info("order %s cancelled by %s", order.order_code, user.id)
    return _ok(_order_data(order), "Order cancelled successfully")


@app.post("/api/orders/{order_id}/cancel", tags=["Orders"])
def cancel_order(
    order_id: int,
    payload: Optional[CancelOrderRequest] = Body(default=None),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _cancel_order(db, order_id, payload.reason if payload else "", user)


@app.delete("/api/orders/{order_id}", tags=["Orders"])
def delete_order(
    order_id: int,
    payload: Optional[CancelOrderRequest] = Body(default=None),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    return _cancel_order(db, order_id, payload.reason if payload else "", user)
