from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from bistro_pos.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY_TYPE = Numeric(12, 2)

CHARGE_TYPES = ("percentage", "fixed")
CHARGE_CATEGORIES = ("systemcharge", "optionalcharge")
SPACE_TYPES = ("Tables", "Spa Room")

TABLE_PLACEHOLDER_IMAGE = "https://res.cloudinary.com/demo/image/upload/v1/table-placeholder.png"


class Charge(Base):
    __tablename__ = "charge"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    charge_name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    charge_type: Mapped[str] = mapped_column(Text, nullable=False, default="percentage")
    value: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="optionalcharge")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("charge_type IN ('percentage', 'fixed')", name="charge_type"),
        CheckConstraint("category IN ('systemcharge', 'optionalcharge')", name="charge_category"),
        CheckConstraint("value >= 0", name="charge_value_non_negative"),
        CheckConstraint(
            "charge_type <> 'percentage' OR value <= 100", name="charge_percentage_max"
        ),
        Index("ix_charge_category_active", "category", "active"),
    )


class DiningTable(Base):
    __tablename__ = "dining_table"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    space_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="available")
    is_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    table_image: Mapped[str] = mapped_column(
        Text, nullable=False, default=TABLE_PLACEHOLDER_IMAGE
    )
    ordered_menu: Mapped[list] = mapped_column(JSON_TYPE, nullable=False, default=list)
    total_bill: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    # Plain column rather than a foreign key: order and table reference each other.
    current_order_id: Mapped[int | None] = mapped_column(BigInteger)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("capacity >= 1", name="table_capacity_positive"),
        CheckConstraint("space_type IN ('Tables', 'Spa Room')", name="table_space_type"),
        Index("ix_dining_table_created_by_space_type", "created_by", "space_type"),
    )


class Order(Base):
    __tablename__ = "customer_order"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    table_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("dining_table.id", ondelete="SET NULL")
    )
    table_name: Mapped[str] = mapped_column(Text, nullable=False)
    space_type: Mapped[str] = mapped_column(Text, nullable=False)
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False, default=list)
    total_bill: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="cash")
    discount_percent: Mapped[Numeric] = mapped_column(Numeric(5, 2), nullable=False, default=0)
    discount_applied: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    optional_charge: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    system_charge_tax: Mapped[Numeric] = mapped_column(Numeric(7, 2), nullable=False, default=0)
    system_charge_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    tax_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    final_amount: Mapped[Numeric] = mapped_column(MONEY_TYPE, nullable=False, default=0)
    applied_charges: Mapped[list | None] = mapped_column(JSON_TYPE)
    billed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    guest_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    completed_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'served', 'payment_pending', 'completed', 'cancelled')",
            name="order_status",
        ),
        CheckConstraint(
            "payment_method IN ('cash', 'card', 'online', 'upi')", name="order_payment_method"
        ),
        Index("ix_customer_order_created_by_status", "created_by", "status"),
        Index("ix_customer_order_created_by_completed_at", "created_by", "completed_at"),
        Index("ix_customer_order_table_status", "table_id", "status"),
    )
