from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from lpg_backend.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(14, 2)

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_CASHIER = "cashier"
ROLE_DRIVER = "driver"
ROLE_RECOVERY_AGENT = "recovery_agent"
ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_CASHIER, ROLE_DRIVER, ROLE_RECOVERY_AGENT)
ADMIN_ROLES = (ROLE_ADMIN, ROLE_MANAGER)
RECEIVER_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_CASHIER)
FIELD_ROLES = (ROLE_DRIVER, ROLE_RECOVERY_AGENT)

CYLINDER_FULL = "full"
CYLINDER_EMPTY = "empty"
CYLINDER_MAINTENANCE = "maintenance"
CYLINDER_MISSING = "missing"
CYLINDER_HANDOVER_PENDING = "handover_pending"
CYLINDER_AT_CUSTOMER = "at_customer"
CYLINDER_STATUSES = (
    CYLINDER_FULL,
    CYLINDER_EMPTY,
    CYLINDER_MAINTENANCE,
    CYLINDER_MISSING,
    CYLINDER_HANDOVER_PENDING,
    CYLINDER_AT_CUSTOMER,
)

LOCATION_WAREHOUSE = "warehouse"
LOCATION_DRIVER = "driver"
LOCATION_CUSTOMER = "customer"

ORDER_PENDING = "pending"
ORDER_ASSIGNED = "assigned"
ORDER_ON_TRIP = "on_trip"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"
ACTIVE_ORDER_STATUSES = (ORDER_ASSIGNED, ORDER_ON_TRIP)

ENTRY_PENDING = "pending"
ENTRY_PENDING_VERIFICATION = "pending_verification"
ENTRY_COMPLETED = "completed"
ENTRY_REJECTED = "rejected"

CASH_IN = "cash_in"
CASH_OUT = "cash_out"

CATEGORY_HANDOVER_REQUEST = "handover_request"
CATEGORY_COLLECTION = "collection"
CATEGORY_CUSTOMER_PAYMENT = "customer_payment"

LEDGER_DEBIT = "debit"
LEDGER_CREDIT = "credit"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(Base):
    __tablename__ = "tenant"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="ACTIVE")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserProfile(Base):
    __tablename__ = "user_profile"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text)
    role: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class EmployeeWallet(Base):
    __tablename__ = "employee_wallet"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_profile.id"), nullable=False, unique=True
    )
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __mapper_args__ = {"version_id_col": version_id}


class Customer(Base):
    __tablename__ = "customer"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    # positive = owes money, negative = advance credit
    current_balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    credit_limit: Mapped[Decimal | None] = mapped_column(MONEY)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __mapper_args__ = {"version_id_col": version_id}


class CustomerLedger(Base):
    __tablename__ = "customer_ledger"
    __table_args__ = (Index("ix_customer_ledger_tenant_customer", "tenant_id", "customer_id"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    customer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customer.id"), nullable=False
    )
    # signed debt delta: debit > 0, credit < 0
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    transaction_type: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    reference_type: Mapped[str | None] = mapped_column(Text)
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    created_by: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_profile.id")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Cylinder(Base):
    __tablename__ = "cylinder"
    __table_args__ = (
        UniqueConstraint("tenant_id", "serial_number", name="uq_cylinder_tenant_serial"),
        Index("ix_cylinder_holder", "tenant_id", "current_location_type", "current_holder_id"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    serial_number: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[str] = mapped_column(Text, nullable=False, default="45.4KG")
    status: Mapped[str] = mapped_column(Text, nullable=False, default=CYLINDER_FULL)
    # read and written through lpg_backend.inventory.Holder only
    current_location_type: Mapped[str] = mapped_column(
        Text, nullable=False, default=LOCATION_WAREHOUSE
    )
    current_holder_id: Mapped[int | None] = mapped_column(BigInteger)
    last_order_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    customer_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("customer.id"), nullable=False
    )
    driver_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_profile.id")
    )
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ORDER_PENDING)
    cylinders_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    amount_received: Mapped[Decimal | None] = mapped_column(MONEY)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    empties_returned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text)
    proof_url: Mapped[str | None] = mapped_column(Text)
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_profile.id")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trip_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OrderItem(Base):
    __tablename__ = "order_item"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("orders.id"), nullable=False
    )
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))


class CashBookEntry(Base):
    __tablename__ = "cash_book_entry"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    created_by: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_profile.id")
    )
    receiver_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_profile.id")
    )
    customer_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("customer.id")
    )
    transaction_type: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=ENTRY_COMPLETED)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="cash")
    description: Mapped[str | None] = mapped_column(Text)
    proof_url: Mapped[str | None] = mapped_column(Text)
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    # serial -> status before the handover lock
    asset_snapshot: Mapped[dict | None] = mapped_column(JSON_TYPE)
    verified_by: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_profile.id")
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CompensationTask(Base):
    __tablename__ = "compensation_task"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("tenant.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
