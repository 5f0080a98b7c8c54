"""Customer accounts."""

from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from lpg_backend import ledger
from lpg_backend.exceptions import ConcurrencyConflictError, InvalidRequestError
from lpg_backend.inventory import CustomerHolder, cylinders_held
from lpg_backend.logging_config import get_logger
from lpg_backend.models import Customer, Order, UserProfile, utcnow

logger = get_logger("customers")

DEFAULT_CREDIT_LIMIT = Decimal("50000")
BALANCE_FILTERS = ("all", "positive", "negative", "zero")


def create_customer(
    db: Session,
    user: UserProfile,
    name: str,
    phone: str,
    address: Optional[str] = None,
    city: Optional[str] = None,
    opening_balance=0,
    security_deposit=0,
    credit_limit=None,
) -> Customer:
    """Create a customer with its opening postings.

    A positive ``opening_balance`` is brought-forward debt, a negative one an
    advance. ``security_deposit`` is held for the customer's cylinders and is
    credited.
    """
    if not name or not phone:
        raise InvalidRequestError("Name and Phone are required")
    opening = ledger.to_money(opening_balance or 0)
    deposit = ledger.to_money(security_deposit or 0)
    if deposit < 0:
        raise InvalidRequestError("Security deposit cannot be negative")
    if city:
        address = f"{address}, {city}" if address else city

    now = utcnow()
    customer = Customer(
        tenant_id=user.tenant_id,
        name=name,
        phone=phone,
        address=address,
        current_balance=Decimal("0"),
        credit_limit=ledger.to_money(DEFAULT_CREDIT_LIMIT if credit_limit is None else credit_limit),
        is_active=True,
        created_at=now,
    )
    db.add(customer)
    db.flush()
    if opening != 0:
        ledger.post_to_ledger(
            db,
            customer,
            opening,
            "opening_balance",
            description="Opening Balance Brought Forward",
            created_by=user.id,
        )
    if deposit > 0:
        ledger.credit(
            db,
            customer,
            deposit,
            "security_deposit",
            description="Security Deposit (Cylinders)",
            created_by=user.id,
        )
    db.commit()
    db.refresh(customer)
    logger.info("customer_created", extra={"customer_id": customer.id})
    return customer


def update_customer(
    db: Session,
    tenant_id: int,
    customer_id: int,
    changes: dict,
    expected_version: Optional[int] = None,
) -> Customer:
    customer = ledger.get_customer(db, tenant_id, customer_id)
    if expected_version is not None and customer.version_id != expected_version:
        raise ConcurrencyConflictError("customer", customer_id)
    for key in ("name", "phone", "address", "credit_limit"):
        if key in changes and changes[key] is not None:
            setattr(customer, key, changes[key])
    customer.updated_at = utcnow()
    db.commit()
    db.refresh(customer)
    return customer


def set_active(db: Session, tenant_id: int, customer_id: int, is_active: bool) -> Customer:
    customer = ledger.get_customer(db, tenant_id, customer_id)
    customer.is_active = is_active
    customer.updated_at = utcnow()
    db.commit()
    db.refresh(customer)
    return customer


def customer_query(
    db: Session,
    tenant_id: int,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    balance: str = "all",
):
    if balance not in BALANCE_FILTERS:
        raise InvalidRequestError(f"invalid balance filter '{balance}'")
    query = db.query(Customer).filter(Customer.tenant_id == tenant_id)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Customer.name.ilike(pattern), Customer.phone.ilike(pattern)))
    if is_active is not None:
        query = query.filter(Customer.is_active == is_active)
    if balance == "positive":
        query = query.filter(Customer.current_balance > 0)
    elif balance == "negative":
        query = query.filter(Customer.current_balance < 0)
    elif balance == "zero":
        query = query.filter(Customer.current_balance == 0)
    return query


def customer_stats(db: Session, tenant_id: int) -> dict:
    receivables, defaulters = db.execute(
        select(func.coalesce(func.sum(Customer.current_balance), 0), func.count(Customer.id)).where(
            Customer.tenant_id == tenant_id,
            Customer.current_balance > 0,
        )
    ).one()
    return {"total_receivables": ledger.to_money(receivables or 0), "defaulters_count": defaulters}


def customer_assets(db: Session, tenant_id: int, customer_id: int):
    customer = ledger.get_customer(db, tenant_id, customer_id)
    return cylinders_held(db, tenant_id, CustomerHolder(customer.id))


def customer_orders(db: Session, tenant_id: int, customer_id: int) -> list[Order]:
    customer = ledger.get_customer(db, tenant_id, customer_id)
    return db.scalars(
        select(Order)
        .where(Order.tenant_id == tenant_id, Order.customer_id == customer.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    ).all()
