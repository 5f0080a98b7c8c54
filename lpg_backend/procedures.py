"""
Transactional procedures.

Each procedure is a single unit of work over several tables: it takes row
locks (``SELECT ... FOR UPDATE``), mutates, and either commits everything or
rolls everything back. Callers only ever see the ``ProcedureResult`` contract
``{success, message}``; they never inspect finer-grained failure reasons.

A procedure body signals a business-rule failure by raising
``ProcedureAbort``. An optimistic-lock conflict (``StaleDataError``) or any
other database error also rolls back and is reported as ``success=False``.
"""

import functools
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from lpg_backend import ledger
from lpg_backend.inventory import (
    WAREHOUSE,
    CustomerHolder,
    DriverHolder,
    held_by,
    move_to,
)
from lpg_backend.logging_config import get_logger
from lpg_backend.models import (
    ACTIVE_ORDER_STATUSES,
    CASH_IN,
    CASH_OUT,
    CATEGORY_COLLECTION,
    CATEGORY_CUSTOMER_PAYMENT,
    CATEGORY_HANDOVER_REQUEST,
    CYLINDER_AT_CUSTOMER,
    CYLINDER_EMPTY,
    CYLINDER_FULL,
    CYLINDER_HANDOVER_PENDING,
    ENTRY_COMPLETED,
    ENTRY_PENDING,
    ENTRY_PENDING_VERIFICATION,
    ORDER_ASSIGNED,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    RECEIVER_ROLES,
    ADMIN_ROLES,
    ROLE_DRIVER,
    CashBookEntry,
    Customer,
    Cylinder,
    Order,
    OrderItem,
    UserProfile,
    utcnow,
)

logger = get_logger("procedures")

PAYMENT_METHODS = ("cash", "credit", "bank", "cheque", "online")
DEFERRED_PAYMENT_METHODS = ("bank", "cheque", "online")


@dataclass(frozen=True)
class ProcedureResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, **self.data}


class ProcedureAbort(Exception):
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def procedure(name: str):
    """Run the wrapped function as one commit-or-rollback unit of work."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(db: Session, *args, **kwargs) -> ProcedureResult:
            try:
                result = fn(db, *args, **kwargs)
                db.commit()
            except ProcedureAbort as exc:
                db.rollback()
                logger.info("procedure_aborted", extra={"procedure": name, "reason": exc.message})
                return ProcedureResult(False, exc.message)
            except StaleDataError:
                db.rollback()
                logger.warning("procedure_conflict", extra={"procedure": name})
                return ProcedureResult(False, "Record was modified by another request, please retry")
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("procedure_failed", extra={"procedure": name})
                return ProcedureResult(False, f"{name} failed: {exc.__class__.__name__}")
            logger.info("procedure_completed", extra={"procedure": name, **result.data})
            return result

        wrapper.procedure_name = name
        return wrapper

    return decorator


def _locked_customer(db: Session, tenant_id: int, customer_id: int) -> Customer:
    customer = db.scalars(
        select(Customer)
        .where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
        .with_for_update()
    ).first()
    if customer is None:
        raise ProcedureAbort("Customer not found")
    return customer


def required_quantity(db: Session, order_id: int) -> int:
    return int(
        db.scalar(select(func.coalesce(func.sum(OrderItem.quantity), 0)).where(OrderItem.order_id == order_id))
        or 0
    )


@procedure("approve_driver_handover")
def approve_driver_handover(db: Session, transaction_id: int, admin_id: int) -> ProcedureResult:
    """Complete a pending handover request.

    The locked cylinders go back to the warehouse with the status they had
    before locking. Receivers hold stock on behalf of the company, so there
    is no per-receiver holder. The deposit is debited from the sender's wallet.
    """
    admin = db.get(UserProfile, admin_id)
    if admin is None or admin.role not in RECEIVER_ROLES:
        raise ProcedureAbort("Only admins, managers or cashiers can approve handovers")

    request = db.scalars(
        select(CashBookEntry)
        .where(
            CashBookEntry.id == transaction_id,
            CashBookEntry.tenant_id == admin.tenant_id,
            CashBookEntry.category == CATEGORY_HANDOVER_REQUEST,
        )
        .with_for_update()
    ).first()
    if request is None:
        raise ProcedureAbort("Transaction not found")
    if request.status != ENTRY_PENDING:
        raise ProcedureAbort("Transaction already processed")

    snapshot = request.asset_snapshot or {}
    received = 0
    if snapshot:
        cylinders = db.scalars(
            select(Cylinder)
            .where(
                Cylinder.tenant_id == admin.tenant_id,
                Cylinder.serial_number.in_(list(snapshot)),
                Cylinder.status == CYLINDER_HANDOVER_PENDING,
                *held_by(DriverHolder(request.created_by)),
            )
            .with_for_update()
        ).all()
        for cylinder in cylinders:
            move_to(cylinder, WAREHOUSE, status=snapshot.get(cylinder.serial_number) or CYLINDER_EMPTY)
        received = len(cylinders)
        if received != len(snapshot):
            logger.warning(
                "handover_assets_drifted",
                extra={"transaction_id": transaction_id, "expected": len(snapshot), "received": received},
            )

    amount = ledger.to_money(request.amount)
    if amount > 0:
        wallet = ledger.get_wallet(db, admin.tenant_id, request.created_by, for_update=True)
        if wallet is None or ledger.to_money(wallet.balance) < amount:
            raise ProcedureAbort("Insufficient wallet balance for handover")
        ledger.adjust_wallet(wallet, -amount)

    request.status = ENTRY_COMPLETED
    request.verified_by = admin.id
    request.verified_at = utcnow()
    return ProcedureResult(
        True,
        "Handover Approved Successfully",
        {"transaction_id": request.id, "cylinders_received": received, "amount": str(amount)},
    )


@procedure("complete_order_transaction")
def complete_order_transaction(
    db: Session,
    order_id: int,
    driver_id: int,
    tenant_id: int,
    received_amount,
    payment_method: str,
    returned_serials: list[str],
    returned_empty_count: int,
    notes: str,
    proof_url: Optional[str],
) -> ProcedureResult:
    if payment_method not in PAYMENT_METHODS:
        raise ProcedureAbort(f"Unsupported payment method '{payment_method}'")
    received = ledger.to_money(received_amount or 0)
    if received < 0:
        raise ProcedureAbort("Received amount cannot be negative")

    order = db.scalars(
        select(Order)
        .where(Order.id == order_id, Order.driver_id == driver_id, Order.tenant_id == tenant_id)
        .with_for_update()
    ).first()
    if order is None:
        raise ProcedureAbort("Order not found or access denied")
    if order.status not in ACTIVE_ORDER_STATUSES:
        raise ProcedureAbort(f"Order is already {order.status}")

    customer = _locked_customer(db, tenant_id, order.customer_id)
    truck = DriverHolder(driver_id)

    required = required_quantity(db, order.id)
    delivered = []
    if required > 0:
        on_truck = db.scalars(
            select(Cylinder)
            .where(Cylinder.tenant_id == tenant_id, Cylinder.status == CYLINDER_FULL, *held_by(truck))
            .with_for_update()
        ).all()
        # the order's own cylinders first, then oldest stock
        on_truck = sorted(on_truck, key=lambda c: (c.last_order_id != order.id, c.id))
        if len(on_truck) < required:
            raise ProcedureAbort(
                f"Insufficient stock! You have {len(on_truck)}, but order needs {required}."
            )
        delivered = on_truck[:required]
        for cylinder in delivered:
            move_to(cylinder, CustomerHolder(customer.id), status=CYLINDER_AT_CUSTOMER)
            cylinder.last_order_id = order.id

    serials = sorted(set(returned_serials or []))
    if serials:
        returned = db.scalars(
            select(Cylinder)
            .where(
                Cylinder.tenant_id == tenant_id,
                Cylinder.serial_number.in_(serials),
                *held_by(CustomerHolder(customer.id)),
            )
            .with_for_update()
        ).all()
        if len(returned) != len(serials):
            missing = sorted(set(serials) - {c.serial_number for c in returned})
            raise ProcedureAbort(f"Returned cylinders not held by this customer: {', '.join(missing)}")
        for cylinder in returned:
            move_to(cylinder, truck, status=CYLINDER_EMPTY)

    total = ledger.to_money(order.total_amount or 0)
    if total > 0:
        ledger.debit(
            db,
            customer,
            total,
            "order_delivery",
            description=f"Delivery of order #{order.id}",
            reference_type="order",
            reference_id=order.id,
            created_by=driver_id,
        )

    if received > 0 and payment_method == "cash":
        ledger.credit(
            db,
            customer,
            received,
            "payment_received",
            description=f"Cash received on delivery of order #{order.id}",
            reference_type="order",
            reference_id=order.id,
            created_by=driver_id,
        )
        wallet = ledger.get_wallet(db, tenant_id, driver_id, create=True, for_update=True)
        ledger.adjust_wallet(wallet, received)
    elif received > 0 and payment_method in DEFERRED_PAYMENT_METHODS:
        db.add(
            CashBookEntry(
                tenant_id=tenant_id,
                created_by=driver_id,
                customer_id=customer.id,
                transaction_type=CASH_IN,
                category=CATEGORY_COLLECTION,
                status=ENTRY_PENDING_VERIFICATION,
                amount=received,
                payment_method=payment_method,
                description=f"{payment_method} payment on delivery of order #{order.id}",
                proof_url=proof_url,
                reference_id=order.id,
                created_at=utcnow(),
            )
        )

    now = utcnow()
    order.status = ORDER_DELIVERED
    order.amount_received = received
    order.payment_method = payment_method
    order.empties_returned = len(serials) or max(int(returned_empty_count or 0), 0)
    order.notes = notes or None
    order.proof_url = proof_url
    order.delivered_at = now
    return ProcedureResult(
        True,
        "Order delivered",
        {"order_id": order.id, "delivered": len(delivered), "returned": len(serials)},
    )


@procedure("cancel_order_transaction")
def cancel_order_transaction(db: Session, order_id: int, admin_id: int, reason: str) -> ProcedureResult:
    admin = db.get(UserProfile, admin_id)
    if admin is None or admin.role not in ADMIN_ROLES:
        raise ProcedureAbort("Only admins or managers can cancel orders")
    if not reason:
        raise ProcedureAbort("Cancellation reason is required")

    order = db.scalars(
        select(Order).where(Order.id == order_id, Order.tenant_id == admin.tenant_id).with_for_update()
    ).first()
    if order is None:
        raise ProcedureAbort("Order not found")
    if order.status in (ORDER_DELIVERED, ORDER_CANCELLED):
        raise ProcedureAbort(f"Order cannot be cancelled (status: {order.status})")

    returned = 0
    if order.driver_id is not None:
        cylinders = db.scalars(
            select(Cylinder)
            .where(
                Cylinder.tenant_id == admin.tenant_id,
                Cylinder.last_order_id == order.id,
                Cylinder.status == CYLINDER_FULL,
                *held_by(DriverHolder(order.driver_id)),
            )
            .with_for_update()
        ).all()
        for cylinder in cylinders:
            move_to(cylinder, WAREHOUSE)
        returned = len(cylinders)

    order.status = ORDER_CANCELLED
    order.cancel_reason = reason
    order.cancelled_at = utcnow()
    return ProcedureResult(
        True,
        "Order Cancelled Successfully",
        {"order_id": order.id, "cylinders_returned": returned},
    )


@procedure("bulk_assign_orders")
def bulk_assign_orders(
    db: Session, order_ids: list[int], driver_id: int, tenant_id: int, user_id: int
) -> ProcedureResult:
    ids = sorted(set(order_ids))
    if not ids:
        raise ProcedureAbort("No orders selected")
    driver = db.get(UserProfile, driver_id)
    if driver is None or driver.tenant_id != tenant_id or driver.role != ROLE_DRIVER:
        raise ProcedureAbort("Invalid Driver for this Tenant")

    orders = db.scalars(
        select(Order).where(Order.id.in_(ids), Order.tenant_id == tenant_id).with_for_update()
    ).all()
    if len(orders) != len(ids):
        raise ProcedureAbort("Some orders were not found")
    for order in orders:
        if order.status not in (ORDER_PENDING, ORDER_ASSIGNED):
            raise ProcedureAbort(f"Order #{order.id} is already {order.status}")

    moved = 0
    for order in orders:
        if order.driver_id is not None and order.driver_id != driver_id:
            cylinders = db.scalars(
                select(Cylinder)
                .where(
                    Cylinder.tenant_id == tenant_id,
                    Cylinder.last_order_id == order.id,
                    Cylinder.status == CYLINDER_FULL,
                    *held_by(DriverHolder(order.driver_id)),
                )
                .with_for_update()
            ).all()
            for cylinder in cylinders:
                move_to(cylinder, DriverHolder(driver_id))
            moved += len(cylinders)
        order.driver_id = driver_id
        order.status = ORDER_ASSIGNED

    return ProcedureResult(
        True,
        f"{len(orders)} orders assigned to {driver.full_name}",
        {"assigned": len(orders), "cylinders_moved": moved, "assigned_by": user_id},
    )


@procedure("process_customer_payment")
def process_customer_payment(
    db: Session,
    tenant_id: int,
    customer_id: int,
    amount,
    payment_method: str,
    admin_id: int,
    description: str,
) -> ProcedureResult:
    amount = ledger.to_money(amount)
    if amount <= 0:
        raise ProcedureAbort("Invalid amount")
    customer = _locked_customer(db, tenant_id, customer_id)
    ledger.credit(
        db,
        customer,
        amount,
        CATEGORY_CUSTOMER_PAYMENT,
        description=description,
        created_by=admin_id,
    )
    db.add(
        CashBookEntry(
            tenant_id=tenant_id,
            created_by=admin_id,
            customer_id=customer.id,
            transaction_type=CASH_IN,
            category=CATEGORY_CUSTOMER_PAYMENT,
            status=ENTRY_COMPLETED,
            amount=amount,
            payment_method=payment_method,
            description=description,
            created_at=utcnow(),
        )
    )
    return ProcedureResult(True, "Payment recorded", {"customer_id": customer.id})


@procedure("record_expense_transaction")
def record_expense_transaction(
    db: Session,
    tenant_id: int,
    amount,
    entry_type: str,
    category: str,
    description: str,
    user_id: int,
) -> ProcedureResult:
    amount = ledger.to_money(amount)
    if amount <= 0:
        raise ProcedureAbort("Invalid amount")
    if entry_type not in ("income", "expense"):
        raise ProcedureAbort(f"Unknown transaction type '{entry_type}'")
    entry = CashBookEntry(
        tenant_id=tenant_id,
        created_by=user_id,
        transaction_type=CASH_IN if entry_type == "income" else CASH_OUT,
        category=category,
        status=ENTRY_COMPLETED,
        amount=amount,
        description=description,
        created_at=utcnow(),
    )
    db.add(entry)
    db.flush()
    return ProcedureResult(True, "Transaction recorded", {"entry_id": entry.id})


@procedure("collect_payment_with_ledger")
def collect_payment_with_ledger(
    db: Session,
    tenant_id: int,
    customer_id: int,
    amount,
    description: str,
    user_id: int,
) -> ProcedureResult:
    """Cash collected in the field: the customer's debt drops, the agent's wallet grows."""
    amount = ledger.to_money(amount)
    if amount <= 0:
        raise ProcedureAbort("Invalid amount")
    customer = _locked_customer(db, tenant_id, customer_id)
    ledger.credit(
        db,
        customer,
        amount,
        CATEGORY_COLLECTION,
        description=description,
        created_by=user_id,
    )
    wallet = ledger.get_wallet(db, tenant_id, user_id, create=True, for_update=True)
    ledger.adjust_wallet(wallet, amount)
    return ProcedureResult(True, "Payment collected", {"customer_id": customer.id, "amount": str(amount)})
