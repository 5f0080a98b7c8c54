"""Order dispatch and delivery."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from lpg_backend import procedures
from lpg_backend.exceptions import (
    AlreadyProcessedError,
    InsufficientStockError,
    InvalidRequestError,
    NotFoundError,
    ProcedureFailedError,
    StorageError,
)
from lpg_backend.inventory import WAREHOUSE, DriverHolder, count_held, held_by, move_to
from lpg_backend.ledger import get_customer, to_money, wallet_balance
from lpg_backend.logging_config import get_logger
from lpg_backend.models import (
    ACTIVE_ORDER_STATUSES,
    CYLINDER_EMPTY,
    CYLINDER_FULL,
    ORDER_ASSIGNED,
    ORDER_DELIVERED,
    ORDER_ON_TRIP,
    ORDER_PENDING,
    ROLE_DRIVER,
    Cylinder,
    Order,
    OrderItem,
    UserProfile,
    utcnow,
)
from lpg_backend.storage import ProofStorage

logger = get_logger("orders")

DEFAULT_PRODUCT = "LPG Cylinder 45.4KG"


def get_driver(db: Session, tenant_id: int, driver_id: int) -> UserProfile:
    driver = db.get(UserProfile, driver_id)
    if driver is None or driver.tenant_id != tenant_id or driver.role != ROLE_DRIVER or not driver.is_active:
        raise InvalidRequestError("Invalid Driver for this Tenant")
    return driver


def get_order(db: Session, tenant_id: int, order_id: int) -> Order:
    order = db.scalars(select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def order_items(db: Session, order_id: int) -> list[OrderItem]:
    return db.scalars(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)).all()


def create_order(
    db: Session,
    user: UserProfile,
    customer_id: int,
    quantity: int,
    unit_price,
    driver_id: Optional[int] = None,
    serials: Optional[list[str]] = None,
    product_name: str = DEFAULT_PRODUCT,
    notes: Optional[str] = None,
) -> Order:
    """Create an order and, when a driver is given, load its cylinders onto the truck.

    Cylinders are either the explicit ``serials`` (all must be full in the
    warehouse) or the oldest full warehouse stock.
    """
    if quantity < 1:
        raise InvalidRequestError("Quantity must be at least 1")
    price = to_money(unit_price)
    if price < 0:
        raise InvalidRequestError("Price cannot be negative")
    customer = get_customer(db, user.tenant_id, customer_id)
    driver = get_driver(db, user.tenant_id, driver_id) if driver_id is not None else None
    serials = list(dict.fromkeys(s.strip() for s in serials or [] if s and s.strip()))
    if serials and driver is None:
        raise InvalidRequestError("Select a driver to assign specific cylinders")

    cylinders = []
    if driver is not None:
        stock = select(Cylinder).where(
            Cylinder.tenant_id == user.tenant_id,
            Cylinder.status == CYLINDER_FULL,
            *held_by(WAREHOUSE),
        )
        if serials:
            if len(serials) != quantity:
                raise InvalidRequestError(
                    f"Selected {len(serials)} cylinders, but order quantity is {quantity}."
                )
            cylinders = db.scalars(stock.where(Cylinder.serial_number.in_(serials)).with_for_update()).all()
            if len(cylinders) != quantity:
                missing = sorted(set(serials) - {c.serial_number for c in cylinders})
                raise InvalidRequestError(f"Cylinders not available in warehouse: {', '.join(missing)}")
        else:
            cylinders = db.scalars(
                stock.order_by(Cylinder.created_at, Cylinder.id).limit(quantity).with_for_update()
            ).all()
            if len(cylinders) < quantity:
                raise InvalidRequestError(
                    f"Not enough full cylinders in warehouse. Available: {len(cylinders)}, requested: {quantity}."
                )

    order = Order(
        tenant_id=user.tenant_id,
        customer_id=customer.id,
        driver_id=driver.id if driver else None,
        status=ORDER_ASSIGNED if driver else ORDER_PENDING,
        cylinders_count=quantity,
        total_amount=price * quantity,
        notes=notes,
        created_by=user.id,
        created_at=utcnow(),
    )
    db.add(order)
    db.flush()
    db.add(OrderItem(order_id=order.id, product_name=product_name, quantity=quantity, price=price))
    for cylinder in cylinders:
        move_to(cylinder, DriverHolder(driver.id))
        cylinder.last_order_id = order.id
    db.commit()
    db.refresh(order)
    logger.info(
        "order_created",
        extra={"order_id": order.id, "quantity": quantity, "driver_id": order.driver_id},
    )
    return order


def start_trip(db: Session, driver: UserProfile, order_ids: Optional[list[int]] = None) -> int:
    conditions = [
        Order.tenant_id == driver.tenant_id,
        Order.driver_id == driver.id,
        Order.status == ORDER_ASSIGNED,
    ]
    if order_ids:
        conditions.append(Order.id.in_(order_ids))
    started = db.execute(
        update(Order)
        .where(*conditions)
        .values(status=ORDER_ON_TRIP, trip_started_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if started == 0:
        raise InvalidRequestError("No assigned orders to start")
    logger.info("trip_started", extra={"driver_id": driver.id, "orders": started})
    return started


def complete_delivery(
    db: Session,
    driver: UserProfile,
    order_id: int,
    received_amount,
    payment_method: str,
    returned_serials: Optional[list[str]] = None,
    returned_empty_count: int = 0,
    notes: Optional[str] = None,
    proof: Optional[tuple[str, bytes, Optional[str]]] = None,
    storage: Optional[ProofStorage] = None,
) -> procedures.ProcedureResult:
    order = db.scalars(
        select(Order).where(
            Order.id == order_id,
            Order.driver_id == driver.id,
            Order.tenant_id == driver.tenant_id,
        )
    ).first()
    if order is None:
        raise NotFoundError("Order not found or access denied")
    if order.status not in ACTIVE_ORDER_STATUSES:
        raise AlreadyProcessedError(f"Order is already {order.status}")

    required = procedures.required_quantity(db, order.id)
    on_truck = count_held(db, driver.tenant_id, DriverHolder(driver.id), status=CYLINDER_FULL)
    if on_truck < required:
        raise InsufficientStockError(on_truck, required)

    proof_url = None
    if proof is not None and storage is not None:
        filename, content, content_type = proof
        try:
            proof_url = storage.upload(driver.tenant_id, "deliveries", filename, content, content_type)
        except (StorageError, InvalidRequestError) as exc:
            # the delivery is recorded without a photo
            logger.warning("delivery_proof_skipped", extra={"order_id": order.id, "error": exc.message})

    result = procedures.complete_order_transaction(
        db,
        order.id,
        driver.id,
        driver.tenant_id,
        received_amount,
        payment_method,
        returned_serials or [],
        returned_empty_count,
        notes,
        proof_url,
    )
    if not result.success:
        raise ProcedureFailedError("complete_order_transaction", result.message)
    return result


def cancel_order(db: Session, admin: UserProfile, order_id: int, reason: Optional[str]) -> procedures.ProcedureResult:
    if not reason or not reason.strip():
        raise InvalidRequestError("Cancellation reason is required")
    result = procedures.cancel_order_transaction(db, order_id, admin.id, reason.strip())
    if not result.success:
        raise ProcedureFailedError("cancel_order_transaction", result.message)
    return result


def assign_orders(db: Session, admin: UserProfile, order_ids: list[int], driver_id: int) -> procedures.ProcedureResult:
    if not order_ids:
        raise InvalidRequestError("No orders selected")
    get_driver(db, admin.tenant_id, driver_id)
    result = procedures.bulk_assign_orders(db, order_ids, driver_id, admin.tenant_id, admin.id)
    if not result.success:
        raise ProcedureFailedError("bulk_assign_orders", result.message)
    return result


def driver_route(db: Session, driver: UserProfile) -> list[Order]:
    return db.scalars(
        select(Order)
        .where(
            Order.tenant_id == driver.tenant_id,
            Order.driver_id == driver.id,
            Order.status.in_(ACTIVE_ORDER_STATUSES),
        )
        .order_by(Order.created_at, Order.id)
    ).all()


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def delivered_orders(db: Session, driver: UserProfile, day: Optional[date] = None) -> list[Order]:
    start, end = day_bounds(day or utcnow().date())
    return db.scalars(
        select(Order)
        .where(
            Order.tenant_id == driver.tenant_id,
            Order.driver_id == driver.id,
            Order.status == ORDER_DELIVERED,
            Order.delivered_at >= start,
            Order.delivered_at < end,
        )
        .order_by(Order.delivered_at.desc())
    ).all()


def driver_stats(db: Session, driver: UserProfile) -> dict:
    truck = DriverHolder(driver.id)
    start, end = day_bounds(utcnow().date())
    delivered_today = db.scalar(
        select(func.count(Order.id)).where(
            Order.tenant_id == driver.tenant_id,
            Order.driver_id == driver.id,
            Order.status == ORDER_DELIVERED,
            Order.delivered_at >= start,
            Order.delivered_at < end,
        )
    )
    return {
        "wallet_balance": wallet_balance(db, driver.tenant_id, driver.id),
        "full_cylinders": count_held(db, driver.tenant_id, truck, status=CYLINDER_FULL),
        "empty_cylinders": count_held(db, driver.tenant_id, truck, status=CYLINDER_EMPTY),
        "active_orders": len(driver_route(db, driver)),
        "delivered_today": delivered_today or 0,
    }
