"""Cylinder custody and inventory state.

Custody is persisted as ``current_location_type`` + ``current_holder_id`` but
code in this package only sees it as a ``Holder``: the warehouse, a driver
(user profile id) or a customer (customer id).
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lpg_backend.exceptions import InvalidRequestError, NotFoundError
from lpg_backend.logging_config import get_logger
from lpg_backend.models import (
    CYLINDER_EMPTY,
    CYLINDER_FULL,
    CYLINDER_MAINTENANCE,
    CYLINDER_STATUSES,
    LOCATION_CUSTOMER,
    LOCATION_DRIVER,
    LOCATION_WAREHOUSE,
    Customer,
    Cylinder,
    UserProfile,
    utcnow,
)

logger = get_logger("inventory")


@dataclass(frozen=True)
class Warehouse:
    location_type = LOCATION_WAREHOUSE

    @property
    def holder_id(self) -> None:
        return None


@dataclass(frozen=True)
class DriverHolder:
    user_id: int
    location_type = LOCATION_DRIVER

    @property
    def holder_id(self) -> int:
        return self.user_id


@dataclass(frozen=True)
class CustomerHolder:
    customer_id: int
    location_type = LOCATION_CUSTOMER

    @property
    def holder_id(self) -> int:
        return self.customer_id


Holder = Union[Warehouse, DriverHolder, CustomerHolder]

WAREHOUSE = Warehouse()


def holder_of(cylinder: Cylinder) -> Holder:
    if cylinder.current_location_type == LOCATION_DRIVER:
        return DriverHolder(cylinder.current_holder_id)
    if cylinder.current_location_type == LOCATION_CUSTOMER:
        return CustomerHolder(cylinder.current_holder_id)
    return WAREHOUSE


def held_by(holder: Holder) -> list:
    """SQL conditions selecting cylinders in ``holder``'s custody."""
    conditions = [Cylinder.current_location_type == holder.location_type]
    if holder.holder_id is None:
        conditions.append(Cylinder.current_holder_id.is_(None))
    else:
        conditions.append(Cylinder.current_holder_id == holder.holder_id)
    return conditions


def custody_values(holder: Holder) -> dict:
    return {
        "current_location_type": holder.location_type,
        "current_holder_id": holder.holder_id,
    }


def move_to(cylinder: Cylinder, holder: Holder, status: Optional[str] = None) -> Cylinder:
    cylinder.current_location_type = holder.location_type
    cylinder.current_holder_id = holder.holder_id
    if status is not None:
        cylinder.status = status
    cylinder.updated_at = utcnow()
    return cylinder


def _validate_status(status: str) -> None:
    if status not in CYLINDER_STATUSES:
        raise InvalidRequestError(f"invalid cylinder status '{status}'")


def get_cylinder(db: Session, tenant_id: int, cylinder_id: int) -> Cylinder:
    cylinder = db.scalars(
        select(Cylinder).where(Cylinder.id == cylinder_id, Cylinder.tenant_id == tenant_id)
    ).first()
    if cylinder is None:
        raise NotFoundError("cylinder not found")
    return cylinder


def create_cylinder(
    db: Session, tenant_id: int, serial_number: str, size: str, status: str = CYLINDER_EMPTY
) -> Cylinder:
    _validate_status(status)
    cylinder = Cylinder(
        tenant_id=tenant_id,
        serial_number=serial_number,
        size=size,
        status=status,
        created_at=utcnow(),
        **custody_values(WAREHOUSE),
    )
    db.add(cylinder)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequestError(f"serial number '{serial_number}' already exists")
    db.refresh(cylinder)
    return cylinder


def bulk_create_cylinders(db: Session, tenant_id: int, items: list[dict]) -> int:
    if not items:
        raise InvalidRequestError("Empty or invalid list")
    now = utcnow()
    for item in items:
        status = item.get("status") or CYLINDER_FULL
        _validate_status(status)
        db.add(
            Cylinder(
                tenant_id=tenant_id,
                serial_number=item["serial_number"],
                size=item.get("size") or "45.4KG",
                status=status,
                created_at=now,
                **custody_values(WAREHOUSE),
            )
        )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequestError("Some serial numbers already exist. Please check your file.")
    logger.info("cylinders_bulk_created", extra={"count": len(items)})
    return len(items)


def list_cylinders(
    db: Session,
    tenant_id: int,
    status: Optional[str] = None,
    location_type: Optional[str] = None,
) -> list[tuple[Cylinder, str]]:
    """Cylinders of the tenant, newest first, each paired with its holder's display name."""
    query = select(Cylinder).where(Cylinder.tenant_id == tenant_id)
    if status is not None:
        query = query.where(Cylinder.status == status)
    if location_type is not None:
        query = query.where(Cylinder.current_location_type == location_type)
    cylinders = db.scalars(query.order_by(Cylinder.created_at.desc(), Cylinder.id.desc())).all()

    holders = [holder_of(c) for c in cylinders]
    driver_ids = {h.user_id for h in holders if isinstance(h, DriverHolder)}
    customer_ids = {h.customer_id for h in holders if isinstance(h, CustomerHolder)}
    driver_names = {}
    customer_names = {}
    if driver_ids:
        driver_names = dict(
            db.execute(
                select(UserProfile.id, UserProfile.full_name).where(UserProfile.id.in_(driver_ids))
            ).all()
        )
    if customer_ids:
        customer_names = dict(
            db.execute(
                select(Customer.id, Customer.name).where(Customer.id.in_(customer_ids))
            ).all()
        )

    result = []
    for cylinder, holder in zip(cylinders, holders):
        if isinstance(holder, DriverHolder):
            name = driver_names.get(holder.user_id) or f"Unknown Driver ({holder.user_id})"
        elif isinstance(holder, CustomerHolder):
            name = customer_names.get(holder.customer_id) or f"Unknown Customer ({holder.customer_id})"
        else:
            name = "Warehouse"
        result.append((cylinder, name))
    return result


def update_status(db: Session, tenant_id: int, cylinder_id: int, status: str) -> Cylinder:
    _validate_status(status)
    cylinder = get_cylinder(db, tenant_id, cylinder_id)
    cylinder.status = status
    cylinder.updated_at = utcnow()
    db.commit()
    db.refresh(cylinder)
    return cylinder


def rename_cylinder(db: Session, tenant_id: int, cylinder_id: int, serial_number: str) -> Cylinder:
    cylinder = get_cylinder(db, tenant_id, cylinder_id)
    cylinder.serial_number = serial_number
    cylinder.updated_at = utcnow()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequestError(f"serial number '{serial_number}' already exists")
    db.refresh(cylinder)
    return cylinder


def delete_cylinder(db: Session, tenant_id: int, cylinder_id: int) -> None:
    cylinder = get_cylinder(db, tenant_id, cylinder_id)
    db.delete(cylinder)
    db.commit()


def send_to_plant(db: Session, tenant_id: int, quantity: int) -> int:
    """Send the oldest empty warehouse cylinders for refilling."""
    cylinders = db.scalars(
        select(Cylinder)
        .where(
            Cylinder.tenant_id == tenant_id,
            Cylinder.status == CYLINDER_EMPTY,
            *held_by(WAREHOUSE),
        )
        .order_by(Cylinder.created_at, Cylinder.id)
        .limit(quantity)
        .with_for_update()
    ).all()
    if not cylinders:
        raise InvalidRequestError("No empty cylinders found in Warehouse to send.")
    for cylinder in cylinders:
        move_to(cylinder, WAREHOUSE, status=CYLINDER_MAINTENANCE)
    db.commit()
    logger.info("cylinders_sent_to_plant", extra={"count": len(cylinders)})
    return len(cylinders)


def receive_from_plant(db: Session, tenant_id: int, quantity: int) -> int:
    cylinders = db.scalars(
        select(Cylinder)
        .where(Cylinder.tenant_id == tenant_id, Cylinder.status == CYLINDER_MAINTENANCE)
        .order_by(Cylinder.updated_at, Cylinder.id)
        .limit(quantity)
        .with_for_update()
    ).all()
    if not cylinders:
        raise InvalidRequestError("No cylinders at plant found.")
    for cylinder in cylinders:
        move_to(cylinder, WAREHOUSE, status=CYLINDER_FULL)
    db.commit()
    logger.info("cylinders_received_from_plant", extra={"count": len(cylinders)})
    return len(cylinders)


def count_held(db: Session, tenant_id: int, holder: Holder, status: Optional[str] = None) -> int:
    query = select(func.count(Cylinder.id)).where(Cylinder.tenant_id == tenant_id, *held_by(holder))
    if status is not None:
        query = query.where(Cylinder.status == status)
    return db.scalar(query) or 0


def cylinders_held(
    db: Session, tenant_id: int, holder: Holder, status: Optional[str] = None
) -> list[Cylinder]:
    query = select(Cylinder).where(Cylinder.tenant_id == tenant_id, *held_by(holder))
    if status is not None:
        query = query.where(Cylinder.status == status)
    # full before empty
    return db.scalars(query.order_by(Cylinder.status.desc(), Cylinder.serial_number)).all()
