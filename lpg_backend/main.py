from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from lpg_backend import customers, finance, handover, inventory, orders, recovery, reconciliation
from lpg_backend.auth import get_current_user, require_roles
from lpg_backend.config import settings
from lpg_backend.db import get_db
from lpg_backend.exceptions import InvalidRequestError, LpgError
from lpg_backend.ledger import get_wallet, to_money
from lpg_backend.logging_config import LogContext, configure_logging, get_logger
from lpg_backend.models import (
    ADMIN_ROLES,
    FIELD_ROLES,
    RECEIVER_ROLES,
    ROLE_ADMIN,
    ROLES,
    CashBookEntry,
    Customer,
    CustomerLedger,
    Cylinder,
    EmployeeWallet,
    Order,
    Tenant,
    UserProfile,
    utcnow,
)
from lpg_backend.storage import ProofStorage, get_storage

logger = get_logger("api")

CUSTOMER_VIEWS = ["/admin/customers"]
RECONCILIATION_VIEWS = ["/admin/finance/reconciliation", "/admin/customers"]
INVENTORY_VIEWS = ["/admin/cylinders"]
ORDER_VIEWS = ["/admin/orders", "/driver"]
DELIVERY_VIEWS = ["/driver", "/driver/history", "/admin/orders", "/admin/customers"]
APPROVAL_VIEWS = ["/admin/approvals", "/admin/cylinders", "/driver", "/recovery"]
PAYMENT_VIEWS = ["/admin/approvals", "/admin/finance", "/admin/customers"]
FINANCE_VIEWS = ["/admin/finance", "/admin/customers"]
RECOVERY_VIEWS = ["/recovery", "/recovery/history"]

# same precision as the Numeric(14, 2) money columns
MONEY = {"max_digits": 14, "decimal_places": 2}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    yield


app = FastAPI(title="LPG Distribution Backend", lifespan=lifespan)


class Meta(BaseModel):
    request_id: str
    warnings: list[str]
    invalidate: list[str] = []


class Envelope(BaseModel):
    data: Any
    meta: Meta


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or f"req_{uuid4().hex}"
    LogContext.clear()
    LogContext.set(request_id=request_id)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    logger.info(
        "request_completed",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
    return response


@app.exception_handler(LpgError)
async def handle_domain_error(request: Request, exc: LpgError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request_failed", extra={"code": exc.code, "status": exc.status_code, "detail": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(StaleDataError)
async def handle_stale_data(request: Request, exc: StaleDataError) -> JSONResponse:
    logger.warning("request_conflict", extra={"path": request.url.path})
    return JSONResponse(
        status_code=409,
        content={
            "detail": "Record was modified by another request, please reload and retry",
            "code": "CONCURRENT_UPDATE",
        },
    )


def _meta(
    request_id: Optional[str] = None,
    warnings: Optional[list[str]] = None,
    invalidate: Optional[list[str]] = None,
) -> dict:
    return {
        "request_id": request_id or LogContext.get_all().get("request_id") or f"req_{uuid4().hex}",
        "warnings": warnings or [],
        "invalidate": invalidate or [],
    }


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


def _money(value) -> Optional[str]:
    return None if value is None else str(to_money(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _serials(value: Optional[str]) -> list[str]:
    return [s.strip() for s in (value or "").split(",") if s.strip()]


def _proof(upload: Optional[UploadFile]) -> Optional[tuple[str, bytes, Optional[str]]]:
    if upload is None or not upload.filename:
        return None
    return upload.filename, upload.file.read(), upload.content_type


def _proof_warnings(proof, proof_url: Optional[str]) -> list[str]:
    if proof is None or proof_url:
        return []
    return ["proof image could not be stored"]


def _user_out(user: UserProfile) -> dict:
    return {
        "user_id": user.id,
        "tenant_id": user.tenant_id,
        "full_name": user.full_name,
        "phone": user.phone,
        "role": user.role,
        "is_active": user.is_active,
    }


def _customer_out(customer: Customer) -> dict:
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "phone": customer.phone,
        "address": customer.address,
        "current_balance": _money(customer.current_balance),
        "credit_limit": _money(customer.credit_limit),
        "is_active": customer.is_active,
        "version": customer.version_id,
        "created_at": _iso(customer.created_at),
    }


def _cylinder_out(cylinder: Cylinder, holder_name: Optional[str] = None) -> dict:
    holder = inventory.holder_of(cylinder)
    data = {
        "cylinder_id": cylinder.id,
        "serial_number": cylinder.serial_number,
        "size": cylinder.size,
        "status": cylinder.status,
        "location_type": holder.location_type,
        "holder_id": holder.holder_id,
        "last_order_id": cylinder.last_order_id,
        "updated_at": _iso(cylinder.updated_at),
    }
    if holder_name is not None:
        data["holder_name"] = holder_name
    return data


def _order_out(order: Order) -> dict:
    return {
        "order_id": order.id,
        "customer_id": order.customer_id,
        "driver_id": order.driver_id,
        "status": order.status,
        "cylinders_count": order.cylinders_count,
        "total_amount": _money(order.total_amount),
        "amount_received": _money(order.amount_received),
        "payment_method": order.payment_method,
        "empties_returned": order.empties_returned,
        "notes": order.notes,
        "proof_url": order.proof_url,
        "cancel_reason": order.cancel_reason,
        "created_at": _iso(order.created_at),
        "trip_started_at": _iso(order.trip_started_at),
        "delivered_at": _iso(order.delivered_at),
    }


def _entry_out(entry: CashBookEntry, user_name: Optional[str] = None) -> dict:
    data = {
        "entry_id": entry.id,
        "transaction_type": entry.transaction_type,
        "category": entry.category,
        "status": entry.status,
        "amount": _money(entry.amount),
        "payment_method": entry.payment_method,
        "description": entry.description,
        "proof_url": entry.proof_url,
        "created_by": entry.created_by,
        "receiver_id": entry.receiver_id,
        "customer_id": entry.customer_id,
        "cylinders": sorted(entry.asset_snapshot or {}),
        "verified_by": entry.verified_by,
        "verified_at": _iso(entry.verified_at),
        "created_at": _iso(entry.created_at),
    }
    if user_name is not None:
        data["user_name"] = user_name
    return data


def _posting_out(posting: CustomerLedger) -> dict:
    return {
        "posting_id": posting.id,
        "customer_id": posting.customer_id,
        "amount": _money(posting.amount),
        "transaction_type": posting.transaction_type,
        "category": posting.category,
        "description": posting.description,
        "reference_type": posting.reference_type,
        "reference_id": posting.reference_id,
        "created_by": posting.created_by,
        "created_at": _iso(posting.created_at),
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# Tenants and users


class TenantCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Karachi Gas Traders", "owner_name": "Ayesha Khan", "owner_phone": "03001234567"}
        }
    }
    name: str = Field(min_length=1)
    owner_name: str = Field(min_length=1)
    owner_phone: Optional[str] = None


@app.post("/api/v1/tenants", tags=["Tenants"])
def create_tenant(payload: TenantCreate, db: Session = Depends(get_db)) -> dict:
    now = utcnow()
    tenant = Tenant(name=payload.name, status="ACTIVE", created_at=now)
    db.add(tenant)
    db.flush()
    owner = UserProfile(
        tenant_id=tenant.id,
        full_name=payload.owner_name,
        phone=payload.owner_phone,
        role=ROLE_ADMIN,
        is_active=True,
        created_at=now,
    )
    db.add(owner)
    db.commit()
    db.refresh(tenant)
    db.refresh(owner)
    logger.info("tenant_created", extra={"new_tenant_id": tenant.id})
    return {
        "data": {"tenant_id": tenant.id, "name": tenant.name, "owner_user_id": owner.id},
        "meta": _meta(),
    }


@app.get("/api/v1/tenants/me", tags=["Tenants"])
def get_my_tenant(user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    tenant = db.get(Tenant, user.tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="tenant not found")
    return {
        "data": {
            "tenant_id": tenant.id,
            "name": tenant.name,
            "status": tenant.status,
            "created_at": _iso(tenant.created_at),
        },
        "meta": _meta(),
    }


class UserCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"full_name": "Bilal Ahmed", "phone": "03211234567", "role": "driver"}}}
    full_name: str = Field(min_length=1)
    phone: Optional[str] = None
    role: str


@app.post("/api/v1/users", tags=["Users"])
def create_user(
    payload: UserCreate,
    admin: UserProfile = Depends(require_roles(ROLE_ADMIN)),
    db: Session = Depends(get_db),
) -> dict:
    if payload.role not in ROLES:
        raise InvalidRequestError(f"invalid role '{payload.role}'")
    user = UserProfile(
        tenant_id=admin.tenant_id,
        full_name=payload.full_name,
        phone=payload.phone,
        role=payload.role,
        is_active=True,
        created_at=utcnow(),
    )
    db.add(user)
    db.flush()
    if user.role in FIELD_ROLES:
        db.add(EmployeeWallet(tenant_id=admin.tenant_id, user_id=user.id, balance=Decimal("0"), updated_at=utcnow()))
    db.commit()
    db.refresh(user)
    return {"data": _user_out(user), "meta": _meta()}


@app.get("/api/v1/users", tags=["Users"])
def list_users(
    role: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(UserProfile).filter(UserProfile.tenant_id == user.tenant_id)
    if role is not None:
        query = query.filter(UserProfile.role == role)
    if is_active is not None:
        query = query.filter(UserProfile.is_active == is_active)
    users, next_cursor = _paginate_by_id(query, UserProfile, limit, cursor)
    return {"data": [_user_out(u) for u in users], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/receivers", tags=["Users"])
def list_receivers(user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    receivers = (
        db.query(UserProfile)
        .filter(
            UserProfile.tenant_id == user.tenant_id,
            UserProfile.role.in_(RECEIVER_ROLES),
            UserProfile.is_active.is_(True),
            UserProfile.id != user.id,
        )
        .order_by(UserProfile.full_name)
        .all()
    )
    data = [{"user_id": r.id, "full_name": r.full_name, "role": r.role} for r in receivers]
    return {"data": data, "meta": _meta()}


# Customers


class CustomerCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Hotel Mehran",
                "phone": "02135550000",
                "address": "Shahrah-e-Faisal",
                "city": "Karachi",
                "opening_balance": "12000",
                "security_deposit": "5000",
                "credit_limit": "50000",
            }
        }
    }
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address: Optional[str] = None
    city: Optional[str] = None
    opening_balance: Decimal = Field(default=Decimal("0"), **MONEY)
    security_deposit: Decimal = Field(default=Decimal("0"), **MONEY)
    credit_limit: Optional[Decimal] = Field(default=None, **MONEY)


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    credit_limit: Optional[Decimal] = Field(default=None, **MONEY)
    version: Optional[int] = None


class CustomerStatus(BaseModel):
    is_active: bool


@app.post("/api/v1/customers", tags=["Customers"])
def create_customer(
    payload: CustomerCreate,
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    customer = customers.create_customer(
        db,
        user,
        payload.name,
        payload.phone,
        address=payload.address,
        city=payload.city,
        opening_balance=payload.opening_balance,
        security_deposit=payload.security_deposit,
        credit_limit=payload.credit_limit,
    )
    return {"data": _customer_out(customer), "meta": _meta(invalidate=CUSTOMER_VIEWS)}


@app.get("/api/v1/customers", tags=["Customers"])
def list_customers(
    search: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    balance: str = Query(default="all"),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    user: UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    query = customers.customer_query(db, user.tenant_id, search=search, is_active=is_active, balance=balance)
    rows, next_cursor = _paginate_by_id(query, Customer, limit, cursor)
    return {"data": [_customer_out(c) for c in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/customers/stats", tags=["Customers"])
def get_customer_stats(user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    stats = customers.customer_stats(db, user.tenant_id)
    return {
        "data": {
            "total_receivables": _money(stats["total_receivables"]),
            "defaulters_count": stats["defaulters_count"],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/customers/{customer_id}", tags=["Customers"])
def get_customer(
    customer_id: int, user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)
) -> dict:
    customer = (
        db.query(Customer).filter(Customer.id == customer_id, Customer.tenant_id == user.tenant_id).first()
    )
    if not customer:
        raise HTTPException(status_code=404, detail="customer not found")
    return {"data": _customer_out(customer), "meta": _meta()}


@app.patch("/api/v1/customers/{customer_id}", tags=["Customers"])
def update_customer(
    customer_id: int,
    payload: CustomerUpdate,
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude={"version"}, exclude_unset=True)
    customer = customers.update_customer(db, user.tenant_id, customer_id, changes, payload.version)
    return {"data": _customer_out(customer), "meta": _meta(invalidate=CUSTOMER_VIEWS)}


@app.post("/api/v1/customers/{customer_id}:set-status", tags=["Customers"])
def set_customer_status(
    customer_id: int,
    payload: CustomerStatus,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    customer = customers.set_active(db, user.tenant_id, customer_id, payload.is_active)
    return {"data": _customer_out(customer), "meta": _meta(invalidate=CUSTOMER_VIEWS)}


@app.get("/api/v1/customers/{customer_id}/assets", tags=["Customers"])
def get_customer_assets(
    customer_id: int, user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)
) -> dict:
    cylinders = customers.customer_assets(db, user.tenant_id, customer_id)
    return {"data": [_cylinder_out(c) for c in cylinders], "meta": _meta()}


@app.get("/api/v1/customers/{customer_id}/orders", tags=["Customers"])
def get_customer_orders(
    customer_id: int, user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)
) -> dict:
    rows = customers.customer_orders(db, user.tenant_id, customer_id)
    return {"data": [_order_out(o) for o in rows], "meta": _meta()}


@app.get("/api/v1/customers/{customer_id}/ledger", tags=["Customers"])
def get_customer_ledger(
    customer_id: int,
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    postings = finance.ledger_entries(db, user.tenant_id, customer_id)
    return {"data": [_posting_out(p) for p in postings], "meta": _meta()}


# Cylinders


class CylinderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"serial_number": "CYL-1001", "size": "45.4KG", "status": "full"}}}
    serial_number: str = Field(min_length=1)
    size: str = "45.4KG"
    status: str = "empty"


class CylinderBulkCreate(BaseModel):
    items: list[CylinderCreate]


class CylinderUpdate(BaseModel):
    serial_number: Optional[str] = None
    status: Optional[str] = None


class PlantBatch(BaseModel):
    quantity: int = Field(ge=1)


@app.post("/api/v1/cylinders", tags=["Cylinders"])
def create_cylinder(
    payload: CylinderCreate,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    cylinder = inventory.create_cylinder(
        db, user.tenant_id, payload.serial_number.strip(), payload.size, payload.status
    )
    return {"data": _cylinder_out(cylinder), "meta": _meta(invalidate=INVENTORY_VIEWS)}


@app.post("/api/v1/cylinders:bulk", tags=["Cylinders"])
def bulk_create_cylinders(
    payload: CylinderBulkCreate,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    items = [
        {"serial_number": item.serial_number.strip(), "size": item.size, "status": item.status}
        for item in payload.items
    ]
    count = inventory.bulk_create_cylinders(db, user.tenant_id, items)
    return {"data": {"count": count}, "meta": _meta(invalidate=INVENTORY_VIEWS)}


@app.get("/api/v1/cylinders", tags=["Cylinders"])
def list_cylinders(
    status: Optional[str] = Query(default=None),
    location_type: Optional[str] = Query(default=None),
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    rows = inventory.list_cylinders(db, user.tenant_id, status=status, location_type=location_type)
    return {"data": [_cylinder_out(c, name) for c, name in rows], "meta": _meta()}


@app.get("/api/v1/cylinders/{cylinder_id}", tags=["Cylinders"])
def get_cylinder(
    cylinder_id: int,
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    cylinder = inventory.get_cylinder(db, user.tenant_id, cylinder_id)
    return {"data": _cylinder_out(cylinder), "meta": _meta()}


@app.patch("/api/v1/cylinders/{cylinder_id}", tags=["Cylinders"])
def update_cylinder(
    cylinder_id: int,
    payload: CylinderUpdate,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    if payload.serial_number is None and payload.status is None:
        raise InvalidRequestError("nothing to update")
    cylinder = inventory.get_cylinder(db, user.tenant_id, cylinder_id)
    if payload.serial_number is not None:
        cylinder = inventory.rename_cylinder(db, user.tenant_id, cylinder_id, payload.serial_number.strip())
    if payload.status is not None:
        cylinder = inventory.update_status(db, user.tenant_id, cylinder_id, payload.status)
    return {"data": _cylinder_out(cylinder), "meta": _meta(invalidate=INVENTORY_VIEWS)}


@app.delete("/api/v1/cylinders/{cylinder_id}", tags=["Cylinders"])
def delete_cylinder(
    cylinder_id: int,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    inventory.delete_cylinder(db, user.tenant_id, cylinder_id)
    return {"data": {"cylinder_id": cylinder_id, "deleted": True}, "meta": _meta(invalidate=INVENTORY_VIEWS)}


@app.post("/api/v1/plant:send", tags=["Cylinders"])
def send_to_plant(
    payload: PlantBatch,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    count = inventory.send_to_plant(db, user.tenant_id, payload.quantity)
    return {"data": {"count": count}, "meta": _meta(invalidate=INVENTORY_VIEWS)}


@app.post("/api/v1/plant:receive", tags=["Cylinders"])
def receive_from_plant(
    payload: PlantBatch,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    count = inventory.receive_from_plant(db, user.tenant_id, payload.quantity)
    return {"data": {"count": count}, "meta": _meta(invalidate=INVENTORY_VIEWS)}


# Orders


class OrderCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"customer_id": 1, "driver_id": 2, "quantity": 2, "unit_price": "3200", "serials": []}
        }
    }
    customer_id: int
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0, **MONEY)
    driver_id: Optional[int] = None
    serials: list[str] = []
    product_name: str = orders.DEFAULT_PRODUCT
    notes: Optional[str] = None


class OrderCancel(BaseModel):
    reason: str = ""


class OrderAssign(BaseModel):
    order_ids: list[int]
    driver_id: int


@app.post("/api/v1/orders", tags=["Orders"])
def create_order(
    payload: OrderCreate,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    order = orders.create_order(
        db,
        user,
        payload.customer_id,
        payload.quantity,
        payload.unit_price,
        driver_id=payload.driver_id,
        serials=payload.serials,
        product_name=payload.product_name,
        notes=payload.notes,
    )
    return {"data": _order_out(order), "meta": _meta(invalidate=ORDER_VIEWS + INVENTORY_VIEWS)}


@app.get("/api/v1/orders", tags=["Orders"])
def list_orders(
    status: Optional[str] = Query(default=None),
    driver_id: Optional[int] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Order).filter(Order.tenant_id == user.tenant_id)
    if status is not None:
        query = query.filter(Order.status == status)
    if driver_id is not None:
        query = query.filter(Order.driver_id == driver_id)
    if customer_id is not None:
        query = query.filter(Order.customer_id == customer_id)
    rows, next_cursor = _paginate_by_id(query, Order, limit, cursor)
    return {"data": [_order_out(o) for o in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/orders:assign", tags=["Orders"])
def assign_orders(
    payload: OrderAssign,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    result = orders.assign_orders(db, user, payload.order_ids, payload.driver_id)
    return {"data": result.to_dict(), "meta": _meta(invalidate=ORDER_VIEWS)}


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(order_id: int, user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    order = orders.get_order(db, user.tenant_id, order_id)
    if user.role not in RECEIVER_ROLES and order.driver_id != user.id:
        raise HTTPException(status_code=404, detail="order not found")
    data = _order_out(order)
    data["items"] = [
        {"product_name": i.product_name, "quantity": i.quantity, "price": _money(i.price)}
        for i in orders.order_items(db, order.id)
    ]
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/orders/{order_id}:cancel", tags=["Orders"])
def cancel_order(
    order_id: int,
    payload: OrderCancel,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    result = orders.cancel_order(db, user, order_id, payload.reason)
    return {"data": result.to_dict(), "meta": _meta(invalidate=ORDER_VIEWS + INVENTORY_VIEWS)}


# Driver


class TripStart(BaseModel):
    order_ids: list[int] = []


@app.get("/api/v1/driver/inventory", tags=["Driver"])
def get_driver_inventory(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    full = inventory.cylinders_held(db, user.tenant_id, inventory.DriverHolder(user.id), status="full")
    return {"data": {"count": len(full), "cylinders": [_cylinder_out(c) for c in full]}, "meta": _meta()}


@app.get("/api/v1/driver/assets", tags=["Driver"])
def get_driver_assets(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    held = inventory.cylinders_held(db, user.tenant_id, inventory.DriverHolder(user.id))
    return {"data": [_cylinder_out(c) for c in held], "meta": _meta()}


@app.get("/api/v1/driver/orders", tags=["Driver"])
def get_driver_orders(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    return {"data": [_order_out(o) for o in orders.driver_route(db, user)], "meta": _meta()}


@app.get("/api/v1/driver/orders/completed", tags=["Driver"])
def get_completed_orders(
    day: Optional[date] = Query(default=None),
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": [_order_out(o) for o in orders.delivered_orders(db, user, day)], "meta": _meta()}


@app.get("/api/v1/driver/stats", tags=["Driver"])
def get_driver_stats(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    stats = orders.driver_stats(db, user)
    stats["wallet_balance"] = _money(stats["wallet_balance"])
    return {"data": stats, "meta": _meta()}


@app.post("/api/v1/driver/trip:start", tags=["Driver"])
def start_trip(
    payload: TripStart,
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    started = orders.start_trip(db, user, payload.order_ids or None)
    return {"data": {"started": started}, "meta": _meta(invalidate=ORDER_VIEWS)}


@app.post("/api/v1/driver/orders/{order_id}:complete", tags=["Driver"])
def complete_delivery(
    order_id: int,
    received_amount: Decimal = Form(default=Decimal("0"), **MONEY),
    payment_method: str = Form(default="cash"),
    returned_serials: Optional[str] = Form(default=None),
    returned_empty_count: int = Form(default=0),
    notes: Optional[str] = Form(default=None),
    proof: Optional[UploadFile] = File(default=None),
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)),
    storage: ProofStorage = Depends(get_storage),
    db: Session = Depends(get_db),
) -> dict:
    proof_file = _proof(proof)
    result = orders.complete_delivery(
        db,
        user,
        order_id,
        received_amount,
        payment_method,
        returned_serials=_serials(returned_serials),
        returned_empty_count=returned_empty_count,
        notes=notes,
        proof=proof_file,
        storage=storage,
    )
    order = orders.get_order(db, user.tenant_id, order_id)
    warnings = _proof_warnings(proof_file, order.proof_url)
    return {
        "data": {**result.to_dict(), "proof_url": order.proof_url},
        "meta": _meta(warnings=warnings, invalidate=DELIVERY_VIEWS),
    }


# Handovers


class HandoverSubmit(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"receiver_id": 1, "deposit_amount": "15000", "serials": ["CYL-1001"]}}
    }
    receiver_id: Optional[int] = None
    deposit_amount: Decimal = Field(default=Decimal("0"), **MONEY)
    serials: list[str] = []


class HandoverReject(BaseModel):
    reason: Optional[str] = None


@app.post("/api/v1/handovers", tags=["Handovers"])
def submit_handover(
    payload: HandoverSubmit,
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    entry = handover.submit_handover(db, user, payload.receiver_id, payload.deposit_amount, payload.serials)
    return {"data": _entry_out(entry), "meta": _meta(invalidate=APPROVAL_VIEWS)}


@app.get("/api/v1/handovers/pending", tags=["Handovers"])
def list_pending_handovers(
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)), db: Session = Depends(get_db)
) -> dict:
    rows = handover.pending_handovers(db, user.tenant_id)
    data = []
    for entry, sender in rows:
        item = _entry_out(entry, sender.full_name if sender else None)
        item["sender_role"] = sender.role if sender else None
        data.append(item)
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/handovers/history", tags=["Handovers"])
def list_handover_history(
    status: Optional[str] = Query(default=None),
    sender_id: Optional[int] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    user: UserProfile = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    rows = handover.handover_history(db, user, status=status, sender_id=sender_id, start=start, end=end)
    return {
        "data": [_entry_out(entry, sender.full_name if sender else None) for entry, sender in rows],
        "meta": _meta(),
    }


@app.get("/api/v1/handovers/pending-cylinders", tags=["Handovers"])
def list_pending_cylinders(
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)), db: Session = Depends(get_db)
) -> dict:
    return {"data": [_cylinder_out(c) for c in handover.pending_cylinders(db, user.tenant_id)], "meta": _meta()}


@app.post("/api/v1/handovers/{transaction_id}:approve", tags=["Handovers"])
def approve_handover(
    transaction_id: int,
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    result = handover.approve_handover(db, user, transaction_id)
    return {"data": result.to_dict(), "meta": _meta(invalidate=APPROVAL_VIEWS)}


@app.post("/api/v1/handovers/{transaction_id}:reject", tags=["Handovers"])
def reject_handover(
    transaction_id: int,
    payload: HandoverReject,
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    entry, unlocked = handover.reject_handover(db, user, transaction_id, payload.reason)
    return {
        "data": {**_entry_out(entry), "cylinders_unlocked": unlocked},
        "meta": _meta(invalidate=APPROVAL_VIEWS),
    }


@app.get("/api/v1/admin/compensations", tags=["Handovers"])
def list_compensations(
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)), db: Session = Depends(get_db)
) -> dict:
    tasks = handover.pending_compensations(db, user.tenant_id)
    data = [
        {
            "task_id": t.id,
            "kind": t.kind,
            "payload": t.payload,
            "attempts": t.attempts,
            "last_error": t.last_error,
            "created_at": _iso(t.created_at),
        }
        for t in tasks
    ]
    return {"data": data, "meta": _meta()}


@app.post("/api/v1/admin/compensations:retry", tags=["Handovers"])
def retry_compensations(
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)), db: Session = Depends(get_db)
) -> dict:
    outcome = handover.retry_compensations(db, user.tenant_id)
    return {"data": outcome, "meta": _meta(invalidate=APPROVAL_VIEWS)}


# Payments awaiting verification


class PaymentReject(BaseModel):
    reason: Optional[str] = None


@app.get("/api/v1/payments/pending", tags=["Payments"])
def list_pending_payments(
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)), db: Session = Depends(get_db)
) -> dict:
    return {"data": [_entry_out(e) for e in recovery.pending_payments(db, user.tenant_id)], "meta": _meta()}


@app.post("/api/v1/payments/{entry_id}:verify", tags=["Payments"])
def verify_payment(
    entry_id: int,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    entry = recovery.verify_payment(db, user, entry_id)
    return {"data": _entry_out(entry), "meta": _meta(invalidate=PAYMENT_VIEWS)}


@app.post("/api/v1/payments/{entry_id}:reject", tags=["Payments"])
def reject_payment(
    entry_id: int,
    payload: PaymentReject,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    entry = recovery.reject_payment(db, user, entry_id, payload.reason)
    return {"data": _entry_out(entry), "meta": _meta(invalidate=["/admin/approvals"])}


# Finance


class TransactionCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"entry_type": "expense", "amount": "2500", "category": "fuel", "description": "Truck diesel"}
        }
    }
    entry_type: str = "expense"
    amount: Decimal = Field(**MONEY)
    category: str
    description: Optional[str] = None
    customer_id: Optional[int] = None
    payment_method: str = "cash"


class BalanceRepair(BaseModel):
    model_config = {"json_schema_extra": {"example": {"correct_balance": "4500", "expected_version": 3}}}
    correct_balance: Decimal = Field(**MONEY)
    expected_version: Optional[int] = None


@app.get("/api/v1/finance/stats", tags=["Finance"])
def get_company_stats(
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)), db: Session = Depends(get_db)
) -> dict:
    stats = finance.company_stats(db, user.tenant_id)
    return {"data": {k: _money(v) for k, v in stats.items()}, "meta": _meta()}


@app.post("/api/v1/finance/transactions", tags=["Finance"])
def create_transaction(
    payload: TransactionCreate,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    result = finance.create_transaction(
        db,
        user,
        payload.entry_type,
        payload.amount,
        payload.category,
        description=payload.description,
        customer_id=payload.customer_id,
        payment_method=payload.payment_method,
    )
    return {"data": result.to_dict(), "meta": _meta(invalidate=FINANCE_VIEWS)}


@app.get("/api/v1/finance/cash-book", tags=["Finance"])
def list_cash_book(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    user: UserProfile = Depends(require_roles(*RECEIVER_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    rows = finance.cash_book_entries(db, user.tenant_id, start=start, end=end)
    return {"data": [_entry_out(entry, name) for entry, name in rows], "meta": _meta()}


@app.get("/api/v1/finance/outstanding", tags=["Finance"])
def list_outstanding(user: UserProfile = Depends(get_current_user), db: Session = Depends(get_db)) -> dict:
    rows = finance.outstanding_balances(db, user.tenant_id)
    return {"data": [_customer_out(c) for c in rows], "meta": _meta()}


@app.get("/api/v1/finance/reconciliation", tags=["Finance"])
def get_reconciliation_report(
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)), db: Session = Depends(get_db)
) -> dict:
    report = reconciliation.check_balances(db, user.tenant_id)
    return {"data": report.to_dict(), "meta": _meta()}


@app.post("/api/v1/finance/reconciliation/{customer_id}:repair", tags=["Finance"])
def repair_customer_balance(
    customer_id: int,
    payload: BalanceRepair,
    user: UserProfile = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
) -> dict:
    customer = reconciliation.repair_balance(
        db, user.tenant_id, customer_id, payload.correct_balance, payload.expected_version
    )
    return {"data": _customer_out(customer), "meta": _meta(invalidate=RECONCILIATION_VIEWS)}


# Recovery


@app.get("/api/v1/recovery/stats", tags=["Recovery"])
def get_recovery_stats(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    stats = recovery.recovery_stats(db, user)
    return {
        "data": {
            "cash_on_hand": _money(stats["cash_on_hand"]),
            "pending_amount": _money(stats["pending_amount"]),
            "pending_handovers": stats["pending_handovers"],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/recovery/due-customers", tags=["Recovery"])
def list_due_customers(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    rows = finance.outstanding_balances(db, user.tenant_id)
    return {"data": [_customer_out(c) for c in rows], "meta": _meta()}


@app.post("/api/v1/recovery/collections", tags=["Recovery"])
def collect_payment(
    customer_id: int = Form(...),
    amount: Decimal = Form(..., **MONEY),
    payment_method: str = Form(default="cash"),
    description: Optional[str] = Form(default=None),
    proof: Optional[UploadFile] = File(default=None),
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)),
    storage: ProofStorage = Depends(get_storage),
    db: Session = Depends(get_db),
) -> dict:
    outcome = recovery.collect_payment(
        db,
        user,
        customer_id,
        amount,
        payment_method,
        description=description,
        proof=_proof(proof),
        storage=storage,
    )
    return {"data": outcome, "meta": _meta(invalidate=RECOVERY_VIEWS + PAYMENT_VIEWS)}


@app.get("/api/v1/recovery/history", tags=["Recovery"])
def get_agent_history(
    user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)
) -> dict:
    data = [
        {**item, "amount": _money(item["amount"]), "created_at": _iso(item["created_at"])}
        for item in recovery.agent_history(db, user)
    ]
    return {"data": data, "meta": _meta()}


@app.get("/api/v1/wallet", tags=["Recovery"])
def get_my_wallet(user: UserProfile = Depends(require_roles(*FIELD_ROLES)), db: Session = Depends(get_db)) -> dict:
    wallet = get_wallet(db, user.tenant_id, user.id)
    return {
        "data": {
            "user_id": user.id,
            "balance": _money(wallet.balance if wallet else 0),
            "updated_at": _iso(wallet.updated_at if wallet else None),
        },
        "meta": _meta(),
    }
