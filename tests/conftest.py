from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lpg_backend.db import Base, get_db
from lpg_backend.exceptions import StorageError
from lpg_backend.inventory import WAREHOUSE, custody_values
from lpg_backend.logging_config import reset_logging
from lpg_backend.main import app
from lpg_backend.models import (
    FIELD_ROLES,
    ORDER_ASSIGNED,
    Customer,
    CustomerLedger,
    Cylinder,
    EmployeeWallet,
    Order,
    OrderItem,
    Tenant,
    UserProfile,
    utcnow,
)
from lpg_backend.storage import get_storage


class FakeStorage:
    def __init__(self):
        self.fail = False
        self.uploads = []

    def upload(self, tenant_id, category, filename, content, content_type):
        if self.fail:
            raise StorageError("Upload failed: bucket unavailable")
        key = f"{tenant_id}/{category}/{filename}"
        self.uploads.append(key)
        return f"http://storage.test/lpg-receipts/{key}"


class Seeder:
    """Writes fixture rows directly, one committed session per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _add(self, *objs) -> int:
        with self.session_factory() as db:
            for obj in objs:
                db.add(obj)
                db.flush()
            db.commit()
            return objs[0].id

    def tenant(self, name: str = "Acme Gas") -> int:
        return self._add(Tenant(name=name, status="ACTIVE", created_at=utcnow()))

    def user(self, tenant_id: int, role: str, name: str = None, wallet=None) -> int:
        user_id = self._add(
            UserProfile(
                tenant_id=tenant_id,
                full_name=name or role.title(),
                role=role,
                is_active=True,
                created_at=utcnow(),
            )
        )
        if role in FIELD_ROLES or wallet is not None:
            self._add(EmployeeWallet(tenant_id=tenant_id, user_id=user_id, balance=Decimal(str(wallet or 0))))
        return user_id

    def customer(self, tenant_id: int, name: str = "Customer", balance="0") -> int:
        return self._add(
            Customer(
                tenant_id=tenant_id,
                name=name,
                phone="0300",
                current_balance=Decimal(str(balance)),
                is_active=True,
                created_at=utcnow(),
            )
        )

    def posting(self, tenant_id: int, customer_id: int, amount, category: str = "order_delivery") -> int:
        amount = Decimal(str(amount))
        return self._add(
            CustomerLedger(
                tenant_id=tenant_id,
                customer_id=customer_id,
                amount=amount,
                transaction_type="debit" if amount > 0 else "credit",
                category=category,
                created_at=utcnow(),
            )
        )

    def cylinder(self, tenant_id: int, serial: str, status: str = "full", holder=WAREHOUSE, last_order_id=None) -> int:
        return self._add(
            Cylinder(
                tenant_id=tenant_id,
                serial_number=serial,
                size="45.4KG",
                status=status,
                last_order_id=last_order_id,
                created_at=utcnow(),
                **custody_values(holder),
            )
        )

    def order(self, tenant_id: int, customer_id: int, driver_id: int, quantity: int, total, status=ORDER_ASSIGNED) -> int:
        with self.session_factory() as db:
            order = Order(
                tenant_id=tenant_id,
                customer_id=customer_id,
                driver_id=driver_id,
                status=status,
                cylinders_count=quantity,
                total_amount=Decimal(str(total)),
                created_at=utcnow(),
            )
            db.add(order)
            db.flush()
            db.add(OrderItem(order_id=order.id, product_name="LPG Cylinder", quantity=quantity, price=Decimal("0")))
            db.commit()
            return order.id

    def set_wallet(self, user_id: int, balance) -> None:
        with self.session_factory() as db:
            wallet = db.scalars(select(EmployeeWallet).where(EmployeeWallet.user_id == user_id)).one()
            wallet.balance = Decimal(str(balance))
            db.commit()

    def wallet(self, user_id: int) -> Decimal:
        with self.session_factory() as db:
            balance = db.scalar(select(EmployeeWallet.balance).where(EmployeeWallet.user_id == user_id))
            return Decimal(str(balance)).quantize(Decimal("0.01"))

    def balance(self, customer_id: int) -> Decimal:
        with self.session_factory() as db:
            balance = db.scalar(select(Customer.current_balance).where(Customer.id == customer_id))
            return Decimal(str(balance)).quantize(Decimal("0.01"))

    def get(self, model, obj_id):
        with self.session_factory() as db:
            return db.get(model, obj_id)

    def cylinder_state(self, tenant_id: int) -> dict:
        """serial -> (status, location_type, holder_id)"""
        with self.session_factory() as db:
            rows = db.scalars(select(Cylinder).where(Cylinder.tenant_id == tenant_id)).all()
            return {c.serial_number: (c.status, c.current_location_type, c.current_holder_id) for c in rows}

    def rows(self, model, **filters) -> list:
        with self.session_factory() as db:
            query = select(model)
            for key, value in filters.items():
                query = query.where(getattr(model, key) == value)
            return db.scalars(query.order_by(model.id)).all()


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture()
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def client(session_factory, storage):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage] = lambda: storage
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    reset_logging()


@pytest.fixture()
def tenant(seed) -> dict:
    """One tenant with an admin, a cashier, a driver and a recovery agent."""
    tenant_id = seed.tenant()
    return {
        "tenant_id": tenant_id,
        "admin": seed.user(tenant_id, "admin", "Ayesha"),
        "cashier": seed.user(tenant_id, "cashier", "Imran"),
        "driver": seed.user(tenant_id, "driver", "Bilal"),
        "agent": seed.user(tenant_id, "recovery_agent", "Sana"),
    }
