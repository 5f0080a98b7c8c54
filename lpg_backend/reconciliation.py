"""
Balance reconciliation.

``Customer.current_balance`` is a cache of the sum of that customer's ledger
postings. ``check_balances`` reports every customer where the two disagree by
more than the configured tolerance; ``repair_balance`` overwrites the cache
with a corrected value.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lpg_backend.config import settings
from lpg_backend.exceptions import ConcurrencyConflictError, NotFoundError, ReconciliationError
from lpg_backend.ledger import to_money
from lpg_backend.logging_config import get_logger
from lpg_backend.models import Customer, CustomerLedger, utcnow

logger = get_logger("reconciliation")


@dataclass(frozen=True)
class Discrepancy:
    customer_id: int
    customer_name: str
    system_balance: Decimal
    real_balance: Decimal
    variance: Decimal
    version: int

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "system_balance": str(self.system_balance),
            "real_balance": str(self.real_balance),
            "variance": str(self.variance),
            "version": self.version,
        }


@dataclass
class ReconciliationReport:
    discrepancies: list[Discrepancy] = field(default_factory=list)
    total_checked: int = 0

    @property
    def total_discrepancies(self) -> int:
        return len(self.discrepancies)

    def to_dict(self) -> dict:
        return {
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "total_checked": self.total_checked,
            "total_discrepancies": self.total_discrepancies,
        }


def check_balances(db: Session, tenant_id: int, tolerance: Optional[Decimal] = None) -> ReconciliationReport:
    tolerance = to_money(settings.reconciliation_tolerance if tolerance is None else tolerance)
    try:
        customers = db.execute(
            select(Customer.id, Customer.name, Customer.current_balance, Customer.version_id)
            .where(Customer.tenant_id == tenant_id)
            .order_by(Customer.id)
        ).all()
        sums = dict(
            db.execute(
                select(CustomerLedger.customer_id, func.sum(CustomerLedger.amount))
                .where(CustomerLedger.tenant_id == tenant_id)
                .group_by(CustomerLedger.customer_id)
            ).all()
        )
    except SQLAlchemyError as exc:
        logger.exception("reconciliation_query_failed", extra={"tenant_id_checked": tenant_id})
        raise ReconciliationError(f"Reconciliation failed: {exc.__class__.__name__}") from exc

    report = ReconciliationReport(total_checked=len(customers))
    for customer_id, name, cached, version in customers:
        system_balance = to_money(cached or 0)
        real_balance = to_money(sums.get(customer_id) or 0)
        variance = system_balance - real_balance
        if abs(variance) > tolerance:
            report.discrepancies.append(
                Discrepancy(customer_id, name, system_balance, real_balance, variance, version)
            )

    logger.info(
        "reconciliation_checked",
        extra={"checked": report.total_checked, "discrepancies": report.total_discrepancies},
    )
    return report


def repair_balance(
    db: Session,
    tenant_id: int,
    customer_id: int,
    correct_balance,
    expected_version: Optional[int] = None,
) -> Customer:
    """Overwrite the cached balance; with ``expected_version`` only if the row has not moved on."""
    customer = db.scalars(
        select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
    ).first()
    if customer is None:
        raise NotFoundError("Customer not found or access denied")

    old_balance = to_money(customer.current_balance or 0)
    new_balance = to_money(correct_balance)
    conditions = [Customer.id == customer_id, Customer.tenant_id == tenant_id]
    if expected_version is not None:
        conditions.append(Customer.version_id == expected_version)

    result = db.execute(
        update(Customer)
        .where(*conditions)
        .values(
            current_balance=new_balance,
            updated_at=utcnow(),
            version_id=Customer.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise ConcurrencyConflictError("customer", customer_id)
    db.commit()
    db.refresh(customer)

    logger.warning(
        "customer_balance_repaired",
        extra={
            "customer_id": customer_id,
            "old_balance": str(old_balance),
            "new_balance": str(new_balance),
        },
    )
    return customer
