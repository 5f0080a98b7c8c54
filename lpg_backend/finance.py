"""Company cash book, receivables and manual finance entries."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from lpg_backend import procedures
from lpg_backend.exceptions import InvalidRequestError, ProcedureFailedError
from lpg_backend.ledger import get_customer, to_money
from lpg_backend.models import (
    CASH_IN,
    CATEGORY_CUSTOMER_PAYMENT,
    ENTRY_COMPLETED,
    CashBookEntry,
    Customer,
    CustomerLedger,
    UserProfile,
)


def company_stats(db: Session, tenant_id: int) -> dict:
    signed = case((CashBookEntry.transaction_type == CASH_IN, CashBookEntry.amount), else_=-CashBookEntry.amount)
    liquid_cash = db.scalar(
        select(func.coalesce(func.sum(signed), 0)).where(
            CashBookEntry.tenant_id == tenant_id,
            CashBookEntry.status == ENTRY_COMPLETED,
        )
    )
    receivables = db.scalar(
        select(func.coalesce(func.sum(Customer.current_balance), 0)).where(
            Customer.tenant_id == tenant_id,
            Customer.current_balance > 0,
        )
    )
    return {
        "liquid_cash": to_money(liquid_cash or 0),
        "outstanding_receivables": to_money(receivables or 0),
    }


def create_transaction(
    db: Session,
    user: UserProfile,
    entry_type: str,
    amount,
    category: str,
    description: Optional[str] = None,
    customer_id: Optional[int] = None,
    payment_method: str = "cash",
) -> procedures.ProcedureResult:
    """Manual entry from the finance dashboard.

    A ``customer_payment`` goes to the customer's ledger and the cash book;
    anything else is a plain income or expense line.
    """
    amount = to_money(amount or 0)
    if amount <= Decimal("0"):
        raise InvalidRequestError("Amount must be greater than zero")

    if category == CATEGORY_CUSTOMER_PAYMENT:
        if customer_id is None:
            raise InvalidRequestError("Customer is required for a customer payment")
        get_customer(db, user.tenant_id, customer_id)
        result = procedures.process_customer_payment(
            db,
            user.tenant_id,
            customer_id,
            amount,
            payment_method,
            user.id,
            description or "Payment received",
        )
        name = "process_customer_payment"
    else:
        result = procedures.record_expense_transaction(
            db,
            user.tenant_id,
            amount,
            entry_type,
            category,
            description or category,
            user.id,
        )
        name = "record_expense_transaction"
    if not result.success:
        raise ProcedureFailedError(name, result.message)
    return result


def cash_book_entries(
    db: Session,
    tenant_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[tuple[CashBookEntry, Optional[str]]]:
    query = (
        select(CashBookEntry, UserProfile.full_name)
        .outerjoin(UserProfile, UserProfile.id == CashBookEntry.created_by)
        .where(CashBookEntry.tenant_id == tenant_id)
    )
    if start is not None:
        query = query.where(CashBookEntry.created_at >= start)
    if end is not None:
        query = query.where(CashBookEntry.created_at <= end)
    rows = db.execute(query.order_by(CashBookEntry.created_at.desc(), CashBookEntry.id.desc())).all()
    return [(entry, name) for entry, name in rows]


def ledger_entries(db: Session, tenant_id: int, customer_id: int) -> list[CustomerLedger]:
    get_customer(db, tenant_id, customer_id)
    return db.scalars(
        select(CustomerLedger)
        .where(CustomerLedger.tenant_id == tenant_id, CustomerLedger.customer_id == customer_id)
        .order_by(CustomerLedger.created_at.desc(), CustomerLedger.id.desc())
    ).all()


def outstanding_balances(db: Session, tenant_id: int) -> list[Customer]:
    """Customers who owe money, largest debt first."""
    return db.scalars(
        select(Customer)
        .where(Customer.tenant_id == tenant_id, Customer.current_balance > 0)
        .order_by(Customer.current_balance.desc(), Customer.id)
    ).all()
