"""Customer ledger postings and employee wallets.

One posting model: ``CustomerLedger.amount`` is a signed debt delta. A debit
(positive) means the customer owes more, a credit (negative) means the
customer owes less. Every posting moves ``Customer.current_balance`` by the
same delta in the same unit of work, so the cached balance stays equal to the
sum of postings unless something writes the balance directly.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lpg_backend.exceptions import InvalidRequestError, NotFoundError
from lpg_backend.models import (
    LEDGER_CREDIT,
    LEDGER_DEBIT,
    Customer,
    CustomerLedger,
    EmployeeWallet,
    utcnow,
)


def to_money(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise InvalidRequestError("Invalid amount") from exc


def post_to_ledger(
    db: Session,
    customer: Customer,
    amount,
    category: str,
    *,
    description: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    created_by: Optional[int] = None,
) -> CustomerLedger:
    amount = to_money(amount)
    if amount == 0:
        raise InvalidRequestError("ledger posting amount must be non-zero")
    now = utcnow()
    entry = CustomerLedger(
        tenant_id=customer.tenant_id,
        customer_id=customer.id,
        amount=amount,
        transaction_type=LEDGER_DEBIT if amount > 0 else LEDGER_CREDIT,
        category=category,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by=created_by,
        created_at=now,
    )
    db.add(entry)
    customer.current_balance = to_money(customer.current_balance or 0) + amount
    customer.updated_at = now
    return entry


def debit(db: Session, customer: Customer, amount, category: str, **kwargs) -> CustomerLedger:
    """Customer owes ``amount`` more."""
    return post_to_ledger(db, customer, abs(to_money(amount)), category, **kwargs)


def credit(db: Session, customer: Customer, amount, category: str, **kwargs) -> CustomerLedger:
    """Customer owes ``amount`` less."""
    return post_to_ledger(db, customer, -abs(to_money(amount)), category, **kwargs)


def get_customer(db: Session, tenant_id: int, customer_id: int, *, for_update: bool = False) -> Customer:
    query = select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
    if for_update:
        query = query.with_for_update()
    customer = db.scalars(query).first()
    if customer is None:
        raise NotFoundError("Customer not found or access denied")
    return customer


def get_wallet(
    db: Session,
    tenant_id: int,
    user_id: int,
    *,
    create: bool = False,
    for_update: bool = False,
) -> Optional[EmployeeWallet]:
    query = select(EmployeeWallet).where(
        EmployeeWallet.user_id == user_id,
        EmployeeWallet.tenant_id == tenant_id,
    )
    if for_update:
        query = query.with_for_update()
    wallet = db.scalars(query).first()
    if wallet is None and create:
        wallet = EmployeeWallet(tenant_id=tenant_id, user_id=user_id, balance=Decimal("0"))
        db.add(wallet)
        db.flush()
    return wallet


def wallet_balance(db: Session, tenant_id: int, user_id: int) -> Decimal:
    wallet = get_wallet(db, tenant_id, user_id)
    return to_money(wallet.balance) if wallet else Decimal("0.00")


def adjust_wallet(wallet: EmployeeWallet, delta) -> EmployeeWallet:
    wallet.balance = to_money(wallet.balance or 0) + to_money(delta)
    wallet.updated_at = utcnow()
    return wallet
