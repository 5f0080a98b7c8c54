"""
Field collections by recovery agents and drivers, and admin verification of
non-cash payments.

Cash goes straight onto the customer's ledger and into the collector's wallet.
Bank, cheque and online payments need a proof image and wait in the cash book
as ``pending_verification`` until an admin verifies or rejects them.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from lpg_backend import ledger, procedures
from lpg_backend.exceptions import (
    AlreadyProcessedError,
    InvalidRequestError,
    NotFoundError,
    ProcedureFailedError,
)
from lpg_backend.logging_config import get_logger
from lpg_backend.models import (
    CASH_IN,
    CATEGORY_COLLECTION,
    CATEGORY_HANDOVER_REQUEST,
    ENTRY_COMPLETED,
    ENTRY_PENDING,
    ENTRY_PENDING_VERIFICATION,
    ENTRY_REJECTED,
    CashBookEntry,
    Customer,
    CustomerLedger,
    UserProfile,
    utcnow,
)
from lpg_backend.storage import ProofStorage

logger = get_logger("recovery")

HISTORY_LIMIT = 50


def collect_payment(
    db: Session,
    agent: UserProfile,
    customer_id: int,
    amount,
    payment_method: str,
    description: Optional[str] = None,
    proof: Optional[tuple[str, bytes, Optional[str]]] = None,
    storage: Optional[ProofStorage] = None,
) -> dict:
    amount = ledger.to_money(amount or 0)
    if amount <= 0:
        raise InvalidRequestError("Invalid amount")
    if payment_method not in procedures.PAYMENT_METHODS or payment_method == "credit":
        raise InvalidRequestError(f"Unsupported payment method '{payment_method}'")
    customer = ledger.get_customer(db, agent.tenant_id, customer_id)

    if payment_method == "cash":
        result = procedures.collect_payment_with_ledger(
            db,
            agent.tenant_id,
            customer.id,
            amount,
            description or f"Cash collected by {agent.full_name}",
            agent.id,
        )
        if not result.success:
            raise ProcedureFailedError("collect_payment_with_ledger", result.message)
        return {"status": ENTRY_COMPLETED, "amount": str(amount), "message": result.message}

    if proof is None or storage is None:
        raise InvalidRequestError("Proof image is required for non-cash payments")
    filename, content, content_type = proof
    # no fallback: an unverifiable payment is not recorded
    proof_url = storage.upload(agent.tenant_id, "collections", filename, content, content_type)

    entry = CashBookEntry(
        tenant_id=agent.tenant_id,
        created_by=agent.id,
        customer_id=customer.id,
        transaction_type=CASH_IN,
        category=CATEGORY_COLLECTION,
        status=ENTRY_PENDING_VERIFICATION,
        amount=amount,
        payment_method=payment_method,
        description=description or f"{payment_method} payment from {customer.name}",
        proof_url=proof_url,
        created_at=utcnow(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("collection_pending_verification", extra={"entry_id": entry.id, "amount": str(amount)})
    return {
        "status": ENTRY_PENDING_VERIFICATION,
        "amount": str(amount),
        "entry_id": entry.id,
        "proof_url": proof_url,
        "message": "Payment submitted for verification",
    }


def _pending_payment(db: Session, tenant_id: int, entry_id: int) -> CashBookEntry:
    entry = db.scalars(
        select(CashBookEntry)
        .where(
            CashBookEntry.id == entry_id,
            CashBookEntry.tenant_id == tenant_id,
            CashBookEntry.category != CATEGORY_HANDOVER_REQUEST,
        )
        .with_for_update()
    ).first()
    if entry is None:
        raise NotFoundError("Transaction not found")
    if entry.status != ENTRY_PENDING_VERIFICATION:
        raise AlreadyProcessedError()
    return entry


def verify_payment(db: Session, admin: UserProfile, entry_id: int) -> CashBookEntry:
    entry = _pending_payment(db, admin.tenant_id, entry_id)
    if entry.customer_id is not None:
        customer = ledger.get_customer(db, admin.tenant_id, entry.customer_id, for_update=True)
        ledger.credit(
            db,
            customer,
            entry.amount,
            "customer_payment_verified",
            description=f"Verified {entry.payment_method} from customer (entry #{entry.id})",
            reference_type="cash_book_entry",
            reference_id=entry.id,
            created_by=admin.id,
        )
    entry.status = ENTRY_COMPLETED
    entry.verified_by = admin.id
    entry.verified_at = utcnow()
    db.commit()
    db.refresh(entry)
    logger.info("payment_verified", extra={"entry_id": entry.id, "amount": str(entry.amount)})
    return entry


def reject_payment(db: Session, admin: UserProfile, entry_id: int, reason: Optional[str] = None) -> CashBookEntry:
    entry = _pending_payment(db, admin.tenant_id, entry_id)
    entry.status = ENTRY_REJECTED
    entry.verified_by = admin.id
    entry.verified_at = utcnow()
    if reason:
        entry.description = f"{entry.description or ''} | Rejected: {reason}".strip(" |")
    db.commit()
    db.refresh(entry)
    logger.info("payment_rejected", extra={"entry_id": entry.id})
    return entry


def pending_payments(db: Session, tenant_id: int) -> list[CashBookEntry]:
    return db.scalars(
        select(CashBookEntry)
        .where(
            CashBookEntry.tenant_id == tenant_id,
            CashBookEntry.status == ENTRY_PENDING_VERIFICATION,
        )
        .order_by(CashBookEntry.created_at.desc(), CashBookEntry.id.desc())
    ).all()


def recovery_stats(db: Session, agent: UserProfile) -> dict:
    pending = db.scalars(
        select(CashBookEntry).where(
            CashBookEntry.tenant_id == agent.tenant_id,
            CashBookEntry.created_by == agent.id,
            CashBookEntry.category == CATEGORY_HANDOVER_REQUEST,
            CashBookEntry.status == ENTRY_PENDING,
        )
    ).all()
    return {
        "cash_on_hand": ledger.wallet_balance(db, agent.tenant_id, agent.id),
        "pending_amount": sum((ledger.to_money(e.amount) for e in pending), ledger.to_money(0)),
        "pending_handovers": len(pending),
    }


def agent_history(db: Session, agent: UserProfile) -> list[dict]:
    """Latest collections and handovers of ``agent``, newest first."""
    entries = db.execute(
        select(CashBookEntry, Customer.name)
        .outerjoin(Customer, Customer.id == CashBookEntry.customer_id)
        .where(
            CashBookEntry.tenant_id == agent.tenant_id,
            CashBookEntry.created_by == agent.id,
            CashBookEntry.category.in_((CATEGORY_COLLECTION, CATEGORY_HANDOVER_REQUEST)),
        )
        .order_by(CashBookEntry.created_at.desc())
        .limit(HISTORY_LIMIT)
    ).all()
    cash = db.execute(
        select(CustomerLedger, Customer.name)
        .join(Customer, Customer.id == CustomerLedger.customer_id)
        .where(
            CustomerLedger.tenant_id == agent.tenant_id,
            CustomerLedger.created_by == agent.id,
            CustomerLedger.category == CATEGORY_COLLECTION,
        )
        .order_by(CustomerLedger.created_at.desc())
        .limit(HISTORY_LIMIT)
    ).all()

    history = [
        {
            "type": entry.category,
            "amount": ledger.to_money(entry.amount),
            "status": entry.status,
            "payment_method": entry.payment_method,
            "description": entry.description,
            "proof_url": entry.proof_url,
            "customer_name": customer_name,
            "created_at": entry.created_at,
        }
        for entry, customer_name in entries
    ]
    history.extend(
        {
            "type": CATEGORY_COLLECTION,
            "amount": -ledger.to_money(posting.amount),
            "status": ENTRY_COMPLETED,
            "payment_method": "cash",
            "description": posting.description,
            "proof_url": None,
            "customer_name": customer_name,
            "created_at": posting.created_at,
        }
        for posting, customer_name in cash
    )
    history.sort(key=lambda item: item["created_at"], reverse=True)
    return history[:HISTORY_LIMIT]
