"""
Handover of cash and cylinders from a driver (or recovery agent) to an
admin, manager or cashier.

A submission locks the sender's cylinders with a conditional update
(``status -> handover_pending`` only where the sender holds them and they are
not already locked) and checks the affected row count. That check is what
keeps two submissions from claiming the same physical cylinder. The cylinder
set is all-or-nothing.

Locks are committed before the request row is written. If writing the request
fails, the unlock is first recorded as a ``CompensationTask`` and then
attempted; a task that cannot be applied stays pending and is replayed by
``retry_compensations``.

Approval runs the ``approve_driver_handover`` procedure. Rejection clears the
sender's pending locks back to ``empty`` without touching custody or wallets.

The two unlock paths differ: compensation restores each
cylinder's status from the request snapshot (a full cylinder stays full),
while rejection always resets to ``empty``.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lpg_backend import procedures
from lpg_backend.exceptions import (
    AlreadyProcessedError,
    AssetLockError,
    AssetOwnershipError,
    ForbiddenError,
    HandoverRecordError,
    InsufficientFundsError,
    InvalidRequestError,
    NotFoundError,
    ProcedureFailedError,
)
from lpg_backend.inventory import DriverHolder, held_by
from lpg_backend.ledger import to_money, wallet_balance
from lpg_backend.logging_config import get_logger
from lpg_backend.models import (
    CASH_IN,
    CATEGORY_HANDOVER_REQUEST,
    CYLINDER_EMPTY,
    CYLINDER_HANDOVER_PENDING,
    ENTRY_PENDING,
    ENTRY_REJECTED,
    FIELD_ROLES,
    RECEIVER_ROLES,
    CashBookEntry,
    CompensationTask,
    Cylinder,
    UserProfile,
    utcnow,
)

logger = get_logger("handover")

UNLOCK_CYLINDERS = "unlock_cylinders"
TASK_PENDING = "pending"
TASK_DONE = "done"


def _validate_receiver(db: Session, tenant_id: int, receiver_id: Optional[int]) -> UserProfile:
    if not receiver_id:
        raise InvalidRequestError("Please select a receiver.")
    receiver = db.get(UserProfile, receiver_id)
    if (
        receiver is None
        or receiver.tenant_id != tenant_id
        or not receiver.is_active
        or receiver.role not in RECEIVER_ROLES
    ):
        raise InvalidRequestError("Please select a valid receiver.")
    return receiver


def lock_cylinders(db: Session, tenant_id: int, sender_id: int, serials: list[str]) -> dict[str, str]:
    """Lock ``serials`` held by ``sender_id``; returns serial -> status before the lock."""
    guard = (
        Cylinder.tenant_id == tenant_id,
        Cylinder.serial_number.in_(serials),
        Cylinder.status != CYLINDER_HANDOVER_PENDING,
        *held_by(DriverHolder(sender_id)),
    )
    prior = dict(db.execute(select(Cylinder.serial_number, Cylinder.status).where(*guard)).all())
    result = db.execute(
        update(Cylinder)
        .where(*guard)
        .values(status=CYLINDER_HANDOVER_PENDING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    locked = result.rowcount

    if locked == 0:
        db.rollback()
        logger.error("handover_lock_empty", extra={"sender_id": sender_id, "serials": serials})
        raise AssetLockError("Update failed. No assets locked. Ensure you possess these cylinders.")
    if locked != len(serials):
        db.rollback()
        logger.error(
            "handover_lock_mismatch",
            extra={"sender_id": sender_id, "expected": len(serials), "locked": locked},
        )
        raise AssetOwnershipError(len(serials), locked)

    db.commit()
    return {serial: prior.get(serial, CYLINDER_EMPTY) for serial in serials}


def _create_request_record(
    db: Session, sender: UserProfile, receiver_id: int, amount, snapshot: dict[str, str]
) -> CashBookEntry:
    entry = CashBookEntry(
        tenant_id=sender.tenant_id,
        created_by=sender.id,
        receiver_id=receiver_id,
        transaction_type=CASH_IN,
        category=CATEGORY_HANDOVER_REQUEST,
        status=ENTRY_PENDING,
        amount=amount,
        payment_method="cash",
        description=f"Handover Request: Rs {amount} + {len(snapshot)} Cylinders",
        asset_snapshot=snapshot or None,
        created_at=utcnow(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def submit_handover(
    db: Session,
    sender: UserProfile,
    receiver_id: Optional[int],
    deposit_amount,
    serials: list[str],
) -> CashBookEntry:
    if sender.role not in FIELD_ROLES:
        raise ForbiddenError("only drivers and recovery agents can submit handovers")
    deposit = to_money(deposit_amount or 0)
    if deposit < 0:
        raise InvalidRequestError("Deposit amount cannot be negative")
    serials = list(dict.fromkeys(s.strip() for s in serials or [] if s and s.strip()))
    if deposit == 0 and not serials:
        raise InvalidRequestError("Nothing to hand over")
    _validate_receiver(db, sender.tenant_id, receiver_id)

    if deposit > 0:
        balance = wallet_balance(db, sender.tenant_id, sender.id)
        if deposit > balance:
            raise InsufficientFundsError(deposit, balance)

    snapshot = lock_cylinders(db, sender.tenant_id, sender.id, serials) if serials else {}

    try:
        entry = _create_request_record(db, sender, receiver_id, deposit, snapshot)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("handover_record_failed", extra={"sender_id": sender.id})
        if not snapshot:
            raise HandoverRecordError(f"Transaction Creation Failed: {exc.__class__.__name__}")
        if _release_locks(db, sender, snapshot, str(exc)):
            raise HandoverRecordError(
                "Transaction Creation Failed. Cylinder locks were released, please try again."
            )
        raise HandoverRecordError("Transaction Creation Failed. Assets are locked - please contact Admin.")

    logger.info(
        "handover_submitted",
        extra={"entry_id": entry.id, "amount": str(deposit), "cylinders": len(snapshot)},
    )
    return entry


def _release_locks(db: Session, sender: UserProfile, snapshot: dict[str, str], reason: str) -> bool:
    task = enqueue_compensation(
        db,
        sender.tenant_id,
        UNLOCK_CYLINDERS,
        {"sender_id": sender.id, "cylinders": snapshot, "reason": reason[:500]},
    )
    if task is None:
        return False
    return run_compensation(db, task)


def enqueue_compensation(db: Session, tenant_id: int, kind: str, payload: dict) -> Optional[CompensationTask]:
    task = CompensationTask(
        tenant_id=tenant_id,
        kind=kind,
        payload=payload,
        status=TASK_PENDING,
        attempts=0,
        created_at=utcnow(),
    )
    db.add(task)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.critical("compensation_enqueue_failed", extra={"kind": kind, "payload": payload})
        return None
    db.refresh(task)
    return task


def _unlock_cylinders(db: Session, task: CompensationTask) -> None:
    sender_id = task.payload["sender_id"]
    by_status: dict[str, list[str]] = {}
    for serial, status in task.payload["cylinders"].items():
        by_status.setdefault(status, []).append(serial)
    for status, serials in by_status.items():
        db.execute(
            update(Cylinder)
            .where(
                Cylinder.tenant_id == task.tenant_id,
                Cylinder.serial_number.in_(serials),
                Cylinder.status == CYLINDER_HANDOVER_PENDING,
                *held_by(DriverHolder(sender_id)),
            )
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )


_COMPENSATIONS = {
    UNLOCK_CYLINDERS: _unlock_cylinders,
}


def run_compensation(db: Session, task: CompensationTask) -> bool:
    task_id = task.id
    try:
        _COMPENSATIONS[task.kind](db, task)
        task.status = TASK_DONE
        task.attempts += 1
        task.completed_at = utcnow()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("compensation_failed", extra={"task_id": task_id, "error": str(exc)})
        try:
            task = db.get(CompensationTask, task_id)
            task.attempts += 1
            task.last_error = str(exc)[:500]
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("compensation_attempt_not_recorded", extra={"task_id": task_id})
        return False
    logger.info("compensation_applied", extra={"task_id": task_id, "kind": task.kind})
    return True


def pending_compensations(db: Session, tenant_id: int) -> list[CompensationTask]:
    return db.scalars(
        select(CompensationTask)
        .where(CompensationTask.tenant_id == tenant_id, CompensationTask.status == TASK_PENDING)
        .order_by(CompensationTask.id)
    ).all()


def retry_compensations(db: Session, tenant_id: int) -> dict:
    applied = 0
    failed = 0
    for task in pending_compensations(db, tenant_id):
        if run_compensation(db, task):
            applied += 1
        else:
            failed += 1
    return {"applied": applied, "failed": failed}


def approve_handover(db: Session, admin: UserProfile, transaction_id: int) -> procedures.ProcedureResult:
    result = procedures.approve_driver_handover(db, transaction_id, admin.id)
    if not result.success:
        raise ProcedureFailedError("approve_driver_handover", result.message)
    return result


def reject_handover(
    db: Session, admin: UserProfile, transaction_id: int, reason: Optional[str] = None
) -> tuple[CashBookEntry, int]:
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
        raise NotFoundError("Transaction not found")
    if request.status != ENTRY_PENDING:
        raise AlreadyProcessedError()

    # the sender keeps custody; only the pending lock is cleared
    unlocked = db.execute(
        update(Cylinder)
        .where(
            Cylinder.tenant_id == admin.tenant_id,
            Cylinder.status == CYLINDER_HANDOVER_PENDING,
            *held_by(DriverHolder(request.created_by)),
        )
        .values(status=CYLINDER_EMPTY, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount

    request.status = ENTRY_REJECTED
    request.verified_by = admin.id
    request.verified_at = utcnow()
    if reason:
        request.description = f"{request.description or ''} | Rejected: {reason}".strip(" |")
    db.commit()
    db.refresh(request)
    logger.info("handover_rejected", extra={"entry_id": request.id, "unlocked": unlocked})
    return request, unlocked


def pending_handovers(db: Session, tenant_id: int) -> list[tuple[CashBookEntry, Optional[UserProfile]]]:
    rows = db.execute(
        select(CashBookEntry, UserProfile)
        .outerjoin(UserProfile, UserProfile.id == CashBookEntry.created_by)
        .where(
            CashBookEntry.tenant_id == tenant_id,
            CashBookEntry.category == CATEGORY_HANDOVER_REQUEST,
            CashBookEntry.status == ENTRY_PENDING,
        )
        .order_by(CashBookEntry.created_at.desc(), CashBookEntry.id.desc())
    ).all()
    return [(entry, sender) for entry, sender in rows]


def handover_history(
    db: Session,
    user: UserProfile,
    status: Optional[str] = None,
    sender_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[tuple[CashBookEntry, Optional[UserProfile]]]:
    query = (
        select(CashBookEntry, UserProfile)
        .outerjoin(UserProfile, UserProfile.id == CashBookEntry.created_by)
        .where(
            CashBookEntry.tenant_id == user.tenant_id,
            CashBookEntry.category == CATEGORY_HANDOVER_REQUEST,
        )
    )
    if status is not None:
        query = query.where(CashBookEntry.status == status)
    if sender_id is not None:
        query = query.where(CashBookEntry.created_by == sender_id)
    if start is not None:
        query = query.where(CashBookEntry.created_at >= start)
    if end is not None:
        query = query.where(CashBookEntry.created_at <= end)
    if user.role not in RECEIVER_ROLES:
        query = query.where(or_(CashBookEntry.created_by == user.id, CashBookEntry.receiver_id == user.id))
    rows = db.execute(query.order_by(CashBookEntry.created_at.desc(), CashBookEntry.id.desc())).all()
    return [(entry, sender) for entry, sender in rows]


def pending_cylinders(db: Session, tenant_id: int) -> list[Cylinder]:
    return db.scalars(
        select(Cylinder)
        .where(Cylinder.tenant_id == tenant_id, Cylinder.status == CYLINDER_HANDOVER_PENDING)
        .order_by(Cylinder.current_holder_id, Cylinder.serial_number)
    ).all()
