import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConstraintViolation, InvalidStatusTransition, NotFound
from .models import Transaction, TransactionStatus, TransactionType, User, utcnow
from .schemas import CreateTransactionRequest, TransactionStats

logger = logging.getLogger(__name__)

# Statuses a pending transaction may settle into. Settled rows never move again.
SETTLED_STATUSES = (TransactionStatus.CONFIRMED, TransactionStatus.FAILED)


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value or 0))


def _filtered(stmt, user_id: UUID, status: Optional[TransactionStatus], transaction_type: Optional[TransactionType]):
    stmt = stmt.where(Transaction.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Transaction.status == status)
    if transaction_type is not None:
        stmt = stmt.where(Transaction.transaction_type == transaction_type)
    return stmt


def create_transaction(db: Session, request: CreateTransactionRequest) -> Transaction:
    if db.get(User, request.user_id) is None:
        raise NotFound("User", request.user_id)
    tx = Transaction(
        user_id=request.user_id,
        tx_signature=request.tx_signature,
        transaction_type=request.transaction_type,
        status=request.status,
        amount=request.amount,
        token_mint=request.token_mint,
        from_address=request.from_address,
        to_address=request.to_address,
        fee=request.fee,
    )
    db.add(tx)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if db.get(User, request.user_id) is None:
            raise NotFound("User", request.user_id) from exc
        raise ConstraintViolation(f"Transaction signature already recorded: {request.tx_signature}") from exc
    db.refresh(tx)
    logger.info("Recorded %s transaction %s for user %s", tx.transaction_type.value, tx.id, tx.user_id)
    return tx


def get_transaction(db: Session, transaction_id: UUID) -> Transaction:
    tx = db.get(Transaction, transaction_id)
    if tx is None:
        raise NotFound("Transaction", transaction_id)
    return tx


def get_transaction_by_signature(db: Session, tx_signature: str) -> Transaction:
    tx = db.execute(select(Transaction).where(Transaction.tx_signature == tx_signature)).scalar_one_or_none()
    if tx is None:
        raise NotFound("Transaction", tx_signature)
    return tx


def _reload(db: Session, transaction_id: UUID) -> Transaction:
    tx = db.get(Transaction, transaction_id, populate_existing=True)
    if tx is None:
        raise NotFound("Transaction", transaction_id)
    return tx


def _reject_transition(db: Session, transaction_id: UUID, status: TransactionStatus):
    current = _reload(db, transaction_id).status
    logger.warning("Rejected status change of %s: %s -> %s", transaction_id, current.value, status.value)
    raise InvalidStatusTransition(current, status)


def update_transaction_status(
    db: Session,
    transaction_id: UUID,
    status: TransactionStatus,
    tx_signature: Optional[str] = None,
) -> Transaction:
    """
    Settle a pending transaction as confirmed or failed, optionally recording
    its on-chain signature. Settled transactions are final.
    """
    if status not in SETTLED_STATUSES:
        _reject_transition(db, transaction_id, status)

    values = {"status": status, "updated_at": utcnow()}
    if tx_signature is not None:
        values["tx_signature"] = tx_signature
    # Pending guard and write are one statement.
    stmt = (
        update(Transaction)
        .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        settled = db.execute(stmt).rowcount
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConstraintViolation(f"Transaction signature already recorded: {tx_signature}") from exc
    if not settled:
        _reject_transition(db, transaction_id, status)

    tx = _reload(db, transaction_id)
    logger.info("Transaction %s is now %s", tx.id, status.value)
    return tx


def fail_transaction(db: Session, transaction_id: UUID) -> Transaction:
    return update_transaction_status(db, transaction_id, TransactionStatus.FAILED)


def get_user_transactions(
    db: Session,
    user_id: UUID,
    limit: int = 50,
    offset: int = 0,
    status: Optional[TransactionStatus] = None,
    transaction_type: Optional[TransactionType] = None,
) -> List[Transaction]:
    stmt = _filtered(select(Transaction), user_id, status, transaction_type)
    stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars())


def count_user_transactions(
    db: Session,
    user_id: UUID,
    status: Optional[TransactionStatus] = None,
    transaction_type: Optional[TransactionType] = None,
) -> int:
    stmt = _filtered(select(func.count()).select_from(Transaction), user_id, status, transaction_type)
    return db.scalar(stmt) or 0


def get_transactions_by_status(db: Session, status: TransactionStatus, limit: int = 100) -> List[Transaction]:
    stmt = (
        select(Transaction)
        .where(Transaction.status == status)
        .order_by(Transaction.created_at, Transaction.id)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def get_pending_transactions(db: Session, limit: int = 100) -> List[Transaction]:
    return get_transactions_by_status(db, TransactionStatus.PENDING, limit)


def _count_status(db: Session, status: TransactionStatus) -> int:
    return db.scalar(select(func.count()).select_from(Transaction).where(Transaction.status == status)) or 0


def get_transaction_stats(db: Session) -> TransactionStats:
    total = db.scalar(select(func.count()).select_from(Transaction)) or 0
    volume = db.scalar(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.status == TransactionStatus.CONFIRMED
        )
    )
    return TransactionStats(
        total_transactions=total,
        pending_count=_count_status(db, TransactionStatus.PENDING),
        failed_count=_count_status(db, TransactionStatus.FAILED),
        total_volume=_as_decimal(volume),
    )


def get_user_total_fees(db: Session, user_id: UUID) -> Decimal:
    fees = db.scalar(
        select(func.coalesce(func.sum(Transaction.fee), 0)).where(
            Transaction.user_id == user_id, Transaction.status == TransactionStatus.CONFIRMED
        )
    )
    return _as_decimal(fees)
