import logging
from decimal import Decimal
from typing import List
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crypto
from .errors import ConstraintViolation, InvalidInput, NotFound
from .models import MpcKeyshare, TokenBalance, Transaction, User
from .schemas import (
    BalanceSummary,
    CreateUserRequest,
    TokenBalanceOut,
    UserBalanceResponse,
    UserOut,
    UserSummary,
    UserWithBalances,
)

logger = logging.getLogger(__name__)


def _require_user(db: Session, user_id: UUID) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)
    return user


def create_user(db: Session, request: CreateUserRequest) -> User:
    existing = db.execute(select(User.id).where(User.email == request.email)).first()
    if existing:
        raise ConstraintViolation(f"User already exists: {request.email}")
    user = User(
        email=request.email,
        password_hash=crypto.hash_password(request.password),
        balance=Decimal("0"),
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConstraintViolation(f"User already exists: {request.email}") from exc
    db.refresh(user)
    logger.info("Created user %s", user.id)
    return user


def get_user(db: Session, user_id: UUID) -> User:
    return _require_user(db, user_id)


def get_user_by_email(db: Session, email: str) -> User:
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if user is None:
        raise NotFound("User", email)
    return user


def update_user_agg_pubkey(db: Session, user_id: UUID, agg_pubkey: str) -> User:
    """Record the aggregated public key produced by MPC key generation."""
    user = _require_user(db, user_id)
    user.agg_pubkey = agg_pubkey
    db.commit()
    db.refresh(user)
    return user


def get_user_balance(db: Session, user_id: UUID) -> Decimal:
    balance = db.execute(select(User.balance).where(User.id == user_id)).first()
    if balance is None:
        raise NotFound("User", user_id)
    return balance[0]


def update_user_balance(db: Session, user_id: UUID, new_balance: Decimal) -> User:
    if new_balance < 0:
        raise InvalidInput("Balance cannot be negative")
    user = _require_user(db, user_id)
    user.balance = new_balance
    db.commit()
    db.refresh(user)
    return user


def get_user_with_balances(db: Session, user_id: UUID) -> UserWithBalances:
    # sol_balance comes from the cached column on users, not from token_balances.
    user = _require_user(db, user_id)
    return UserWithBalances(
        id=user.id,
        email=user.email,
        agg_pubkey=user.agg_pubkey,
        sol_balance=user.balance,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def get_user_summary(db: Session, user_id: UUID) -> UserSummary:
    user = _require_user(db, user_id)
    keyshare_count = db.scalar(
        select(func.count()).select_from(MpcKeyshare).where(MpcKeyshare.user_id == user_id)
    )
    token_types = db.scalar(
        select(func.count()).select_from(TokenBalance).where(TokenBalance.user_id == user_id)
    )
    return UserSummary(
        user=UserOut.model_validate(user),
        keyshare_count=keyshare_count or 0,
        total_token_types=token_types or 0,
    )


def get_user_complete_balance(db: Session, user_id: UUID) -> UserBalanceResponse:
    sol_balance = get_user_balance(db, user_id)
    rows = db.execute(
        select(TokenBalance).where(TokenBalance.user_id == user_id).order_by(TokenBalance.token_symbol)
    ).scalars()
    return UserBalanceResponse(
        user_id=user_id,
        sol_balance=sol_balance,
        token_balances=[TokenBalanceOut.model_validate(row) for row in rows],
    )


def list_users(db: Session, limit: int = 50, offset: int = 0) -> List[User]:
    stmt = select(User).order_by(User.created_at.desc(), User.id).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars())


def count_users(db: Session) -> int:
    return db.scalar(select(func.count()).select_from(User)) or 0


def delete_user(db: Session, user_id: UUID) -> None:
    """
    Delete a user. Keyshares and token balances go with it; the delete is
    refused while the user still owns transactions.
    """
    _require_user(db, user_id)
    try:
        db.execute(delete(User).where(User.id == user_id))
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Refused to delete user %s: %s", user_id, exc.orig)
        raise ConstraintViolation(f"User {user_id} still has transactions") from exc
    db.expire_all()
    logger.info("Deleted user %s", user_id)


def get_balance_summary(db: Session) -> BalanceSummary:
    total_sol = db.scalar(select(func.coalesce(func.sum(User.balance), 0)))
    return BalanceSummary(
        total_users=count_users(db),
        total_sol_locked=Decimal(str(total_sol)),
        total_transactions=db.scalar(select(func.count()).select_from(Transaction)) or 0,
    )
