import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import dialect_insert
from .errors import ConstraintViolation, NotFound
from .models import DEFAULT_TOKEN_DECIMALS, TokenBalance, User, utcnow
from .schemas import USDC_MINT, UpsertBalanceRequest

logger = logging.getLogger(__name__)


def _require_user(db: Session, user_id: UUID) -> None:
    if db.get(User, user_id) is None:
        raise NotFound("User", user_id)


def get_token_balance_info(db: Session, user_id: UUID, token_mint: str) -> TokenBalance:
    row = db.execute(
        select(TokenBalance)
        .where(TokenBalance.user_id == user_id, TokenBalance.token_mint == token_mint)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise NotFound("TokenBalance", (user_id, token_mint))
    return row


def get_token_balance(db: Session, user_id: UUID, token_mint: str) -> Decimal:
    """Balance for one mint; a missing row reads as zero."""
    balance = db.scalar(
        select(TokenBalance.balance).where(
            TokenBalance.user_id == user_id, TokenBalance.token_mint == token_mint
        )
    )
    return Decimal("0") if balance is None else balance


def get_user_token_balances(db: Session, user_id: UUID) -> List[TokenBalance]:
    stmt = select(TokenBalance).where(TokenBalance.user_id == user_id).order_by(TokenBalance.token_symbol)
    return list(db.execute(stmt).scalars())


def upsert_token_balance(db: Session, request: UpsertBalanceRequest) -> TokenBalance:
    _require_user(db, request.user_id)
    stmt = dialect_insert(db, TokenBalance.__table__).values(
        user_id=request.user_id,
        token_mint=request.token_mint,
        token_symbol=request.token_symbol,
        balance=request.balance,
        decimals=request.decimals,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "token_mint"],
        set_={
            "balance": stmt.excluded.balance,
            "token_symbol": stmt.excluded.token_symbol,
            "decimals": stmt.excluded.decimals,
            "updated_at": utcnow(),
        },
    )
    db.execute(stmt)
    db.commit()
    logger.info(
        "Set %s balance of user %s to %s", request.token_symbol, request.user_id, request.balance
    )
    return get_token_balance_info(db, request.user_id, request.token_mint)


def insert_token_balance(db: Session, request: UpsertBalanceRequest) -> TokenBalance:
    _require_user(db, request.user_id)
    row = TokenBalance(
        user_id=request.user_id,
        token_mint=request.token_mint,
        token_symbol=request.token_symbol,
        balance=request.balance,
        decimals=request.decimals,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConstraintViolation(
            f"Balance already exists for user {request.user_id} and mint {request.token_mint}"
        ) from exc
    db.refresh(row)
    return row


def cleanup_zero_balances(db: Session, user_id: Optional[UUID] = None) -> int:
    stmt = delete(TokenBalance).where(TokenBalance.balance == 0)
    if user_id is not None:
        stmt = stmt.where(TokenBalance.user_id == user_id)
    deleted = db.execute(stmt.execution_options(synchronize_session=False)).rowcount
    db.commit()
    logger.info("Removed %d zero balance rows", deleted)
    return deleted


def seed_default_balances(
    db: Session,
    token_mint: str = USDC_MINT,
    token_symbol: str = "USDC",
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> int:
    """
    Give every user a zero balance row for ``token_mint``.
    Rows that already exist are left untouched. Returns the number of users seeded.
    """
    has_row = (
        select(TokenBalance.id)
        .where(TokenBalance.user_id == User.id, TokenBalance.token_mint == token_mint)
        .exists()
    )
    user_ids = list(db.execute(select(User.id).where(~has_row)).scalars())
    if not user_ids:
        return 0
    stmt = dialect_insert(db, TokenBalance.__table__).values(
        [
            {
                "user_id": user_id,
                "token_mint": token_mint,
                "token_symbol": token_symbol,
                "balance": Decimal("0"),
                "decimals": decimals,
            }
            for user_id in user_ids
        ]
    )
    db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id", "token_mint"]))
    db.commit()
    logger.info("Seeded %s balances for %d users", token_symbol, len(user_ids))
    return len(user_ids)
