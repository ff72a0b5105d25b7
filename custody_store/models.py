import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import relationship

from .db import Base

AMOUNT_SCALE = 8
_AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)


class ExactDecimal(TypeDecorator):
    """
    Fixed-point amount kept as canonical decimal text.

    pysqlite has no decimal type and round-trips NUMERIC through float, which
    loses digits past 15 significant places. Values are quantized to
    AMOUNT_SCALE places so equality against a bound Decimal still matches.
    """

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(str(value)).quantize(_AMOUNT_QUANTUM), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


# DECIMAL(20, 8) amounts, shared by every money column.
Amount = Numeric(20, AMOUNT_SCALE).with_variant(ExactDecimal(), "sqlite")

DEFAULT_THRESHOLD = 2
DEFAULT_TOTAL_SHARES = 3
DEFAULT_TOKEN_DECIMALS = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    agg_pubkey = Column(Text, nullable=True)  # aggregated public key from MPC keygen
    balance = Column(Amount, default=0, server_default="0")  # cached SOL balance

    keyshares = relationship("MpcKeyshare", back_populates="user", passive_deletes=True)
    token_balances = relationship("TokenBalance", back_populates="user", passive_deletes=True)
    transactions = relationship("Transaction", back_populates="user", passive_deletes="all")

    __table_args__ = (
        Index("idx_users_email", "email"),
        Index("idx_users_balance", "balance"),
    )


class MpcKeyshare(TimestampMixin, Base):
    __tablename__ = "mpc_keyshares"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    mpc_node_id = Column(Integer, nullable=False)
    private_key_share = Column(Text, nullable=False)  # sealed when a sealing key is configured
    public_key = Column(Text, nullable=False)
    threshold = Column(Integer, nullable=False, default=DEFAULT_THRESHOLD, server_default=str(DEFAULT_THRESHOLD))
    total_shares = Column(
        Integer, nullable=False, default=DEFAULT_TOTAL_SHARES, server_default=str(DEFAULT_TOTAL_SHARES)
    )

    user = relationship("User", back_populates="keyshares")

    __table_args__ = (
        UniqueConstraint("user_id", "mpc_node_id", name="uq_mpc_keyshares_user_node"),
        Index("idx_mpc_keyshares_user_id", "user_id"),
        Index("idx_mpc_keyshares_node_id", "mpc_node_id"),
    )


class TokenBalance(TimestampMixin, Base):
    __tablename__ = "token_balances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_mint = Column(String(44), nullable=False)  # base58 mint address
    token_symbol = Column(String(10), nullable=False)
    balance = Column(Amount, default=0, server_default="0")
    decimals = Column(
        Integer, nullable=False, default=DEFAULT_TOKEN_DECIMALS, server_default=str(DEFAULT_TOKEN_DECIMALS)
    )

    user = relationship("User", back_populates="token_balances")

    __table_args__ = (
        UniqueConstraint("user_id", "token_mint", name="uq_token_balances_user_mint"),
        Index("idx_token_balances_user_id", "user_id"),
        Index("idx_token_balances_mint", "token_mint"),
    )


class Transaction(TimestampMixin, Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    tx_signature = Column(String(88), unique=True, nullable=True)
    transaction_type = Column(
        Enum(TransactionType, name="transaction_type", values_callable=_enum_values),
        nullable=False,
    )
    status = Column(
        Enum(TransactionStatus, name="transaction_status", values_callable=_enum_values),
        default=TransactionStatus.PENDING,
        server_default=TransactionStatus.PENDING.value,
    )
    amount = Column(Amount, nullable=False)
    token_mint = Column(String(44), nullable=True)  # NULL for SOL
    from_address = Column(String(44), nullable=True)
    to_address = Column(String(44), nullable=True)
    fee = Column(Amount, default=0, server_default="0")

    user = relationship("User", back_populates="transactions")

    __table_args__ = (
        Index("idx_transactions_user_id", "user_id"),
        Index("idx_transactions_signature", "tx_signature"),
        Index("idx_transactions_status", "status"),
    )
