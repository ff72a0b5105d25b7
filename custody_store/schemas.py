from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import (
    DEFAULT_THRESHOLD,
    DEFAULT_TOKEN_DECIMALS,
    DEFAULT_TOTAL_SHARES,
    TransactionStatus,
    TransactionType,
)

MIN_NODE_ID = 1
MAX_NODE_ID = 5

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class CreateUserRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if "@" not in value or len(value) < 5:
            raise ValueError("Invalid email format")
        return value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("Password must be at least 8 characters")
        return value


class CreateKeyshareRequest(BaseModel):
    user_id: UUID
    mpc_node_id: int = Field(ge=MIN_NODE_ID, le=MAX_NODE_ID)
    private_key_share: str = Field(min_length=1)
    public_key: str = Field(min_length=1)
    threshold: int = Field(default=DEFAULT_THRESHOLD, ge=1)
    total_shares: int = Field(default=DEFAULT_TOTAL_SHARES, ge=1)

    @model_validator(mode="after")
    def _check_threshold(self):
        if self.threshold > self.total_shares:
            raise ValueError("threshold cannot exceed total_shares")
        return self


class UpsertBalanceRequest(BaseModel):
    user_id: UUID
    token_mint: str = Field(min_length=1, max_length=44)
    token_symbol: str = Field(min_length=1, max_length=10)
    balance: Decimal = Field(default=Decimal("0"), ge=0, max_digits=20, decimal_places=8)
    decimals: int = Field(default=DEFAULT_TOKEN_DECIMALS, ge=0)


class CreateTransactionRequest(BaseModel):
    user_id: UUID
    transaction_type: TransactionType
    amount: Decimal = Field(gt=0, max_digits=20, decimal_places=8)
    status: TransactionStatus = TransactionStatus.PENDING
    tx_signature: Optional[str] = Field(default=None, max_length=88)
    token_mint: Optional[str] = Field(default=None, max_length=44)
    from_address: Optional[str] = Field(default=None, max_length=44)
    to_address: Optional[str] = Field(default=None, max_length=44)
    fee: Decimal = Field(default=Decimal("0"), ge=0, max_digits=20, decimal_places=8)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    agg_pubkey: Optional[str] = None
    balance: Decimal
    created_at: datetime
    updated_at: datetime


class UserWithBalances(BaseModel):
    """Profile fields plus the cached SOL balance stored on the user row."""

    id: UUID
    email: str
    agg_pubkey: Optional[str] = None
    sol_balance: Decimal
    created_at: datetime
    updated_at: datetime


class TokenBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    token_mint: str
    token_symbol: str
    balance: Decimal
    decimals: int
    created_at: datetime
    updated_at: datetime


class UserBalanceResponse(BaseModel):
    user_id: UUID
    sol_balance: Decimal
    token_balances: List[TokenBalanceOut]


class UserSummary(BaseModel):
    user: UserOut
    keyshare_count: int
    total_token_types: int


class BalanceSummary(BaseModel):
    total_users: int
    total_sol_locked: Decimal
    total_transactions: int


class KeyshareStats(BaseModel):
    total_keyshares: int
    unique_users: int
    active_nodes: int


class TransactionStats(BaseModel):
    total_transactions: int
    pending_count: int
    failed_count: int
    total_volume: Decimal
