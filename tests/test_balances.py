import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError

from custody_store import balances, users
from custody_store.errors import ConstraintViolation, NotFound
from custody_store.models import TokenBalance
from custody_store.schemas import USDC_MINT, CreateUserRequest, UpsertBalanceRequest


def _balance(user_id, amount="0", mint="USDC", symbol="USDC", **kwargs):
    return UpsertBalanceRequest(
        user_id=user_id, token_mint=mint, token_symbol=symbol, balance=Decimal(amount), **kwargs
    )


def test_upsert_updates_existing_pair(db, user):
    first = balances.upsert_token_balance(db, _balance(user.id, "0"))
    assert first.balance == Decimal("0")

    second = balances.upsert_token_balance(db, _balance(user.id, "50"))
    assert second.id == first.id
    assert second.balance == Decimal("50")
    assert db.query(TokenBalance).filter(TokenBalance.user_id == user.id).count() == 1


def test_upsert_for_unknown_user(db):
    with pytest.raises(NotFound):
        balances.upsert_token_balance(db, _balance(uuid.uuid4()))


def test_strict_insert_rejects_duplicate_pair(db, user):
    balances.insert_token_balance(db, _balance(user.id, "1"))
    with pytest.raises(ConstraintViolation):
        balances.insert_token_balance(db, _balance(user.id, "2"))
    assert balances.get_token_balance(db, user.id, "USDC") == Decimal("1")


def test_negative_amount_rejected():
    with pytest.raises(ValidationError):
        _balance(uuid.uuid4(), "-1")


def test_missing_balance_reads_as_zero(db, user):
    assert balances.get_token_balance(db, user.id, "NoSuchMint") == Decimal("0")
    with pytest.raises(NotFound):
        balances.get_token_balance_info(db, user.id, "NoSuchMint")


def test_user_balances_ordered_by_symbol(db, user):
    balances.upsert_token_balance(db, _balance(user.id, "3", mint="MintT", symbol="USDT"))
    balances.upsert_token_balance(db, _balance(user.id, "1", mint="MintB", symbol="BONK", decimals=5))
    rows = balances.get_user_token_balances(db, user.id)
    assert [(r.token_symbol, r.decimals) for r in rows] == [("BONK", 5), ("USDT", 6)]


def test_cleanup_zero_balances(db, user):
    other = users.create_user(db, CreateUserRequest(email="b@x.com", password="password-123"))
    balances.upsert_token_balance(db, _balance(user.id, "0", mint="M1", symbol="ONE"))
    balances.upsert_token_balance(db, _balance(user.id, "5", mint="M2", symbol="TWO"))
    balances.upsert_token_balance(db, _balance(other.id, "0", mint="M1", symbol="ONE"))

    assert balances.cleanup_zero_balances(db, user.id) == 1
    assert balances.get_token_balance(db, other.id, "M1") == Decimal("0")
    assert balances.cleanup_zero_balances(db) == 1
    assert db.query(TokenBalance).count() == 1


def test_seed_default_balances_leaves_existing_rows(db, user):
    other = users.create_user(db, CreateUserRequest(email="b@x.com", password="password-123"))
    balances.upsert_token_balance(db, _balance(user.id, "7", mint=USDC_MINT))

    assert balances.seed_default_balances(db) == 1
    assert balances.get_token_balance(db, user.id, USDC_MINT) == Decimal("7")
    seeded = balances.get_token_balance_info(db, other.id, USDC_MINT)
    assert seeded.token_symbol == "USDC"
    assert seeded.decimals == 6
    assert seeded.balance == Decimal("0")

    assert balances.seed_default_balances(db) == 0


def test_max_precision_balance_round_trips(db, user):
    amount = Decimal("123456789012.12345678")
    balances.upsert_token_balance(db, _balance(user.id, str(amount)))
    db.expire_all()
    assert balances.get_token_balance(db, user.id, "USDC") == amount
    assert balances.get_token_balance_info(db, user.id, "USDC").balance == amount
