from types import SimpleNamespace

import pytest
from sqlalchemy import inspect, text

from custody_store import db as store_db
from custody_store.errors import StoreError
from custody_store.models import Transaction


def test_tables_and_indexes_exist(db):
    inspector = inspect(db.get_bind())
    assert set(inspector.get_table_names()) >= {"users", "mpc_keyshares", "token_balances", "transactions"}
    index_names = {ix["name"] for ix in inspector.get_indexes("transactions")}
    assert {"idx_transactions_user_id", "idx_transactions_signature", "idx_transactions_status"} <= index_names
    uniques = {tuple(u["column_names"]) for u in inspector.get_unique_constraints("token_balances")}
    assert ("user_id", "token_mint") in uniques


def test_foreign_key_rules(db):
    inspector = inspect(db.get_bind())
    [keyshare_fk] = inspector.get_foreign_keys("mpc_keyshares")
    assert keyshare_fk["options"].get("ondelete") == "CASCADE"
    [tx_fk] = inspector.get_foreign_keys("transactions")
    assert tx_fk["options"].get("ondelete") == "RESTRICT"


def test_render_postgres_ddl():
    ddl = store_db.render_ddl("postgresql")
    assert "CREATE TYPE transaction_status AS ENUM ('pending', 'confirmed', 'failed')" in ddl
    assert "CREATE TYPE transaction_type AS ENUM ('deposit', 'withdrawal', 'transfer')" in ddl
    assert "CREATE TABLE users" in ddl
    assert "ON DELETE CASCADE" in ddl
    assert "UNIQUE (user_id, mpc_node_id)" in ddl
    assert "CREATE INDEX idx_users_email ON users (email)" in ddl
    assert "NUMERIC(20, 8)" in ddl


def test_health_check(db):
    assert store_db.health_check(db) is True


def test_upsert_on_unsupported_backend_is_refused():
    mysql_session = SimpleNamespace(get_bind=lambda: SimpleNamespace(dialect=SimpleNamespace(name="mysql")))
    with pytest.raises(StoreError):
        store_db.dialect_insert(mysql_session, Transaction.__table__)


def test_sqlite_amounts_stored_as_exact_text(db, user):
    raw = db.execute(text("SELECT balance FROM users WHERE email = 'a@x.com'")).scalar_one()
    assert raw == "0.00000000"
