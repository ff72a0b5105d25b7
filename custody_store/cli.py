import argparse
import json
import logging
import os
import sys
from decimal import Decimal, InvalidOperation
from uuid import UUID

from . import balances, crypto, db, keyshares, transactions, users
from .errors import StoreError
from .log import LOG_LEVEL, configure_logging
from .models import TransactionStatus, TransactionType
from .schemas import (
    USDC_MINT,
    CreateKeyshareRequest,
    CreateTransactionRequest,
    CreateUserRequest,
    TokenBalanceOut,
    UpsertBalanceRequest,
    UserOut,
)

logger = logging.getLogger(__name__)


def _print_json(data):
    print(json.dumps(data, indent=2, default=str))


def _sealing_key():
    encoded = os.getenv("CUSTODY_SHARE_KEY")
    return crypto.load_sealing_key(encoded) if encoded else None


def _tx_to_dict(tx) -> dict:
    return {
        "id": tx.id,
        "user_id": tx.user_id,
        "tx_signature": tx.tx_signature,
        "transaction_type": tx.transaction_type.value,
        "status": tx.status.value,
        "amount": tx.amount,
        "token_mint": tx.token_mint,
        "from_address": tx.from_address,
        "to_address": tx.to_address,
        "fee": tx.fee,
        "created_at": tx.created_at,
    }


def cmd_init_db(args, session):
    db.init_db(bind=session.get_bind())
    print("Schema created")


def cmd_ddl(args, session):
    print(db.render_ddl(args.dialect), end="")


def cmd_create_user(args, session):
    user = users.create_user(session, CreateUserRequest(email=args.email, password=args.password))
    _print_json(UserOut.model_validate(user).model_dump())


def cmd_get_user(args, session):
    user_id = UUID(args.user_id)
    _print_json(
        {
            "profile": users.get_user_with_balances(session, user_id).model_dump(),
            "summary": users.get_user_summary(session, user_id).model_dump(exclude={"user"}),
            "balances": users.get_user_complete_balance(session, user_id).model_dump(),
        }
    )


def cmd_list_users(args, session):
    rows = users.list_users(session, limit=args.limit, offset=args.offset)
    _print_json(
        {
            "total": users.count_users(session),
            "users": [UserOut.model_validate(u).model_dump() for u in rows],
        }
    )


def cmd_add_keyshare(args, session):
    request = CreateKeyshareRequest(
        user_id=UUID(args.user_id),
        mpc_node_id=args.node,
        private_key_share=args.share,
        public_key=args.public_key,
        threshold=args.threshold,
        total_shares=args.total_shares,
    )
    write = keyshares.upsert_keyshare if args.replace else keyshares.create_keyshare
    keyshare = write(session, request, sealing_key=_sealing_key())
    print(f"Keyshare {keyshare.id} stored for node {keyshare.mpc_node_id}")


def cmd_set_balance(args, session):
    row = balances.upsert_token_balance(
        session,
        UpsertBalanceRequest(
            user_id=UUID(args.user_id),
            token_mint=args.mint,
            token_symbol=args.symbol,
            balance=Decimal(args.amount),
            decimals=args.decimals,
        ),
    )
    _print_json(TokenBalanceOut.model_validate(row).model_dump())


def cmd_seed_balances(args, session):
    count = balances.seed_default_balances(session, args.mint, args.symbol, args.decimals)
    print(f"Seeded {args.symbol} balance for {count} users")


def cmd_cleanup_balances(args, session):
    user_id = UUID(args.user_id) if args.user_id else None
    print(f"Removed {balances.cleanup_zero_balances(session, user_id)} zero balance rows")


def cmd_record_tx(args, session):
    tx = transactions.create_transaction(
        session,
        CreateTransactionRequest(
            user_id=UUID(args.user_id),
            transaction_type=TransactionType(args.type),
            amount=Decimal(args.amount),
            tx_signature=args.signature,
            token_mint=args.mint,
            from_address=args.from_address,
            to_address=args.to_address,
            fee=Decimal(args.fee),
        ),
    )
    _print_json(_tx_to_dict(tx))


def cmd_set_tx_status(args, session):
    tx = transactions.update_transaction_status(
        session, UUID(args.transaction_id), TransactionStatus(args.status), args.signature
    )
    _print_json(_tx_to_dict(tx))


def cmd_stats(args, session):
    _print_json(
        {
            "balances": users.get_balance_summary(session).model_dump(),
            "keyshares": keyshares.get_keyshare_stats(session).model_dump(),
            "transactions": transactions.get_transaction_stats(session).model_dump(),
        }
    )


def cmd_health(args, session):
    if not db.health_check(session):
        print("unhealthy", file=sys.stderr)
        sys.exit(1)
    print("ok")


def build_parser():
    parser = argparse.ArgumentParser(prog="custody-store", description="Custodial wallet store CLI")
    parser.add_argument("--log-level", default=None, help="Logging level (default from CUSTODY_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_init = sub.add_parser("init-db", help="Create all tables in CUSTODY_DB_URL")
    p_init.set_defaults(func=cmd_init_db)

    p_ddl = sub.add_parser("ddl", help="Print the schema as SQL")
    p_ddl.add_argument("--dialect", default="postgresql", choices=["postgresql", "sqlite"])
    p_ddl.set_defaults(func=cmd_ddl)

    p_user = sub.add_parser("create-user", help="Register a user")
    p_user.add_argument("email")
    p_user.add_argument("password")
    p_user.set_defaults(func=cmd_create_user)

    p_get = sub.add_parser("get-user", help="Show a user with summary and balances")
    p_get.add_argument("user_id")
    p_get.set_defaults(func=cmd_get_user)

    p_list = sub.add_parser("list-users", help="List users, newest first")
    p_list.add_argument("--limit", type=int, default=50)
    p_list.add_argument("--offset", type=int, default=0)
    p_list.set_defaults(func=cmd_list_users)

    p_share = sub.add_parser("add-keyshare", help="Store an MPC keyshare for a user")
    p_share.add_argument("user_id")
    p_share.add_argument("node", type=int, help="MPC node id (1-5)")
    p_share.add_argument("share", help="Private key share payload")
    p_share.add_argument("public_key")
    p_share.add_argument("--threshold", type=int, default=2)
    p_share.add_argument("--total-shares", type=int, default=3)
    p_share.add_argument("--replace", action="store_true", help="Overwrite an existing share for the node")
    p_share.set_defaults(func=cmd_add_keyshare)

    p_bal = sub.add_parser("set-balance", help="Create or overwrite a token balance")
    p_bal.add_argument("user_id")
    p_bal.add_argument("mint")
    p_bal.add_argument("symbol")
    p_bal.add_argument("amount")
    p_bal.add_argument("--decimals", type=int, default=6)
    p_bal.set_defaults(func=cmd_set_balance)

    p_seed = sub.add_parser("seed-balances", help="Give every user a zero balance row for a mint")
    p_seed.add_argument("--mint", default=USDC_MINT)
    p_seed.add_argument("--symbol", default="USDC")
    p_seed.add_argument("--decimals", type=int, default=6)
    p_seed.set_defaults(func=cmd_seed_balances)

    p_clean = sub.add_parser("cleanup-balances", help="Delete zero balance rows")
    p_clean.add_argument("--user-id", help="Only clean this user's rows")
    p_clean.set_defaults(func=cmd_cleanup_balances)

    p_tx = sub.add_parser("record-tx", help="Record a transaction")
    p_tx.add_argument("user_id")
    p_tx.add_argument("type", choices=[t.value for t in TransactionType])
    p_tx.add_argument("amount")
    p_tx.add_argument("--signature")
    p_tx.add_argument("--mint", help="Token mint; omit for SOL")
    p_tx.add_argument("--from-address")
    p_tx.add_argument("--to-address")
    p_tx.add_argument("--fee", default="0")
    p_tx.set_defaults(func=cmd_record_tx)

    p_status = sub.add_parser("set-tx-status", help="Settle a pending transaction")
    p_status.add_argument("transaction_id")
    p_status.add_argument("status", choices=["confirmed", "failed"])
    p_status.add_argument("--signature")
    p_status.set_defaults(func=cmd_set_tx_status)

    p_stats = sub.add_parser("stats", help="Store-wide counters")
    p_stats.set_defaults(func=cmd_stats)

    p_health = sub.add_parser("health", help="Check the database connection")
    p_health.set_defaults(func=cmd_health)

    return parser


def main(argv=None, session_factory=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or LOG_LEVEL)
    session = (session_factory or db.SessionLocal)()
    try:
        args.func(args, session)
    except (StoreError, ValueError, InvalidOperation) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        session.close()


if __name__ == "__main__":
    main()
