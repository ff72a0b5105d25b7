import logging
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crypto
from .db import dialect_insert
from .errors import ConstraintViolation, InvalidInput, NotFound
from .models import DEFAULT_THRESHOLD, DEFAULT_TOTAL_SHARES, MpcKeyshare, User, utcnow
from .schemas import MAX_NODE_ID, MIN_NODE_ID, CreateKeyshareRequest, KeyshareStats

logger = logging.getLogger(__name__)


def _binding(user_id: UUID, mpc_node_id: int) -> bytes:
    return f"{user_id}:{mpc_node_id}".encode("utf-8")


def _stored_share(request: CreateKeyshareRequest, sealing_key: Optional[bytes]) -> str:
    if sealing_key is None:
        return request.private_key_share
    return crypto.seal_share(
        sealing_key, request.private_key_share, _binding(request.user_id, request.mpc_node_id)
    )


def _check_node_id(mpc_node_id: int) -> None:
    if not MIN_NODE_ID <= mpc_node_id <= MAX_NODE_ID:
        raise InvalidInput(f"MPC node ID must be between {MIN_NODE_ID} and {MAX_NODE_ID}")


def _require_user(db: Session, user_id: UUID) -> None:
    if db.get(User, user_id) is None:
        raise NotFound("User", user_id)


def _find(db: Session, user_id: UUID, mpc_node_id: int) -> Optional[MpcKeyshare]:
    stmt = select(MpcKeyshare).where(
        MpcKeyshare.user_id == user_id, MpcKeyshare.mpc_node_id == mpc_node_id
    )
    return db.execute(stmt).scalar_one_or_none()


def open_keyshare(keyshare: MpcKeyshare, sealing_key: bytes) -> str:
    """Recover the plaintext share of a row written with ``sealing_key``."""
    return crypto.open_share(
        sealing_key, keyshare.private_key_share, _binding(keyshare.user_id, keyshare.mpc_node_id)
    )


def create_keyshare(
    db: Session, request: CreateKeyshareRequest, sealing_key: Optional[bytes] = None
) -> MpcKeyshare:
    _require_user(db, request.user_id)
    if _find(db, request.user_id, request.mpc_node_id) is not None:
        raise ConstraintViolation(
            f"Keyshare already exists for user {request.user_id} on node {request.mpc_node_id}"
        )
    keyshare = MpcKeyshare(
        user_id=request.user_id,
        mpc_node_id=request.mpc_node_id,
        private_key_share=_stored_share(request, sealing_key),
        public_key=request.public_key,
        threshold=request.threshold,
        total_shares=request.total_shares,
    )
    db.add(keyshare)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConstraintViolation(
            f"Keyshare already exists for user {request.user_id} on node {request.mpc_node_id}"
        ) from exc
    db.refresh(keyshare)
    logger.info("Stored keyshare for user %s on node %s", request.user_id, request.mpc_node_id)
    return keyshare


def upsert_keyshare(
    db: Session, request: CreateKeyshareRequest, sealing_key: Optional[bytes] = None
) -> MpcKeyshare:
    _require_user(db, request.user_id)
    now = utcnow()
    stmt = dialect_insert(db, MpcKeyshare.__table__).values(
        user_id=request.user_id,
        mpc_node_id=request.mpc_node_id,
        private_key_share=_stored_share(request, sealing_key),
        public_key=request.public_key,
        threshold=request.threshold,
        total_shares=request.total_shares,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "mpc_node_id"],
        set_={
            "private_key_share": stmt.excluded.private_key_share,
            "public_key": stmt.excluded.public_key,
            "threshold": stmt.excluded.threshold,
            "total_shares": stmt.excluded.total_shares,
            "updated_at": now,
        },
    )
    db.execute(stmt)
    db.commit()
    logger.info("Upserted keyshare for user %s on node %s", request.user_id, request.mpc_node_id)
    return get_keyshare(db, request.user_id, request.mpc_node_id)


def create_user_keyshares_batch(
    db: Session,
    user_id: UUID,
    shares: Iterable[Tuple[int, str, str]],
    sealing_key: Optional[bytes] = None,
) -> List[MpcKeyshare]:
    """
    Store one share per node for a freshly generated key, all or nothing.
    ``shares`` holds ``(mpc_node_id, private_key_share, public_key)`` tuples.
    """
    _require_user(db, user_id)
    requests = [
        CreateKeyshareRequest(
            user_id=user_id,
            mpc_node_id=mpc_node_id,
            private_key_share=private_key_share,
            public_key=public_key,
            threshold=DEFAULT_THRESHOLD,
            total_shares=DEFAULT_TOTAL_SHARES,
        )
        for mpc_node_id, private_key_share, public_key in shares
    ]
    created = [
        MpcKeyshare(
            user_id=request.user_id,
            mpc_node_id=request.mpc_node_id,
            private_key_share=_stored_share(request, sealing_key),
            public_key=request.public_key,
            threshold=request.threshold,
            total_shares=request.total_shares,
        )
        for request in requests
    ]
    db.add_all(created)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConstraintViolation(f"Duplicate node in keyshare batch for user {user_id}") from exc
    for keyshare in created:
        db.refresh(keyshare)
    logger.info("Stored %d keyshares for user %s", len(created), user_id)
    return created


def get_keyshare(db: Session, user_id: UUID, mpc_node_id: int) -> MpcKeyshare:
    keyshare = db.execute(
        select(MpcKeyshare)
        .where(MpcKeyshare.user_id == user_id, MpcKeyshare.mpc_node_id == mpc_node_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if keyshare is None:
        raise NotFound("Keyshare", (user_id, mpc_node_id))
    return keyshare


def get_user_keyshares(db: Session, user_id: UUID) -> List[MpcKeyshare]:
    stmt = select(MpcKeyshare).where(MpcKeyshare.user_id == user_id).order_by(MpcKeyshare.mpc_node_id)
    return list(db.execute(stmt).scalars())


def get_node_keyshares(db: Session, mpc_node_id: int) -> List[MpcKeyshare]:
    _check_node_id(mpc_node_id)
    stmt = (
        select(MpcKeyshare)
        .where(MpcKeyshare.mpc_node_id == mpc_node_id)
        .order_by(MpcKeyshare.created_at, MpcKeyshare.id)
    )
    return list(db.execute(stmt).scalars())


def update_keyshare(
    db: Session,
    user_id: UUID,
    mpc_node_id: int,
    new_private_key_share: str,
    sealing_key: Optional[bytes] = None,
) -> MpcKeyshare:
    """Replace the share payload after a key refresh."""
    keyshare = _find(db, user_id, mpc_node_id)
    if keyshare is None:
        raise NotFound("Keyshare", (user_id, mpc_node_id))
    if sealing_key is not None:
        new_private_key_share = crypto.seal_share(
            sealing_key, new_private_key_share, _binding(user_id, mpc_node_id)
        )
    keyshare.private_key_share = new_private_key_share
    db.commit()
    db.refresh(keyshare)
    return keyshare


def has_sufficient_keyshares(db: Session, user_id: UUID, required_threshold: Optional[int] = None) -> bool:
    threshold = DEFAULT_THRESHOLD if required_threshold is None else required_threshold
    count = db.scalar(
        select(func.count()).select_from(MpcKeyshare).where(MpcKeyshare.user_id == user_id)
    )
    return (count or 0) >= threshold


def get_keyshare_stats(db: Session) -> KeyshareStats:
    total, users, nodes = db.execute(
        select(
            func.count(MpcKeyshare.id),
            func.count(distinct(MpcKeyshare.user_id)),
            func.count(distinct(MpcKeyshare.mpc_node_id)),
        )
    ).one()
    return KeyshareStats(total_keyshares=total, unique_users=users, active_nodes=nodes)
