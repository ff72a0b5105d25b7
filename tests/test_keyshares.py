import uuid

import pytest
from pydantic import ValidationError

from custody_store import crypto, keyshares, users
from custody_store.errors import ConstraintViolation, InvalidInput, NotFound
from custody_store.schemas import CreateKeyshareRequest, CreateUserRequest


def _request(user_id, node=1, share="share-a", **kwargs):
    return CreateKeyshareRequest(
        user_id=user_id, mpc_node_id=node, private_key_share=share, public_key="PubKey", **kwargs
    )


def test_create_keyshare_uses_default_parameters(db, user):
    keyshare = keyshares.create_keyshare(db, _request(user.id))
    assert keyshare.user_id == user.id
    assert keyshare.mpc_node_id == 1
    assert keyshare.private_key_share == "share-a"
    assert keyshare.threshold == 2
    assert keyshare.total_shares == 3


def test_strict_insert_rejects_duplicate_user_node(db, user):
    keyshares.create_keyshare(db, _request(user.id, node=1))
    with pytest.raises(ConstraintViolation):
        keyshares.create_keyshare(db, _request(user.id, node=1, share="share-b"))
    assert keyshares.get_keyshare(db, user.id, 1).private_key_share == "share-a"


def test_create_keyshare_for_unknown_user(db):
    with pytest.raises(NotFound):
        keyshares.create_keyshare(db, _request(uuid.uuid4()))


@pytest.mark.parametrize("kwargs", [{"node": 0}, {"node": 6}, {"threshold": 4, "total_shares": 3}])
def test_request_validation(kwargs):
    with pytest.raises(ValidationError):
        _request(uuid.uuid4(), **kwargs)


def test_upsert_keyshare_replaces_existing_row(db, user):
    first = keyshares.upsert_keyshare(db, _request(user.id, node=2))
    second = keyshares.upsert_keyshare(db, _request(user.id, node=2, share="refreshed", threshold=3))
    assert second.id == first.id
    assert second.private_key_share == "refreshed"
    assert second.threshold == 3
    assert len(keyshares.get_user_keyshares(db, user.id)) == 1


def test_sealed_keyshare_roundtrip(db, user):
    key = crypto.generate_sealing_key()
    keyshare = keyshares.create_keyshare(db, _request(user.id, share="secret-share"), sealing_key=key)
    assert keyshare.private_key_share != "secret-share"
    assert keyshares.open_keyshare(keyshare, key) == "secret-share"

    refreshed = keyshares.update_keyshare(db, user.id, 1, "next-share", sealing_key=key)
    assert keyshares.open_keyshare(refreshed, key) == "next-share"


def test_update_keyshare_missing(db, user):
    with pytest.raises(NotFound):
        keyshares.update_keyshare(db, user.id, 1, "x")


def test_batch_create_is_all_or_nothing(db, user):
    created = keyshares.create_user_keyshares_batch(
        db, user.id, [(1, "s1", "pk"), (2, "s2", "pk"), (3, "s3", "pk")]
    )
    assert [k.mpc_node_id for k in created] == [1, 2, 3]

    other = users.create_user(db, CreateUserRequest(email="b@x.com", password="password-123"))
    with pytest.raises(ConstraintViolation):
        keyshares.create_user_keyshares_batch(db, other.id, [(1, "s1", "pk"), (1, "dup", "pk")])
    assert keyshares.get_user_keyshares(db, other.id) == []


def test_lookups_by_user_and_node(db, user):
    other = users.create_user(db, CreateUserRequest(email="b@x.com", password="password-123"))
    keyshares.create_keyshare(db, _request(user.id, node=3))
    keyshares.create_keyshare(db, _request(user.id, node=1))
    keyshares.create_keyshare(db, _request(other.id, node=1))

    assert [k.mpc_node_id for k in keyshares.get_user_keyshares(db, user.id)] == [1, 3]
    assert {k.user_id for k in keyshares.get_node_keyshares(db, 1)} == {user.id, other.id}
    with pytest.raises(NotFound):
        keyshares.get_keyshare(db, other.id, 3)
    with pytest.raises(InvalidInput):
        keyshares.get_node_keyshares(db, 9)


def test_threshold_check_and_stats(db, user):
    assert keyshares.has_sufficient_keyshares(db, user.id) is False
    keyshares.create_keyshare(db, _request(user.id, node=1))
    keyshares.create_keyshare(db, _request(user.id, node=2))
    assert keyshares.has_sufficient_keyshares(db, user.id) is True
    assert keyshares.has_sufficient_keyshares(db, user.id, required_threshold=3) is False

    stats = keyshares.get_keyshare_stats(db)
    assert stats.total_keyshares == 2
    assert stats.unique_users == 1
    assert stats.active_nodes == 2
