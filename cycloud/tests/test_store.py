"""Tests for the transactional Store."""

import pytest
from sqlalchemy import text

from cycloud.market_api.database import SchemaDriftError, create_db_engine, init_schema
from cycloud.market_api.errors import (
    AuthInvalid,
    BadRequest,
    BidBelowFloor,
    BidNotCompetitive,
    Internal,
    InsufficientCredits,
    NotFound,
    PreconditionFailed,
    ResourceNotBiddable,
)
from cycloud.market_api.models import BidStatus


def test_register_then_authenticate(store):
    """First login registers the user with an empty wallet, later logins authenticate."""
    uid, is_new = store.register_or_authenticate("alice", "pw")
    assert is_new
    assert store.sum_credits(uid) == 0.0

    again, is_new = store.register_or_authenticate("alice", "pw")
    assert again == uid
    assert not is_new

    with pytest.raises(AuthInvalid):
        store.register_or_authenticate("alice", "wrong")


def test_session_tokens_resolve_until_revoked(store, make_user):
    uid = make_user("alice")
    store.issue_session_token(uid, "token-1")
    store.issue_session_token(uid, "token-2")
    assert store.resolve_token("token-1") == uid

    assert store.revoke_tokens_of_user(uid) == 2
    with pytest.raises(AuthInvalid):
        store.resolve_token("token-2")


def test_new_resources_start_unavailable(store, make_user, make_resource):
    owner = make_user("loaner")
    rid = make_resource(owner, available=False)
    resource = store.get_resource(rid)
    assert not resource.available
    assert not resource.computing
    assert store.list_owned_resources(owner)[0].rid == rid


def test_insert_bid_admits_pending_bid(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    rid = make_resource(owner)

    bid = store.insert_bid(renter, rid, 5.0, 3)
    assert bid.status == BidStatus.PENDING.value
    assert store.escrow_commitment(renter) == 15.0
    assert store.user_has_bid_on(renter, rid)


def test_insert_bid_refuses_unbiddable_resources(store, make_user, make_resource):
    owner = make_user("loaner", credits=100)
    renter = make_user("renter", credits=100)
    offline = make_resource(owner, available=False)
    online = make_resource(owner)

    with pytest.raises(NotFound):
        store.insert_bid(renter, 999, 5.0, 1)
    with pytest.raises(ResourceNotBiddable, match="not available"):
        store.insert_bid(renter, offline, 5.0, 1)
    with pytest.raises(ResourceNotBiddable, match="own resource"):
        store.insert_bid(owner, online, 5.0, 1)


def test_insufficient_credits_reports_both_amounts(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=10)
    rid = make_resource(owner)

    with pytest.raises(InsufficientCredits) as excinfo:
        store.insert_bid(renter, rid, 6.5, 2)
    assert excinfo.value.message == (
        "insufficient credits to place bid, only 10.00 credits available "
        "and your total bid amount is 13.00"
    )
    assert excinfo.value.status_code == 402


def test_pending_bids_count_against_credits(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=20)
    first = make_resource(owner)
    second = make_resource(owner)

    store.insert_bid(renter, first, 5.0, 3)
    with pytest.raises(InsufficientCredits):
        store.insert_bid(renter, second, 3.0, 2)
    store.insert_bid(renter, second, 2.5, 2)
    assert store.escrow_commitment(renter) == 20.0


def test_bid_must_exceed_cost_per_minute(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    rid = make_resource(owner, cost_per_minute=5.0)

    with pytest.raises(BidBelowFloor):
        store.insert_bid(renter, rid, 5.0, 1)
    with pytest.raises(BidBelowFloor):
        store.insert_bid(renter, rid, 4.0, 1)
    assert store.insert_bid(renter, rid, 5.5, 1).amount == 5.5


def test_ties_are_broken_by_duration_and_equal_bids_refused(store, make_user, make_resource):
    owner = make_user("loaner")
    renter_a = make_user("renter-a", credits=100)
    renter_b = make_user("renter-b", credits=100)
    renter_c = make_user("renter-c", credits=100)
    rid = make_resource(owner)

    store.insert_bid(renter_a, rid, 5.0, 3)
    store.insert_bid(renter_b, rid, 5.0, 4)
    with pytest.raises(BidNotCompetitive, match="existing bid is better or equal"):
        store.insert_bid(renter_c, rid, 5.0, 4)
    with pytest.raises(BidNotCompetitive):
        store.insert_bid(renter_c, rid, 4.5, 10)


def test_pick_max_bid_accepts_one_and_rejects_the_rest(store, make_user, make_resource):
    owner = make_user("loaner")
    renters = [make_user(f"renter-{i}", credits=100) for i in range(3)]
    rid = make_resource(owner)

    bids = [store.insert_bid(uid, rid, 2.0 + i, 2) for i, uid in enumerate(renters)]
    winner = store.pick_max_bid(rid)

    assert winner.bid == bids[-1].bid
    assert winner.status == BidStatus.ACCEPTED.value
    assert winner.computing
    assert store.get_resource(rid).computing
    for bid in bids[:-1]:
        assert store.get_bid(bid.bid).status == BidStatus.REJECTED.value
    assert [b.bid for b, _ in store.list_computing_bids()] == [winner.bid]


def test_mark_bid_outcomes(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    first = make_resource(owner)
    second = make_resource(owner)
    accepted = store.insert_bid(renter, first, 5.0, 3)
    rejected = store.insert_bid(renter, second, 2.0, 3)

    assert store.mark_bid_accepted(accepted.bid).computing
    assert store.get_resource(first).computing
    assert store.mark_bid_rejected(rejected.bid)
    # Decided bids keep their outcome
    assert not store.mark_bid_rejected(accepted.bid)
    assert store.get_bid(accepted.bid).status == BidStatus.ACCEPTED.value
    assert store.escrow_commitment(renter) == 15.0


def test_pick_max_bid_without_bids(store, make_user, make_resource):
    owner = make_user("loaner")
    rid = make_resource(owner)
    assert store.pick_max_bid(rid) is None
    assert not store.get_resource(rid).computing


def test_computing_resource_refuses_bids_and_flips(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    other = make_user("other", credits=100)
    rid = make_resource(owner)
    store.insert_bid(renter, rid, 2.0, 2)
    store.pick_max_bid(rid)

    with pytest.raises(ResourceNotBiddable, match="computing"):
        store.insert_bid(other, rid, 9.0, 1)
    with pytest.raises(PreconditionFailed, match="computing"):
        store.flip_availability(rid)
    assert store.pick_max_bid(rid) is None


def test_settle_moves_credits_and_frees_the_resource(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=1000)
    rid = make_resource(owner)
    winner = store.insert_bid(renter, rid, 5.0, 3)
    store.pick_max_bid(rid)

    store.settle(rid, winner.bid, owner, renter, 15.0)

    assert store.sum_credits(renter) == 985.0
    assert store.sum_credits(owner) == 15.0
    assert store.sum_credits(renter) + store.sum_credits(owner) == 1000.0
    assert not store.get_resource(rid).computing
    assert not store.get_bid(winner.bid).computing
    assert store.escrow_commitment(renter) == 0.0


def test_settle_refuses_bids_that_are_not_running(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    rid = make_resource(owner)
    bid = store.insert_bid(renter, rid, 5.0, 3)

    with pytest.raises(Internal):
        store.settle(rid, bid.bid, owner, renter, 15.0)
    assert store.sum_credits(renter) == 100.0


def test_turning_a_resource_off_rejects_pending_bids(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    rid = make_resource(owner)
    bid = store.insert_bid(renter, rid, 5.0, 3)

    assert store.flip_availability(rid) is False
    assert store.get_bid(bid.bid).status == BidStatus.REJECTED.value
    assert store.escrow_commitment(renter) == 0.0


def test_delete_resource_is_idempotent(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    rid = make_resource(owner)
    store.insert_bid(renter, rid, 5.0, 3)

    with pytest.raises(PreconditionFailed, match="still available"):
        store.delete_resource(rid)

    store.flip_availability(rid)
    store.delete_resource(rid)
    assert store.list_user_bids(renter) == []
    with pytest.raises(NotFound):
        store.delete_resource(rid)


def test_delete_bid(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    rid = make_resource(owner)
    bid = store.insert_bid(renter, rid, 5.0, 3)
    running = store.insert_bid(make_user("winner", credits=100), rid, 6.0, 3)
    store.pick_max_bid(rid)

    assert store.delete_bid(bid.bid).bid == bid.bid
    with pytest.raises(NotFound):
        store.delete_bid(bid.bid)
    with pytest.raises(PreconditionFailed):
        store.delete_bid(running.bid)


def test_page_available_resources_for_others(store, make_user, make_resource):
    owner = make_user("loaner")
    viewer = make_user("viewer")
    rids = [make_resource(owner) for _ in range(25)]
    own = make_resource(viewer)
    hidden = make_resource(owner, available=False)

    following = store.page_available_resources_for_others(viewer, 0, "next")
    assert [r.rid for r in following] == rids[:20]

    preceding = store.page_available_resources_for_others(viewer, rids[-1], "prev")
    assert [r.rid for r in preceding] == rids[4:24]

    everything = store.page_available_resources_for_others(viewer, rids[19], "next")
    assert own not in [r.rid for r in everything]
    assert hidden not in [r.rid for r in everything]

    with pytest.raises(BadRequest):
        store.page_available_resources_for_others(viewer, 0, "sideways")


def test_user_info_aggregates(store, make_user, make_resource):
    owner = make_user("loaner")
    renter = make_user("renter", credits=100)
    running_rid = make_resource(owner)
    pending_rid = make_resource(owner)
    make_resource(owner, available=False)

    store.insert_bid(renter, running_rid, 5.0, 3)
    store.pick_max_bid(running_rid)
    store.insert_bid(renter, pending_rid, 2.0, 4)

    assert store.user_info(owner) == {
        "credits": 0.0,
        "resources": 3,
        "active_resources": 1,
        "pending_bids": 0.0,
        "active_loans": 0,
    }
    info = store.user_info(renter)
    assert info["pending_bids"] == 8.0
    assert info["active_loans"] == 1


def test_schema_drift_refuses_to_boot(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'drifted.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE resources (rid INTEGER PRIMARY KEY, owner TEXT)"))
        conn.execute(text("INSERT INTO resources (rid, owner) VALUES (1, 'someone')"))

    with pytest.raises(SchemaDriftError, match="resources"):
        init_schema(engine)

    # Existing rows are left alone
    with engine.begin() as conn:
        assert conn.execute(text("SELECT count(*) FROM resources")).scalar() == 1
    engine.dispose()


def test_init_schema_keeps_existing_data(engine, store, make_user):
    uid = make_user("alice", credits=42)
    init_schema(engine)
    assert store.sum_credits(uid) == 42.0
