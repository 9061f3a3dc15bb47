import datetime
import threading

import pytest

from huddle.controllers import groups_controller as gc
from huddle.controllers import invites_controller as ic
from huddle.controllers import messages_controller as mc
from huddle.core.errors import (
    CapacityExceeded,
    Conflict,
    CooldownActive,
    Forbidden,
    InviteInvalid,
    NotFound,
    ValidationError,
)
from huddle.db import database, membership, models


def _state(db, group_id):
    db.expire_all()
    group = db.get(models.Group, group_id)
    return group, set(membership.member_ids(db, group_id)), set(membership.banned_ids(db, group_id))


def _assert_invariants(db, group_id):
    group, members, banned = _state(db, group_id)
    assert group.capacity == 0 or len(members) <= group.capacity
    assert not (members & banned)
    assert group.owner_id in members
    assert group.member_count == len(members)


def test_create_group_includes_owner_and_dedupes_initial(db, make_user):
    owner, a, b = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "  book club ", "open", 0, [a.id, a.id, owner.id, b.id])
    assert group.name == "book club"
    assert set(membership.member_ids(db, group.id)) == {owner.id, a.id, b.id}
    assert membership.banned_ids(db, group.id) == []
    _assert_invariants(db, group.id)


@pytest.mark.parametrize("capacity", [-1, 1])
def test_create_group_rejects_bad_capacity(db, make_user, capacity):
    owner = make_user()
    with pytest.raises(ValidationError):
        gc.create_group(db, owner.id, "g", "open", capacity)


def test_create_group_rejects_unknown_kind_and_empty_name(db, make_user):
    owner = make_user()
    with pytest.raises(ValidationError):
        gc.create_group(db, owner.id, "g", "secret")
    with pytest.raises(ValidationError):
        gc.create_group(db, owner.id, "   ", "open")


def test_create_group_rejects_missing_initial_member(db, make_user):
    owner = make_user()
    with pytest.raises(ValidationError) as exc:
        gc.create_group(db, owner.id, "g", "open", 0, [9999])
    assert "9999" in exc.value.message


def test_create_group_initial_members_must_fit_capacity(db, make_user):
    owner, a, b = make_user(), make_user(), make_user()
    with pytest.raises(ValidationError):
        gc.create_group(db, owner.id, "g", "private", 2, [a.id, b.id])


def test_join_open_is_idempotent(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "g", "open")
    assert gc.join_open(db, group.id, u.id) == {"message": "Joined"}
    assert gc.join_open(db, group.id, u.id) == {"message": "Already a member"}
    assert membership.member_ids(db, group.id).count(u.id) == 1
    _assert_invariants(db, group.id)


def test_join_open_rejects_private_and_missing(db, make_user):
    owner, u = make_user(), make_user()
    private = gc.create_group(db, owner.id, "p", "private")
    with pytest.raises(NotFound):
        gc.join_open(db, private.id, u.id)
    with pytest.raises(NotFound):
        gc.join_open(db, 4242, u.id)


def test_join_open_respects_capacity(db, make_user):
    owner, a, b = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "g", "open", 2)
    gc.join_open(db, group.id, a.id)
    with pytest.raises(CapacityExceeded):
        gc.join_open(db, group.id, b.id)
    _assert_invariants(db, group.id)


def test_list_open_and_member_groups(db, make_user):
    owner, u = make_user(), make_user()
    g_open = gc.create_group(db, owner.id, "o", "open")
    g_private = gc.create_group(db, owner.id, "p", "private", 0, [u.id])
    assert [g.id for g in gc.list_open_groups(db)] == [g_open.id]
    assert [g.id for g in gc.list_member_groups(db, u.id)] == [g_private.id]
    assert {g.id for g in gc.list_member_groups(db, owner.id)} == {g_open.id, g_private.id}


def test_private_capacity_two_scenario(db, make_user):
    owner, u1, u2 = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "duo", "private", 2)

    r1 = gc.request_join_private(db, group.id, u1.id)["request_id"]
    r2 = gc.request_join_private(db, group.id, u2.id)["request_id"]
    assert gc.decide_request(db, r1, owner.id, "approve")["status"] == "approved"
    with pytest.raises(CapacityExceeded):
        gc.decide_request(db, r2, owner.id, "approve")

    _, members, _ = _state(db, group.id)
    assert members == {owner.id, u1.id}
    # the losing request is still pending for later
    assert [jr.id for jr in gc.list_pending_requests(db, group.id, owner.id)] == [r2]
    _assert_invariants(db, group.id)


def test_request_join_is_idempotent_while_pending(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private")
    first = gc.request_join_private(db, group.id, u.id)
    again = gc.request_join_private(db, group.id, u.id)
    assert first["message"] == "Join request submitted"
    assert again == {"message": "Join request already submitted", "request_id": first["request_id"]}


def test_request_join_for_member_is_noop(db, make_user):
    owner = make_user()
    group = gc.create_group(db, owner.id, "p", "private")
    assert gc.request_join_private(db, group.id, owner.id) == {"message": "Already a member"}


def test_declined_request_can_be_reopened(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private")
    rid = gc.request_join_private(db, group.id, u.id)["request_id"]
    gc.decide_request(db, rid, owner.id, "decline")
    reopened = gc.request_join_private(db, group.id, u.id)
    assert reopened == {"message": "Join request submitted", "request_id": rid}
    db.expire_all()
    assert db.get(models.JoinRequest, rid).status == "pending"


def test_decide_request_checks(db, make_user):
    owner, u, other = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private")
    rid = gc.request_join_private(db, group.id, u.id)["request_id"]

    with pytest.raises(ValidationError):
        gc.decide_request(db, rid, owner.id, "maybe")
    with pytest.raises(NotFound):
        gc.decide_request(db, 777, owner.id, "approve")
    with pytest.raises(Forbidden):
        gc.decide_request(db, rid, other.id, "approve")
    gc.decide_request(db, rid, owner.id, "decline")
    with pytest.raises(Conflict) as exc:
        gc.decide_request(db, rid, owner.id, "approve")
    assert exc.value.extra["status"] == "declined"


def test_list_pending_requests_owner_only_newest_first(db, make_user):
    owner, a, b = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private")
    ra = gc.request_join_private(db, group.id, a.id)["request_id"]
    rb = gc.request_join_private(db, group.id, b.id)["request_id"]
    pending = gc.list_pending_requests(db, group.id, owner.id)
    assert [jr.id for jr in pending] == [rb, ra]
    assert pending[0].user.email == b.email
    with pytest.raises(Forbidden):
        gc.list_pending_requests(db, group.id, a.id)


def test_concurrent_approvals_have_one_winner(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private")
    rid = gc.request_join_private(db, group.id, u.id)["request_id"]

    barrier = threading.Barrier(2)
    outcomes = []

    def approve():
        session = database.SessionLocal()
        try:
            barrier.wait()
            outcomes.append(gc.decide_request(session, rid, owner.id, "approve")["status"])
        except Conflict:
            outcomes.append("conflict")
        finally:
            session.close()

    threads = [threading.Thread(target=approve) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["approved", "conflict"]
    _, members, _ = _state(db, group.id)
    assert members == {owner.id, u.id}
    _assert_invariants(db, group.id)


def test_cooldown_after_leaving_private_group(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private", 0, [u.id])
    gc.leave(db, group.id, u.id)
    left_at = db.query(models.LeaveHistory).filter_by(group_id=group.id, user_id=u.id).one().left_at

    base = left_at.replace(tzinfo=datetime.timezone.utc) if left_at.tzinfo is None else left_at
    with pytest.raises(CooldownActive) as exc:
        gc.request_join_private(db, group.id, u.id, now=base + datetime.timedelta(hours=1))
    assert exc.value.remaining_hours == 47
    with pytest.raises(CooldownActive) as exc:
        gc.request_join_private(db, group.id, u.id, now=base + datetime.timedelta(hours=47, minutes=30))
    assert exc.value.remaining_hours == 1

    out = gc.request_join_private(db, group.id, u.id, now=base + datetime.timedelta(hours=48))
    assert out["message"] == "Join request submitted"


def test_leave_open_group_has_no_cooldown(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open")
    gc.join_open(db, group.id, u.id)
    assert gc.leave(db, group.id, u.id) == {"message": "Left group"}
    assert db.query(models.LeaveHistory).count() == 0
    assert gc.join_open(db, group.id, u.id) == {"message": "Joined"}


def test_leave_errors(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open")
    with pytest.raises(ValidationError):
        gc.leave(db, group.id, u.id)
    with pytest.raises(Forbidden) as exc:
        gc.leave(db, group.id, owner.id)
    assert "transfer ownership" in exc.value.message
    with pytest.raises(NotFound):
        gc.leave(db, 999, u.id)


def test_ban_then_request_then_approve(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open")
    gc.join_open(db, group.id, u.id)

    assert gc.banish(db, group.id, owner.id, u.id) == {"message": "User banished"}
    _, members, banned = _state(db, group.id)
    assert u.id not in members and u.id in banned

    with pytest.raises(Forbidden) as exc:
        gc.join_open(db, group.id, u.id)
    assert "pending" in exc.value.message
    pending = gc.list_pending_requests(db, group.id, owner.id)
    assert [jr.user_id for jr in pending] == [u.id]

    gc.decide_request(db, pending[0].id, owner.id, "approve")
    _, members, banned = _state(db, group.id)
    assert u.id in members and u.id not in banned
    _assert_invariants(db, group.id)


def test_banned_user_requesting_private_join_is_requeued(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private", 0, [u.id])
    gc.banish(db, group.id, owner.id, u.id)
    with pytest.raises(Forbidden):
        gc.request_join_private(db, group.id, u.id)
    with pytest.raises(Forbidden):
        gc.request_join_private(db, group.id, u.id)
    assert db.query(models.JoinRequest).filter_by(group_id=group.id, user_id=u.id).count() == 1


def test_banish_rules(db, make_user):
    owner, u, stranger = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open", 0, [u.id])
    with pytest.raises(Forbidden):
        gc.banish(db, group.id, u.id, owner.id)
    with pytest.raises(Forbidden):
        gc.banish(db, group.id, owner.id, owner.id)
    with pytest.raises(ValidationError):
        gc.banish(db, group.id, owner.id, stranger.id)
    gc.banish(db, group.id, owner.id, u.id)
    assert gc.banish(db, group.id, owner.id, u.id) == {"message": "User is already banned"}
    _assert_invariants(db, group.id)


def test_banish_leaves_pending_request(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open", 0, [u.id])
    gc.banish(db, group.id, owner.id, u.id)
    with pytest.raises(Forbidden):
        gc.join_open(db, group.id, u.id)
    gc.banish(db, group.id, owner.id, u.id)
    assert len(gc.list_pending_requests(db, group.id, owner.id)) == 1


def test_transfer_ownership(db, make_user):
    owner, u, stranger = make_user(), make_user(), make_user()
    group = gc.create_group(db, owner.id, "g", "open", 0, [u.id])
    with pytest.raises(ValidationError):
        gc.transfer_ownership(db, group.id, owner.id, stranger.id)
    with pytest.raises(Forbidden):
        gc.transfer_ownership(db, group.id, u.id, u.id)

    gc.transfer_ownership(db, group.id, owner.id, u.id)
    group, members, _ = _state(db, group.id)
    assert group.owner_id == u.id
    assert owner.id in members
    # the previous owner may now leave
    assert gc.leave(db, group.id, owner.id) == {"message": "Left group"}
    _assert_invariants(db, group.id)


def test_delete_group_only_when_owner_alone(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "g", "open", 0, [u.id])
    gid = group.id
    with pytest.raises(Forbidden):
        gc.delete_group(db, gid, u.id)
    with pytest.raises(ValidationError):
        gc.delete_group(db, gid, owner.id)

    gc.leave(db, gid, u.id)
    assert gc.delete_group(db, gid, owner.id) == {"message": "Group deleted"}
    db.expire_all()
    assert gc.get_group(db, gid) is None
    assert membership.member_ids(db, gid) == []
    with pytest.raises(NotFound):
        gc.delete_group(db, gid, owner.id)


def test_delete_group_keeps_history_rows(db, make_user):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "p", "private", 0, [u.id])
    gid = group.id
    gc.leave(db, gid, u.id)
    gc.delete_group(db, gid, owner.id)
    assert db.query(models.LeaveHistory).filter_by(group_id=gid).count() == 1


def _run_concurrently(fn, args_list):
    barrier = threading.Barrier(len(args_list))
    outcomes = []

    def worker(*args):
        session = database.SessionLocal()
        try:
            barrier.wait()
            outcomes.append(fn(session, *args))
        except (CapacityExceeded, InviteInvalid) as e:
            outcomes.append(type(e).__name__)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def test_concurrent_joins_never_exceed_capacity(db, make_user):
    owner = make_user()
    joiners = [make_user() for _ in range(6)]
    group = gc.create_group(db, owner.id, "last seat", "open", 2)
    gid = group.id

    outcomes = _run_concurrently(
        lambda session, uid: gc.join_open(session, gid, uid)["message"],
        [(u.id,) for u in joiners],
    )

    assert sorted(outcomes) == ["CapacityExceeded"] * 5 + ["Joined"]
    group, members, _ = _state(db, gid)
    assert len(members) == 2 and group.member_count == 2
    _assert_invariants(db, gid)


def test_concurrent_redemptions_of_single_use_invite(db, make_user):
    owner = make_user()
    guests = [make_user() for _ in range(5)]
    group = gc.create_group(db, owner.id, "vip", "private")
    gid = group.id
    _, raw = ic.create_invite(db, gid, owner.id, max_uses=1)

    outcomes = _run_concurrently(
        lambda session, uid: ic.redeem_invite(session, uid, raw),
        [(u.id,) for u in guests],
    )

    assert outcomes.count(gid) == 1
    assert outcomes.count("InviteInvalid") == 4
    _, members, _ = _state(db, gid)
    assert len(members) == 2
    _assert_invariants(db, gid)


def test_deleted_group_history_does_not_reach_a_new_group(db, make_user):
    old_owner, new_owner, requester, holder = make_user(), make_user(), make_user(), make_user()
    old = gc.create_group(db, old_owner.id, "old", "private")
    old_id = old.id
    mc.create_group_message(db, old_id, old_owner.id, "from the old group")
    _, raw = ic.create_invite(db, old_id, old_owner.id, max_uses=5)
    gc.request_join_private(db, old_id, requester.id)
    gc.delete_group(db, old_id, old_owner.id)

    new = gc.create_group(db, new_owner.id, "new", "private")
    assert new.id != old_id
    assert mc.list_group_messages(db, new.id, new_owner.id) == []
    assert gc.list_pending_requests(db, new.id, new_owner.id) == []
    with pytest.raises(InviteInvalid):
        ic.redeem_invite(db, holder.id, raw)
    assert membership.member_ids(db, new.id) == [new_owner.id]

    db.expire_all()
    assert db.query(models.Invite).filter_by(group_id=old_id).one().disabled


def test_banish_of_member_who_just_left_is_rejected(db, make_user, monkeypatch):
    owner, u = make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open", 0, [u.id])
    gid = group.id
    gc.leave(db, gid, u.id)

    # membership read before the target's leave landed
    with monkeypatch.context() as m:
        m.setattr(membership, "is_member", lambda *args: True)
        with pytest.raises(ValidationError):
            gc.banish(db, gid, owner.id, u.id)

    assert not membership.is_banned(db, gid, u.id)
    _assert_invariants(db, gid)


def test_ban_member_requires_current_membership(db, make_user):
    owner, stranger = make_user(), make_user()
    group = gc.create_group(db, owner.id, "o", "open")
    with pytest.raises(ValidationError):
        membership.ban_member(db, group.id, stranger.id)
    db.rollback()
    assert membership.banned_ids(db, group.id) == []
