"""Conditional update primitives for group state.

Every mutation here is a single guarded statement (or a short sequence
under the group row lock) so concurrent requests touching the same group or
(group, user) pair cannot interleave a check with a write. None of these
functions commit; the caller owns the transaction and rolls back on error.
"""

from typing import Optional

from sqlalchemy import Integer, case, delete, insert, literal, or_, select, update
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.errors import CapacityExceeded, ValidationError
from .models import Group, Invite, JoinRequest, group_bans_table, group_members_table


_NO_SYNC = {"synchronize_session": False}


def _exec(db: Session, stmt):
    # ORM-level bulk statements; session state is refreshed by the caller's commit
    return db.execute(stmt, execution_options=_NO_SYNC)


def lock_group(db: Session, group_id: int) -> Optional[int]:
    """Take the group row lock (FOR UPDATE where supported). Returns the id or None."""
    return db.execute(select(Group.id).where(Group.id == group_id).with_for_update()).scalar()


def _pair_exists(db: Session, table, group_id: int, user_id: int) -> bool:
    row = db.execute(
        select(table.c.user_id).where(table.c.group_id == group_id, table.c.user_id == user_id)
    ).first()
    return row is not None


def _insert_pair_if_absent(db: Session, table, group_id: int, user_id: int) -> bool:
    absent = ~(
        select(table.c.user_id)
        .where(table.c.group_id == group_id, table.c.user_id == user_id)
        .exists()
    )
    res = db.execute(
        insert(table).from_select(
            ["group_id", "user_id"],
            select(literal(group_id, Integer), literal(user_id, Integer)).where(absent),
        )
    )
    return res.rowcount == 1


def is_member(db: Session, group_id: int, user_id: int) -> bool:
    return _pair_exists(db, group_members_table, group_id, user_id)


def is_banned(db: Session, group_id: int, user_id: int) -> bool:
    return _pair_exists(db, group_bans_table, group_id, user_id)


def member_ids(db: Session, group_id: int) -> list[int]:
    rows = db.execute(
        select(group_members_table.c.user_id)
        .where(group_members_table.c.group_id == group_id)
        .order_by(group_members_table.c.user_id)
    )
    return [r[0] for r in rows]


def banned_ids(db: Session, group_id: int) -> list[int]:
    rows = db.execute(
        select(group_bans_table.c.user_id)
        .where(group_bans_table.c.group_id == group_id)
        .order_by(group_bans_table.c.user_id)
    )
    return [r[0] for r in rows]


def add_member(db: Session, group_id: int, user_id: int) -> bool:
    """Add user_id to the group's members.

    Returns True when a membership row was created, False when the user was
    already a member. Raises CapacityExceeded when the group is full.
    """
    if is_member(db, group_id, user_id):
        return False
    res = _exec(
        db,
        update(Group)
        .where(Group.id == group_id, or_(Group.capacity == 0, Group.member_count < Group.capacity))
        .values(member_count=Group.member_count + 1)
    )
    if res.rowcount == 0:
        raise CapacityExceeded()
    if not _insert_pair_if_absent(db, group_members_table, group_id, user_id):
        # lost a race against an add of the same user
        _exec(db, update(Group).where(Group.id == group_id).values(member_count=Group.member_count - 1))
        return False
    return True


def remove_member(db: Session, group_id: int, user_id: int) -> bool:
    """Remove a non-owner member. Returns False if nothing was removed."""
    is_owner = (
        select(Group.id).where(Group.id == group_id, Group.owner_id == user_id).exists()
    )
    res = db.execute(
        delete(group_members_table).where(
            group_members_table.c.group_id == group_id,
            group_members_table.c.user_id == user_id,
            ~is_owner,
        )
    )
    if res.rowcount == 0:
        return False
    _exec(db, update(Group).where(Group.id == group_id).values(member_count=Group.member_count - 1))
    return True


def ban_member(db: Session, group_id: int, user_id: int) -> bool:
    """Move a current member to the ban list. False if already banned.

    Raises ValidationError when user_id is no longer a member.
    """
    lock_group(db, group_id)
    if not remove_member(db, group_id, user_id):
        raise ValidationError("User is not a current member")
    return _insert_pair_if_absent(db, group_bans_table, group_id, user_id)


def unban(db: Session, group_id: int, user_id: int) -> bool:
    res = db.execute(
        delete(group_bans_table).where(
            group_bans_table.c.group_id == group_id,
            group_bans_table.c.user_id == user_id,
        )
    )
    return res.rowcount > 0


def transfer_owner(db: Session, group_id: int, from_user_id: int, to_user_id: int) -> bool:
    """Reassign the owner only if from_user_id still owns it and to_user_id is a member."""
    target_is_member = (
        select(group_members_table.c.user_id)
        .where(group_members_table.c.group_id == group_id, group_members_table.c.user_id == to_user_id)
        .exists()
    )
    res = _exec(
        db,
        update(Group)
        .where(Group.id == group_id, Group.owner_id == from_user_id, target_is_member)
        .values(owner_id=to_user_id)
    )
    return res.rowcount == 1


def drop_group(db: Session, group_id: int, owner_id: int) -> bool:
    """Delete the group only while the owner is its sole member."""
    lock_group(db, group_id)
    res = _exec(
        db,
        delete(Group).where(Group.id == group_id, Group.owner_id == owner_id, Group.member_count <= 1)
    )
    if res.rowcount == 0:
        return False
    db.execute(delete(group_members_table).where(group_members_table.c.group_id == group_id))
    db.execute(delete(group_bans_table).where(group_bans_table.c.group_id == group_id))
    _exec(db, update(Invite).where(Invite.group_id == group_id).values(disabled=True))
    return True


def set_request_status(db: Session, request_id: int, from_status: str, to_status: str) -> bool:
    res = _exec(
        db,
        update(JoinRequest)
        .where(JoinRequest.id == request_id, JoinRequest.status == from_status)
        .values(status=to_status, updated_at=utcnow())
    )
    return res.rowcount == 1


def upsert_pending_request(db: Session, group_id: int, user_id: int) -> int:
    """Create the (group, user) join request or reset it to pending. Returns its id."""
    now = utcnow()
    dialect = db.get_bind().dialect.name
    values = dict(group_id=group_id, user_id=user_id, status="pending", created_at=now, updated_at=now)
    if dialect in ("sqlite", "postgresql"):
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        stmt = dialect_insert(JoinRequest.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["group_id", "user_id"],
            set_={"status": "pending", "updated_at": now},
        )
        db.execute(stmt)
    else:
        res = _exec(
            db,
            update(JoinRequest)
            .where(JoinRequest.group_id == group_id, JoinRequest.user_id == user_id)
            .values(status="pending", updated_at=now)
        )
        if res.rowcount == 0:
            db.execute(insert(JoinRequest).values(**values))
    return db.execute(
        select(JoinRequest.id).where(JoinRequest.group_id == group_id, JoinRequest.user_id == user_id)
    ).scalar_one()


def consume_invite_use(db: Session, invite_id: int) -> bool:
    """Spend one use of a live invite; disables it when the last use goes."""
    res = _exec(
        db,
        update(Invite)
        .where(
            Invite.id == invite_id,
            Invite.disabled == False,  # noqa: E712
            Invite.uses < Invite.max_uses,
            Invite.expires_at > utcnow(),
        )
        .values(
            uses=Invite.uses + 1,
            disabled=case((Invite.uses + 1 >= Invite.max_uses, True), else_=False),
        )
    )
    return res.rowcount == 1
