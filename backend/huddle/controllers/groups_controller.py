"""Group membership lifecycle.

Open groups are joined directly; private groups through an owner-approved
join request or an invite (see invites_controller). Banned users who try to
join land in a pending request instead of being turned away for good, and
leaving a private group starts a 48 hour cooldown before a new request.

Every function takes the acting user id explicitly. State changes go through
the guarded primitives in db.membership and are committed here.
"""

import datetime
import logging
import math
from typing import Optional

from sqlalchemy.orm import Session

from ..core.clock import as_utc, utcnow
from ..core.errors import (
    CapacityExceeded,
    Conflict,
    CooldownActive,
    Forbidden,
    NotFound,
    ValidationError,
)
from ..db import membership, models
from . import users_controller

logger = logging.getLogger(__name__)

COOLDOWN = datetime.timedelta(hours=48)
GROUP_KINDS = ("open", "private")
DECISIONS = ("approve", "decline")


def get_group(db: Session, group_id: int) -> Optional[models.Group]:
    return db.query(models.Group).filter(models.Group.id == group_id).first()


def _load_group(db: Session, group_id: int, kind: Optional[str] = None) -> models.Group:
    group = get_group(db, group_id)
    if group is None:
        raise NotFound("Group not found")
    if kind is not None and group.kind != kind:
        raise NotFound(f"Group not found or not {kind}")
    return group


def _require_owner(group: models.Group, user_id: int, message: str = "Only owner") -> None:
    if group.owner_id != user_id:
        raise Forbidden(message)


def _capacity_ok(group: models.Group) -> bool:
    return group.capacity == 0 or group.member_count < group.capacity


def _ensure_not_banned(db: Session, group: models.Group, user_id: int) -> None:
    # a banned user always ends up with a pending request for the owner to review
    if not membership.is_banned(db, group.id, user_id):
        return
    request_id = membership.upsert_pending_request(db, group.id, user_id)
    db.commit()
    logger.info("group %s: banned user %s re-queued as request %s", group.id, user_id, request_id)
    raise Forbidden("You are banned. A join request is now pending for owner approval.")


def create_group(
    db: Session,
    owner_id: int,
    name: str,
    kind: str,
    capacity: int = 0,
    initial_member_ids: Optional[list[int]] = None,
) -> models.Group:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Group name cannot be empty")
    if kind not in GROUP_KINDS:
        raise ValidationError("Group type must be private or open")
    if capacity is None or capacity < 0 or capacity == 1:
        raise ValidationError("capacity must be 0 (unlimited) or at least 2")

    initial: list[int] = []
    for uid in initial_member_ids or []:
        if uid != owner_id and uid not in initial:
            initial.append(uid)
    missing = users_controller.missing_user_ids(db, initial)
    if missing:
        raise ValidationError(f"Invalid userId in initial_member_ids: {missing[0]}")
    if capacity != 0 and 1 + len(initial) > capacity:
        raise ValidationError("Too many initial members for this group capacity")

    group = models.Group(
        name=name,
        kind=kind,
        owner_id=owner_id,
        capacity=capacity,
        member_count=1 + len(initial),
    )
    db.add(group)
    db.flush()
    db.execute(
        models.group_members_table.insert(),
        [{"group_id": group.id, "user_id": uid} for uid in [owner_id, *initial]],
    )
    db.commit()
    db.refresh(group)
    logger.info("group %s created by %s (%s, capacity=%s)", group.id, owner_id, kind, capacity)
    return group


def list_open_groups(db: Session) -> list[models.Group]:
    return db.query(models.Group).filter(models.Group.kind == "open").order_by(models.Group.id.asc()).all()


def list_member_groups(db: Session, user_id: int) -> list[models.Group]:
    return (
        db.query(models.Group)
        .join(models.group_members_table, models.group_members_table.c.group_id == models.Group.id)
        .filter(models.group_members_table.c.user_id == user_id)
        .order_by(models.Group.id.asc())
        .all()
    )


def join_open(db: Session, group_id: int, user_id: int) -> dict:
    group = _load_group(db, group_id, kind="open")
    _ensure_not_banned(db, group, user_id)

    if membership.is_member(db, group.id, user_id):
        return {"message": "Already a member"}
    if not _capacity_ok(group):
        raise CapacityExceeded()

    try:
        added = membership.add_member(db, group.id, user_id)
        db.commit()
    except CapacityExceeded:
        db.rollback()
        raise
    if not added:
        return {"message": "Already a member"}
    logger.info("group %s: user %s joined", group.id, user_id)
    return {"message": "Joined"}


def request_join_private(db: Session, group_id: int, user_id: int, now: Optional[datetime.datetime] = None) -> dict:
    group = _load_group(db, group_id, kind="private")

    if membership.is_member(db, group.id, user_id):
        return {"message": "Already a member"}
    _ensure_not_banned(db, group, user_id)

    now = as_utc(now) if now else utcnow()
    last_leave = (
        db.query(models.LeaveHistory)
        .filter(models.LeaveHistory.group_id == group.id, models.LeaveHistory.user_id == user_id)
        .order_by(models.LeaveHistory.left_at.desc())
        .first()
    )
    if last_leave is not None:
        elapsed = now - as_utc(last_leave.left_at)
        if elapsed < COOLDOWN:
            remaining = (COOLDOWN - elapsed).total_seconds() / 3600
            raise CooldownActive(math.ceil(remaining))

    existing = (
        db.query(models.JoinRequest)
        .filter(models.JoinRequest.group_id == group.id, models.JoinRequest.user_id == user_id)
        .first()
    )
    if existing is not None and existing.status == "pending":
        return {"message": "Join request already submitted", "request_id": existing.id}

    request_id = membership.upsert_pending_request(db, group.id, user_id)
    db.commit()
    logger.info("group %s: user %s requested to join (request %s)", group.id, user_id, request_id)
    return {"message": "Join request submitted", "request_id": request_id}


def list_pending_requests(db: Session, group_id: int, caller_id: int) -> list[models.JoinRequest]:
    group = _load_group(db, group_id)
    _require_owner(group, caller_id)
    return (
        db.query(models.JoinRequest)
        .filter(models.JoinRequest.group_id == group.id, models.JoinRequest.status == "pending")
        .order_by(models.JoinRequest.created_at.desc(), models.JoinRequest.id.desc())
        .all()
    )


def _resolved(db: Session, request_id: int) -> Conflict:
    db.rollback()
    status = (
        db.query(models.JoinRequest.status).filter(models.JoinRequest.id == request_id).scalar()
    )
    return Conflict("Request already resolved", status=status)


def decide_request(db: Session, request_id: int, caller_id: int, decision: str) -> dict:
    if decision not in DECISIONS:
        raise ValidationError("Invalid decision")

    jr = db.query(models.JoinRequest).filter(models.JoinRequest.id == request_id).first()
    if jr is None:
        raise NotFound("Request not found")
    group = get_group(db, jr.group_id)
    if group is None:
        raise NotFound("Group not found")
    _require_owner(group, caller_id)
    if jr.status != "pending":
        raise Conflict("Request already resolved", status=jr.status)

    if decision == "decline":
        if not membership.set_request_status(db, jr.id, "pending", "declined"):
            raise _resolved(db, jr.id)
        db.commit()
        logger.info("group %s: request %s declined", group.id, jr.id)
        return {"message": "Decision recorded", "status": "declined"}

    if not membership.is_member(db, group.id, jr.user_id) and not _capacity_ok(group):
        raise CapacityExceeded()
    # the status flip is the single-winner step; the rest rides in the same transaction
    if not membership.set_request_status(db, jr.id, "pending", "approved"):
        raise _resolved(db, jr.id)
    try:
        membership.unban(db, group.id, jr.user_id)
        membership.add_member(db, group.id, jr.user_id)
    except CapacityExceeded:
        db.rollback()
        raise
    db.commit()
    logger.info("group %s: request %s approved, user %s admitted", group.id, jr.id, jr.user_id)
    return {"message": "Decision recorded", "status": "approved"}


def leave(db: Session, group_id: int, user_id: int) -> dict:
    group = _load_group(db, group_id)
    if not membership.is_member(db, group.id, user_id):
        raise ValidationError("Not a member")
    if group.owner_id == user_id:
        raise Forbidden("Owner must transfer ownership before leaving")

    if not membership.remove_member(db, group.id, user_id):
        db.rollback()
        if membership.is_member(db, group.id, user_id):
            # ownership moved to this user in the meantime
            raise Forbidden("Owner must transfer ownership before leaving")
        raise ValidationError("Not a member")
    if group.kind == "private":
        db.add(models.LeaveHistory(group_id=group.id, user_id=user_id, left_at=utcnow()))
    db.commit()
    logger.info("group %s: user %s left", group_id, user_id)
    return {"message": "Left group"}


def banish(db: Session, group_id: int, caller_id: int, target_user_id: int) -> dict:
    group = _load_group(db, group_id)
    _require_owner(group, caller_id)
    if target_user_id == group.owner_id:
        raise Forbidden("Owner cannot banish self")

    if membership.is_banned(db, group.id, target_user_id):
        return {"message": "User is already banned"}
    if not membership.is_member(db, group.id, target_user_id):
        raise ValidationError("User is not a current member")

    try:
        banned = membership.ban_member(db, group.id, target_user_id)
    except ValidationError:
        # the target left, or another banish got there first
        db.rollback()
        if membership.is_banned(db, group.id, target_user_id):
            return {"message": "User is already banned"}
        raise
    if not banned:
        db.rollback()
        return {"message": "User is already banned"}
    db.commit()
    logger.info("group %s: user %s banished by %s", group_id, target_user_id, caller_id)
    return {"message": "User banished"}


def transfer_ownership(db: Session, group_id: int, caller_id: int, new_owner_id: int) -> dict:
    group = _load_group(db, group_id)
    _require_owner(group, caller_id)
    if not membership.is_member(db, group.id, new_owner_id):
        raise ValidationError("New owner must be a member")

    if not membership.transfer_owner(db, group.id, caller_id, new_owner_id):
        db.rollback()
        raise ValidationError("New owner must be a member")
    db.commit()
    logger.info("group %s: ownership %s -> %s", group_id, caller_id, new_owner_id)
    return {"message": "Ownership transferred"}


def delete_group(db: Session, group_id: int, caller_id: int) -> dict:
    group = _load_group(db, group_id)
    _require_owner(group, caller_id)
    if group.member_count > 1:
        raise ValidationError("Group can be deleted only if owner is sole member")

    if not membership.drop_group(db, group.id, caller_id):
        db.rollback()
        raise ValidationError("Group can be deleted only if owner is sole member")
    db.commit()
    logger.info("group %s deleted by %s", group_id, caller_id)
    return {"message": "Group deleted"}
