import datetime
import logging

from sqlalchemy.orm import Session

from ..core import security
from ..core.clock import as_utc, utcnow
from ..core.errors import CapacityExceeded, Forbidden, InviteInvalid, NotFound
from ..db import membership, models
from .groups_controller import get_group

logger = logging.getLogger(__name__)


def create_invite(db: Session, group_id: int, caller_id: int, max_uses: int = 1, expires_in_minutes: int = 60):
    """Issue an invite for group_id. Returns (invite, raw_token); the raw token is not kept."""
    group = get_group(db, group_id)
    if group is None:
        raise NotFound("Group not found")
    if group.owner_id != caller_id:
        raise Forbidden("Only owner can create invites")

    raw_token = security.generate_raw_token()
    invite = models.Invite(
        group_id=group.id,
        creator_id=caller_id,
        token_hash=security.hash_token(raw_token),
        max_uses=max(1, int(max_uses)),
        uses=0,
        expires_at=utcnow() + datetime.timedelta(minutes=max(1, int(expires_in_minutes))),
        disabled=False,
    )
    db.add(invite)
    db.commit()
    db.refresh(invite)
    logger.info("group %s: invite %s created (max_uses=%s)", group.id, invite.id, invite.max_uses)
    return invite, raw_token


def _check_live(invite) -> None:
    if invite is None:
        raise InviteInvalid("Invalid invite", reason="invalid")
    # a spent invite is also disabled; report it as exhausted, not as invalid
    if invite.uses >= invite.max_uses:
        raise InviteInvalid("Invite exhausted", reason="exhausted")
    if invite.disabled:
        raise InviteInvalid("Invalid invite", reason="invalid")
    if as_utc(invite.expires_at) <= utcnow():
        raise InviteInvalid("Invite expired", reason="expired")


def redeem_invite(db: Session, user_id: int, raw_token: str) -> int:
    """Join the invite's group. Returns the group id."""
    if not raw_token:
        raise InviteInvalid("Invalid invite", reason="invalid")
    invite = (
        db.query(models.Invite)
        .filter(models.Invite.token_hash == security.hash_token(raw_token))
        .first()
    )
    _check_live(invite)

    group = get_group(db, invite.group_id)
    if group is None:
        raise NotFound("Group not found")
    # invites never lift a ban; that takes an owner-approved request
    if membership.is_banned(db, group.id, user_id):
        raise Forbidden("You are banned. Send a join request to the owner to rejoin.")
    if not membership.is_member(db, group.id, user_id) and not (
        group.capacity == 0 or group.member_count < group.capacity
    ):
        raise CapacityExceeded()

    if not membership.consume_invite_use(db, invite.id):
        # spent or expired between the read and the update
        db.rollback()
        db.refresh(invite)
        _check_live(invite)
        raise InviteInvalid("Invite exhausted", reason="exhausted")
    try:
        membership.add_member(db, group.id, user_id)
    except CapacityExceeded:
        db.rollback()
        raise
    db.commit()
    logger.info("group %s: user %s joined via invite %s", group.id, user_id, invite.id)
    return group.id
