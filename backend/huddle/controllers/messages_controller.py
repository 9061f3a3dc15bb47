import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ..core import codec
from ..core.clock import as_utc, utcnow
from ..core.errors import Forbidden, NotFound, ValidationError
from ..db import membership, models

MAX_TEXT_LENGTH = 5000
DEFAULT_POLL_WINDOW = datetime.timedelta(seconds=60)


def _require_member(db: Session, group_id: int, user_id: int) -> models.Group:
    group = db.query(models.Group).filter(models.Group.id == group_id).first()
    if not group:
        raise NotFound("Group not found")
    if not membership.is_member(db, group.id, user_id):
        raise Forbidden("Join group first")
    return group


def create_group_message(db: Session, group_id: int, sender_id: int, text: str) -> models.Message:
    if text is None or len(text) == 0:
        raise ValidationError("Message cannot be empty")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_TEXT_LENGTH} chars)")
    group = _require_member(db, group_id, sender_id)
    db_message = models.Message(
        group_id=group.id,
        sender_id=sender_id,
        payload=codec.encrypt(text),
        created_at=utcnow(),
    )
    db.add(db_message)
    db.commit()
    db.refresh(db_message)
    return db_message


def list_group_messages(db: Session, group_id: int, caller_id: int, since: Optional[datetime.datetime] = None):
    """Messages newer than `since` (all when None), oldest first, decrypted."""
    group = _require_member(db, group_id, caller_id)
    q = (
        db.query(models.Message)
        .options(joinedload(models.Message.sender))
        .filter(models.Message.group_id == group.id)
    )
    if since is not None:
        q = q.filter(models.Message.created_at > as_utc(since))
    out = []
    for m in q.order_by(models.Message.created_at.asc(), models.Message.id.asc()).all():
        out.append({
            "id": m.id,
            "sender": {"id": m.sender_id, "email": m.sender.email if m.sender else None},
            "created_at": as_utc(m.created_at),
            "text": codec.decrypt(m.payload),
        })
    return out


def poll_since(db: Session, group_id: int, caller_id: int, since: Optional[datetime.datetime] = None) -> dict:
    group = _require_member(db, group_id, caller_id)
    now = utcnow()
    since = as_utc(since) if since is not None else now - DEFAULT_POLL_WINDOW
    count = (
        db.query(models.Message.id)
        .filter(models.Message.group_id == group.id, models.Message.created_at > since)
        .count()
    )
    return {"new_messages": count, "last_checked": now}
