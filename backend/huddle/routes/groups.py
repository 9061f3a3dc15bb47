from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional

from ..core.clock import as_utc
from ..db import schemas, models, membership
from ..controllers import groups_controller, invites_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user

router = APIRouter(prefix="/groups")


def _group_out(db: Session, group: models.Group, viewer_id: int, with_banned: bool = True) -> schemas.GroupOut:
    return schemas.GroupOut(
        id=group.id,
        name=group.name,
        type=group.kind,
        owner_id=group.owner_id,
        capacity=group.capacity,
        members=membership.member_ids(db, group.id),
        banned=membership.banned_ids(db, group.id) if with_banned and group.owner_id == viewer_id else None,
        created_at=as_utc(group.created_at),
    )


@router.post("", response_model=schemas.GroupOut, status_code=201)
def create_group(body: schemas.GroupCreate, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    group = groups_controller.create_group(
        db,
        owner_id=current_user.id,
        name=body.name,
        kind=body.type,
        capacity=body.capacity,
        initial_member_ids=body.initial_member_ids,
    )
    return _group_out(db, group, current_user.id)


@router.get("/public", response_model=List[schemas.GroupOut])
def list_open_groups(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return [_group_out(db, g, current_user.id, with_banned=False) for g in groups_controller.list_open_groups(db)]


@router.get("/mine", response_model=List[schemas.GroupOut])
def list_my_groups(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return [_group_out(db, g, current_user.id) for g in groups_controller.list_member_groups(db, current_user.id)]


@router.post("/join-with-invite")
def join_with_invite(body: schemas.RedeemIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    group_id = invites_controller.redeem_invite(db, current_user.id, body.token)
    return {"message": "Joined via invite", "group_id": group_id}


@router.post("/requests/{request_id}/decision")
def decide_request(request_id: int, body: schemas.DecisionIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.decide_request(db, request_id, current_user.id, body.decision)


@router.post("/{group_id}/join-open")
def join_open(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.join_open(db, group_id, current_user.id)


@router.post("/{group_id}/request-join")
def request_join(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.request_join_private(db, group_id, current_user.id)


@router.get("/{group_id}/requests", response_model=List[schemas.JoinRequestOut])
def list_requests(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    out: list[schemas.JoinRequestOut] = []
    for jr in groups_controller.list_pending_requests(db, group_id, current_user.id):
        out.append(schemas.JoinRequestOut(
            id=jr.id,
            group_id=jr.group_id,
            user=schemas.UserOut(id=jr.user.id, email=jr.user.email),
            status=jr.status,
            created_at=as_utc(jr.created_at),
        ))
    return out


@router.post("/{group_id}/leave")
def leave_group(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.leave(db, group_id, current_user.id)


@router.post("/{group_id}/banish")
def banish(group_id: int, body: schemas.BanishIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.banish(db, group_id, current_user.id, body.user_id)


@router.post("/{group_id}/transfer")
def transfer_ownership(group_id: int, body: schemas.TransferIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.transfer_ownership(db, group_id, current_user.id, body.new_owner_id)


@router.delete("/{group_id}")
def delete_group(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.delete_group(db, group_id, current_user.id)


@router.post("/{group_id}/invites", response_model=schemas.InviteOut, status_code=201)
def create_invite(group_id: int, body: Optional[schemas.InviteCreateIn] = None, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    body = body or schemas.InviteCreateIn()
    invite, raw_token = invites_controller.create_invite(
        db, group_id, current_user.id, max_uses=body.max_uses, expires_in_minutes=body.expires_in_minutes
    )
    return schemas.InviteOut(token=raw_token, expires_at=as_utc(invite.expires_at), max_uses=invite.max_uses)
