import datetime
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional

from ..core.clock import as_utc
from ..db import schemas, models
from ..controllers import messages_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user

router = APIRouter(prefix="/messages")


@router.post("/{group_id}", response_model=schemas.MessageSentOut, status_code=201)
def send_message(group_id: int, body: schemas.MessageIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    msg = messages_controller.create_group_message(db, group_id, current_user.id, body.text)
    return schemas.MessageSentOut(id=msg.id, created_at=as_utc(msg.created_at))


@router.get("/{group_id}", response_model=List[schemas.MessageOut])
def list_messages(group_id: int, since: Optional[datetime.datetime] = None, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return messages_controller.list_group_messages(db, group_id, current_user.id, since=since)


@router.get("/{group_id}/poll", response_model=schemas.PollOut)
def poll(group_id: int, since: Optional[datetime.datetime] = None, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return messages_controller.poll_since(db, group_id, current_user.id, since=since)
