from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from ..db import models
from ..core.errors import Conflict
from ..core.security import get_password_hash


def get_user(db: Session, user_id: int):
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()


def missing_user_ids(db: Session, user_ids: list[int]) -> list[int]:
    if not user_ids:
        return []
    found = {row[0] for row in db.query(models.User.id).filter(models.User.id.in_(user_ids))}
    return [uid for uid in user_ids if uid not in found]


def create_user(db: Session, email: str, password: str):
    db_user = models.User(
        email=email.strip().lower(),
        password_hash=get_password_hash(password),
    )
    db.add(db_user)
    try:
        db.commit()
    except IntegrityError:
        # unique index on email tripped by a concurrent registration
        db.rollback()
        raise Conflict("Email already registered")
    db.refresh(db_user)
    return db_user
