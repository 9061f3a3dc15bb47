import logging

from sqlalchemy.orm import Session

from ..core import security as auth
from ..core.errors import Conflict, Unauthorized
from ..db import schemas
from .users_controller import get_user, get_user_by_email, create_user

logger = logging.getLogger(__name__)


def register_user(db: Session, body: schemas.RegisterIn):
    if get_user_by_email(db, body.email):
        raise Conflict("Email already registered")
    user = create_user(db, body.email, body.password)
    logger.info("registered user %s", user.id)
    return {"message": "Registered"}


def login(db: Session, email: str, password: str):
    # one generic failure for unknown email and bad password
    user = get_user_by_email(db, email) if email else None
    if not user or not auth.verify_password(password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    token = auth.create_access_token({"sub": str(user.id), "email": user.email})
    return {"access_token": token, "token_type": "bearer"}


def authenticate(db: Session, token: str):
    """Resolve a bearer token to its user, or raise Unauthorized."""
    claims = auth.decode_access_token(token) if token else None
    if not claims:
        raise Unauthorized("Invalid token")
    try:
        user_id = int(claims.get("sub"))
    except (TypeError, ValueError):
        raise Unauthorized("Invalid token")
    user = get_user(db, user_id)
    if user is None:
        raise Unauthorized("Invalid token")
    return user
