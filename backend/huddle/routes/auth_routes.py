from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from fastapi.concurrency import run_in_threadpool
from fastapi.security import OAuth2PasswordRequestForm

from ..db import schemas
from ..deps.db import get_db
from ..controllers import auth_controller
from ..core.errors import Unauthorized

router = APIRouter()


@router.post("/auth/register", status_code=201)
def register_user(body: schemas.RegisterIn, db: Session = Depends(get_db)):
    return auth_controller.register_user(db, body)


@router.post("/auth/login", response_model=schemas.Token)
async def login(request: Request, db: Session = Depends(get_db)):
    # read the body by hand so a malformed one is the same generic 401
    try:
        body = schemas.LoginIn.model_validate(await request.json())
    except ValueError:
        raise Unauthorized("Invalid credentials")
    return await run_in_threadpool(auth_controller.login, db, body.email, body.password)


@router.post("/auth/token", response_model=schemas.Token)
def login_for_access_token(db: Session = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    try:
        return auth_controller.login(db, form_data.username, form_data.password)
    except Unauthorized:
        raise HTTPException(status_code=401, detail="Incorrect email or password", headers={"WWW-Authenticate": "Bearer"})
