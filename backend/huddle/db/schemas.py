from pydantic import BaseModel, EmailStr, Field
import datetime
from typing import List, Literal, Optional


class RegisterIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)


class LoginIn(BaseModel):
    email: str = ""
    password: str = ""


class Token(BaseModel):
    access_token: str
    token_type: str


class UserOut(BaseModel):
    id: int
    email: str

    class Config:
        from_attributes = True


class GroupCreate(BaseModel):
    name: str = Field(min_length=1)
    type: Literal["private", "open"]
    capacity: int = Field(default=0, ge=0)
    initial_member_ids: List[int] = []


class GroupOut(BaseModel):
    id: int
    name: str
    type: str
    owner_id: int
    capacity: int
    members: List[int] = []
    # only filled in for the group's owner
    banned: Optional[List[int]] = None
    created_at: datetime.datetime


class DecisionIn(BaseModel):
    decision: Literal["approve", "decline"]


class BanishIn(BaseModel):
    user_id: int


class TransferIn(BaseModel):
    new_owner_id: int


class InviteCreateIn(BaseModel):
    max_uses: int = Field(default=1, ge=0)
    expires_in_minutes: int = Field(default=60, ge=0)


class InviteOut(BaseModel):
    token: str
    expires_at: datetime.datetime
    max_uses: int


class RedeemIn(BaseModel):
    token: str = Field(min_length=1)


class JoinRequestOut(BaseModel):
    id: int
    group_id: int
    user: UserOut
    status: str
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class MessageIn(BaseModel):
    text: str


class MessageSentOut(BaseModel):
    id: int
    created_at: datetime.datetime

    class Config:
        from_attributes = True


class MessageOut(BaseModel):
    id: int
    sender: UserOut
    created_at: datetime.datetime
    text: str


class PollOut(BaseModel):
    new_messages: int
    last_checked: datetime.datetime
