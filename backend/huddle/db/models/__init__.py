from ..database import Base
from .association import group_members_table, group_bans_table
from .user import User
from .group import Group
from .join_request import JoinRequest
from .invite import Invite
from .leave_history import LeaveHistory
from .message import Message

__all__ = [
    "Base",
    "group_members_table",
    "group_bans_table",
    "User",
    "Group",
    "JoinRequest",
    "Invite",
    "LeaveHistory",
    "Message",
]
