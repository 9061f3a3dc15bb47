import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, CheckConstraint
from ..database import Base


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    kind = Column(Enum("open", "private", name="group_kind_enum"), nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    # 0 = unlimited
    capacity = Column(Integer, default=0, nullable=False)
    # mirrors the number of group_members rows; guarded update target for capacity checks
    member_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc))

    __table_args__ = (
        CheckConstraint("capacity = 0 OR capacity >= 2", name="ck_groups_capacity"),
        CheckConstraint("capacity = 0 OR member_count <= capacity", name="ck_groups_member_count"),
        # never reuse the id of a deleted group
        {"sqlite_autoincrement": True},
    )
