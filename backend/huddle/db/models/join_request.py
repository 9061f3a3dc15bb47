import datetime
from sqlalchemy import Column, Integer, DateTime, ForeignKey, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


class JoinRequest(Base):
    __tablename__ = "join_requests"

    id = Column(Integer, primary_key=True, index=True)
    # plain reference, rows outlive a deleted group as history
    group_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(
        Enum("pending", "approved", "declined", name="join_request_status_enum"),
        default="pending",
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    user = relationship("User")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_join_request_group_user"),
    )
