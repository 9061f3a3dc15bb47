import datetime
from sqlalchemy import Column, Integer, DateTime, ForeignKey, Index
from ..database import Base


class LeaveHistory(Base):
    __tablename__ = "leave_history"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    left_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_leave_history_group_user_left", "group_id", "user_id", "left_at"),
    )
