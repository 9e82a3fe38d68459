from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.core.database import Base


class Notification(Base):
    __tablename__ = "user_notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)  # recipient
    kind = Column(String(50), default="info")  # challenge, challenge_result
    message = Column(Text, nullable=False)
    ref_id = Column(String(64), nullable=True)  # e.g. challenge id
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, kind={self.kind})>"
