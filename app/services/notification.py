import logging
from typing import List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, db: Session):
        self.db = db

    def notify(
        self,
        recipient_id: int,
        message: str,
        kind: str = "challenge",
        ref_id: Optional[str] = None,
    ) -> Optional[Notification]:
        """
        Best-effort dispatch. A failure is logged and swallowed so the calling
        transition, already committed, is never undone by a lost notification.
        """
        try:
            notification = Notification(
                user_id=recipient_id,
                kind=kind,
                message=message,
                ref_id=str(ref_id) if ref_id is not None else None,
            )
            self.db.add(notification)
            self.db.commit()
            self.db.refresh(notification)
            return notification
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Failed to notify user {recipient_id}: {e}")
            return None

    def list_for_user(
        self,
        user_id: int,
        unread_only: bool = False,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read == False)
        return (
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def mark_read(self, user_id: int, notification_id: int) -> Optional[Notification]:
        notification = (
            self.db.query(Notification)
            .filter(
                and_(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            .first()
        )
        if not notification:
            return None
        notification.is_read = True
        self.db.commit()
        self.db.refresh(notification)
        return notification
