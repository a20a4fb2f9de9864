"""
=============================================================================
NOTIFICATIONS.PY — Notification records
=============================================================================
A notification here is only a durable row. Delivering it (Telegram push)
is the job of scheduler.deliver_pending_notifications, which reads the rows
later. That keeps request handlers free of network calls.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import Notification

logger = logging.getLogger("growtrack.notifications")


class Notifier:
    """Creates and manages notification records for one session"""

    def __init__(self, db: Session):
        self.db = db

    def create(self, user_id: int, type: str, title: str, message: str,
               data: Optional[dict] = None) -> Optional[Notification]:
        """
        Fire and forget: the row is written inside a savepoint, so a failure
        is logged and leaves the surrounding transaction usable. The caller
        commits.
        """
        try:
            with self.db.begin_nested():
                notification = Notification(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    data=data,
                )
                self.db.add(notification)
            return notification
        except SQLAlchemyError:
            logger.exception(f"❌ Could not store notification for user {user_id}")
            return None

    def list_for_user(self, user_id: int, limit: int = 50, unread_only: bool = False) -> list[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.read == False)  # noqa: E712
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def _get_owned(self, user_id: int, notification_id: int) -> Notification:
        notification = self.db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).first()
        if not notification:
            raise NotFoundError("Notification not found")
        return notification

    def mark_read(self, user_id: int, notification_id: int) -> Notification:
        notification = self._get_owned(user_id, notification_id)
        notification.read = True
        self.db.commit()
        return notification

    def mark_all_read(self, user_id: int) -> int:
        """One batched UPDATE; returns how many rows changed"""
        count = self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.read == False  # noqa: E712
        ).update({Notification.read: True}, synchronize_session=False)
        self.db.commit()
        return count

    def delete(self, user_id: int, notification_id: int):
        notification = self._get_owned(user_id, notification_id)
        self.db.delete(notification)
        self.db.commit()
