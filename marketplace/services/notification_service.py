"""
Notification Service for the Marketplace Bookings Service.

Every booking, RSVP and review transition reports to the parties involved
through a NotificationDispatcher. The default implementation stores an in-app
notification, publishes it on the recipient's Redis channel for the realtime
gateway and, when enabled, hands an email task to the Celery workers.
"""

import ssl
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional, Dict, Any

from celery import Celery
from sqlalchemy import func

from marketplace.core.config import config
from marketplace.core.exceptions import NotFoundError, ForbiddenError
from marketplace.db.database import db_manager
from marketplace.db.redis_client import redis_manager
from marketplace.models.base import utcnow
from marketplace.models.notification import (
    Notification, NotificationType, NotificationPriority, TITLE_MAX_LENGTH, MESSAGE_MAX_LENGTH
)

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Outbound notification interface injected into the domain services."""

    @abstractmethod
    async def notify(
        self,
        recipient_id: int,
        type: NotificationType,
        title: str,
        message: str,
        related_event_id: Optional[int] = None,
        related_booking_id: Optional[int] = None,
        related_user_id: Optional[int] = None,
        action_url: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM
    ) -> Optional[Dict[str, Any]]:
        """Deliver a notification to one user."""


class NotificationService(NotificationDispatcher):
    """
    Notification service backed by the database, Redis pub/sub and Celery.
    Realtime push and email are best-effort; the stored notification is the
    source of truth for the inbox.
    """

    def __init__(self):
        self.notification_config = None
        self._celery_app = None
        self._celery_initialized = False

    async def _get_configs(self):
        if not self.notification_config:
            self.notification_config = await config.get_notification_config()

    async def _initialize_celery(self):
        """Initialize Celery app for task dispatch."""
        if self._celery_initialized:
            return

        try:
            self._celery_app = Celery('marketplace')
            redis_url = await config.get_redis_url()

            celery_conf = dict(
                broker_url=redis_url,
                result_backend=redis_url,
                task_serializer='json',
                result_serializer='json',
                accept_content=['json'],
                task_routes={
                    'email_workers.tasks.*': {'queue': 'email_notifications'},
                },
            )
            if redis_url.startswith("rediss://"):
                celery_conf.update(
                    broker_use_ssl={'ssl_cert_reqs': ssl.CERT_NONE},
                    redis_backend_use_ssl={'ssl_cert_reqs': ssl.CERT_NONE},
                )
            self._celery_app.conf.update(**celery_conf)

            self._celery_initialized = True
            logger.info("Celery app initialized for notification dispatch")

        except Exception as e:
            logger.error(f"Failed to initialize Celery app: {e}")
            self._celery_app = None
            self._celery_initialized = False

    async def _send_email_task(self, recipient_id: int, data: Dict[str, Any]) -> bool:
        """
        Send email task to Celery workers.

        Args:
            recipient_id: User ID (workers will fetch email address)
            data: Serialized notification

        Returns:
            True if task sent successfully, False otherwise
        """
        try:
            if not self._celery_initialized:
                await self._initialize_celery()

            if not self._celery_app:
                logger.error("Celery app not initialized, cannot send email task")
                return False

            task = self._celery_app.send_task(
                'email_workers.tasks.send_notification_email',
                args=[recipient_id, data],
                queue='email_notifications'
            )
            logger.info(f"Email task sent for user {recipient_id} with ID: {task.id}")
            return True

        except Exception as e:
            logger.error(f"Failed to send email task for user {recipient_id}: {e}")
            return False

    def channel_for(self, recipient_id: int) -> str:
        prefix = (self.notification_config or {}).get("channel_prefix", "marketplace:notifications")
        return f"{prefix}:{recipient_id}"

    async def notify(
        self,
        recipient_id: int,
        type: NotificationType,
        title: str,
        message: str,
        related_event_id: Optional[int] = None,
        related_booking_id: Optional[int] = None,
        related_user_id: Optional[int] = None,
        action_url: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.MEDIUM
    ) -> Optional[Dict[str, Any]]:
        """
        Store a notification and fan it out to the realtime and email channels.

        Args:
            recipient_id: User receiving the notification
            type: Notification category
            title: Short title, truncated to 100 characters
            message: Body, truncated to 500 characters
            related_event_id: Optional event reference
            related_booking_id: Optional booking reference
            related_user_id: Optional user reference (usually the actor)
            action_url: Optional deep link for the client
            priority: Display priority

        Returns:
            The stored notification as a dict
        """
        await self._get_configs()

        channels = ["in_app"]
        if self.notification_config["enable_realtime_push"]:
            channels.append("push")
        if self.notification_config["enable_email_notifications"]:
            channels.append("email")

        with db_manager.get_session() as session:
            notification = Notification(
                recipient_id=recipient_id,
                type=type,
                title=title[:TITLE_MAX_LENGTH],
                message=message[:MESSAGE_MAX_LENGTH],
                related_event_id=related_event_id,
                related_booking_id=related_booking_id,
                related_user_id=related_user_id,
                action_url=action_url,
                priority=priority,
                sent_via=",".join(channels),
                expires_at=utcnow() + timedelta(days=self.notification_config["notification_expiry_days"])
            )
            session.add(notification)
            session.flush()
            payload = notification.to_dict()

        logger.info(f"Notification {payload['id']} ({type.value}) stored for user {recipient_id}")

        if "push" in channels:
            await redis_manager.publish(self.channel_for(recipient_id), payload)
        if "email" in channels:
            await self._send_email_task(recipient_id, payload)

        return payload

    # Inbox operations

    async def list_notifications(
        self,
        user_id: int,
        unread_only: bool = False,
        page: int = 1,
        page_size: int = 20
    ) -> Dict[str, Any]:
        """List non-expired notifications for a user, newest first."""
        with db_manager.get_session() as session:
            query = session.query(Notification).filter(
                Notification.recipient_id == user_id,
                Notification.expires_at > utcnow()
            )
            if unread_only:
                query = query.filter(Notification.is_read.is_(False))

            total = query.count()
            notifications = query.order_by(
                Notification.created_at.desc(), Notification.id.desc()
            ).offset((page - 1) * page_size).limit(page_size).all()

            return {
                "notifications": [n.to_dict() for n in notifications],
                "total": total,
                "page": page,
                "page_size": page_size,
            }

    async def get_unread_count(self, user_id: int) -> int:
        with db_manager.get_session() as session:
            return session.query(func.count(Notification.id)).filter(
                Notification.recipient_id == user_id,
                Notification.is_read.is_(False),
                Notification.expires_at > utcnow()
            ).scalar()

    async def mark_as_read(self, notification_id: int, user_id: int) -> Dict[str, Any]:
        """
        Mark one notification as read.

        Raises:
            NotFoundError: If the notification does not exist
            ForbiddenError: If it belongs to another user
        """
        with db_manager.get_session() as session:
            notification = session.get(Notification, notification_id)
            if not notification:
                raise NotFoundError("Notification not found")
            if notification.recipient_id != user_id:
                raise ForbiddenError("Not authorized to modify this notification")

            if not notification.is_read:
                notification.is_read = True
                notification.read_at = utcnow()
            session.flush()
            return notification.to_dict()

    async def mark_all_as_read(self, user_id: int) -> int:
        """Mark every unread notification of a user as read; returns the count updated."""
        with db_manager.get_session() as session:
            updated = session.query(Notification).filter(
                Notification.recipient_id == user_id,
                Notification.is_read.is_(False)
            ).update({
                Notification.is_read: True,
                Notification.read_at: utcnow()
            }, synchronize_session=False)
        logger.info(f"Marked {updated} notifications as read for user {user_id}")
        return updated

    async def delete_notification(self, notification_id: int, user_id: int) -> bool:
        with db_manager.get_session() as session:
            notification = session.get(Notification, notification_id)
            if not notification:
                raise NotFoundError("Notification not found")
            if notification.recipient_id != user_id:
                raise ForbiddenError("Not authorized to delete this notification")
            session.delete(notification)
        return True

    async def cleanup_expired(self) -> int:
        """Delete notifications past their expiry; returns the number removed."""
        with db_manager.get_session() as session:
            removed = session.query(Notification).filter(
                Notification.expires_at <= utcnow()
            ).delete(synchronize_session=False)
        logger.info(f"Removed {removed} expired notifications")
        return removed


# Global notification service instance
notification_service = NotificationService()
