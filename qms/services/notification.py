"""
Kasah QMS
Notification Service.

Creates and queries in-app notification records for workflow events
(approval requests, task assignments, CAPA changes, delegations).
Delivery is in-app only; writes are flushed, never committed, so a
notification lands in the same transaction as the event that caused it.
"""

from datetime import datetime, timezone

from qms.models import db
from qms.models.auth import User
from qms.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(user_id, title, message="", *, entity_type="", entity_id=None,
               category="system", tenant_id=None):
        """
        Create a single notification for *user_id*.

        ``tenant_id`` defaults to the recipient's tenant.

        Returns:
            The flushed Notification, or None when the recipient is unknown.
        """
        if user_id is None:
            return None
        if tenant_id is None:
            user = db.session.get(User, user_id)
            if user is None:
                return None
            tenant_id = user.tenant_id
        notif = Notification(
            tenant_id=tenant_id,
            user_id=user_id,
            title=title,
            message=message,
            category=category,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def notify_many(user_ids, title, message="", *, entity_type="", entity_id=None,
                    category="system", tenant_id=None):
        """Send the same notification to several users (duplicates collapsed)."""
        notifications = []
        for uid in dict.fromkeys(u for u in user_ids if u is not None):
            notif = NotificationService.notify(
                uid, title, message,
                entity_type=entity_type, entity_id=entity_id,
                category=category, tenant_id=tenant_id,
            )
            if notif is not None:
                notifications.append(notif)
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Notifications for *user_id*, newest first, with the total count."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_all_read(user_id):
        """Mark every unread notification of *user_id* as read."""
        now = datetime.now(timezone.utc)
        count = (
            Notification.query.filter_by(user_id=user_id, is_read=False)
            .update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        )
        db.session.commit()
        return count
