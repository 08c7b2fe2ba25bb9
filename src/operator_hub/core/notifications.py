"""Notification sink for user-facing task events."""

import logging
import uuid
from datetime import timedelta

from operator_hub.db.engine import Database
from operator_hub.db.models import Notification, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 7 * 24 * 60 * 60


class NotificationNotFoundError(LookupError):
    def __init__(self, notification_id: str):
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id


def create_notification(
    db: Database,
    agent_id: str,
    type: str,
    title: str,
    text: str = "",
    task_id: str | None = None,
    source: str | None = None,
) -> Notification:
    """Record a notification for an agent."""
    notification = Notification(
        id=f"notif-{uuid.uuid4().hex[:12]}",
        agent_id=agent_id,
        type=type,
        title=title,
        text=text,
        task_id=task_id,
        source=source,
        created_at=utcnow(),
    )
    with db.notifications.transaction() as records:
        records.append(notification.to_dict())
    logger.debug("Notification %s (%s) for %s", notification.id, type, agent_id)
    return notification


def _decode(records: list[dict]) -> list[Notification]:
    result = []
    for record in records:
        try:
            result.append(Notification.from_dict(record))
        except ValueError as e:
            logger.warning("Skipping malformed notification record: %s", e)
    return result


def list_notifications(
    db: Database,
    agent_id: str | None = None,
    unread: bool = False,
    undelivered: bool = False,
    type: str | None = None,
) -> list[Notification]:
    """List notifications, newest first."""
    items = _decode(db.notifications.load())
    if agent_id:
        items = [n for n in items if n.agent_id == agent_id]
    if unread:
        items = [n for n in items if not n.read]
    if undelivered:
        items = [n for n in items if not n.delivered]
    if type:
        items = [n for n in items if n.type == type]
    items.sort(key=lambda n: n.created_at.isoformat() if n.created_at else "", reverse=True)
    return items


def get_undelivered(db: Database) -> list[Notification]:
    """Undelivered notifications, oldest first, for the delivery worker."""
    return list(reversed(list_notifications(db, undelivered=True)))


def _update(db: Database, notification_id: str, **changes) -> Notification:
    with db.notifications.transaction() as records:
        record = db.notifications.find(records, notification_id)
        if record is None:
            raise NotificationNotFoundError(notification_id)
        record.update(changes)
        return Notification.from_dict(record)


def mark_read(db: Database, notification_id: str) -> Notification:
    return _update(db, notification_id, read=True)


def mark_delivered(db: Database, notification_id: str) -> Notification:
    return _update(db, notification_id, delivered=True, delivered_at=utcnow().isoformat())


def mark_all_read(db: Database, agent_id: str) -> int:
    count = 0
    with db.notifications.transaction() as records:
        for record in records:
            if record.get("agent_id") == agent_id and not record.get("read"):
                record["read"] = True
                count += 1
    return count


def delete_notification(db: Database, notification_id: str) -> bool:
    with db.notifications.transaction() as records:
        before = len(records)
        records[:] = [r for r in records if r.get("id") != notification_id]
        return len(records) != before


def prune_old(db: Database, retention: float = DEFAULT_RETENTION) -> int:
    """Drop delivered notifications older than the retention window.

    Undelivered notifications are kept regardless of age.
    """
    cutoff = utcnow() - timedelta(seconds=retention)
    with db.notifications.transaction() as records:
        kept = []
        for notification in _decode(records):
            stamp = notification.delivered_at or notification.created_at
            if notification.delivered and stamp is not None and stamp < cutoff:
                continue
            kept.append(notification.to_dict())
        removed = len(records) - len(kept)
        records[:] = kept
    if removed:
        logger.info("Pruned %d delivered notification(s)", removed)
    return removed
