"""Background delivery of notifications to Slack and Telegram."""

import logging
import threading

from operator_hub.config import Config
from operator_hub.core import agents as agents_mod
from operator_hub.core import notifications as notifications_mod
from operator_hub.db.engine import Database
from operator_hub.integrations.slack import SlackChannel, SlackError
from operator_hub.integrations.telegram import TelegramChannel, TelegramError

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 10.0


def make_channels(config: Config) -> list:
    """Delivery channels that are configured."""
    channels = []
    if config.slack_bot_token and config.slack_channel:
        channels.append(SlackChannel(config.slack_bot_token, config.slack_channel))
    if config.telegram_bot_token and config.telegram_chat_id:
        channels.append(TelegramChannel(config.telegram_bot_token, config.telegram_chat_id))
    return channels


def deliver_pending(db: Database, channels: list) -> int:
    """Push every undelivered notification once. Returns the number marked delivered.

    A notification counts as delivered when any channel accepts it, when no
    channel is configured, or when its agent is no longer registered.
    Notifications no channel accepted stay pending for the next run.
    """
    delivered = 0
    for notification in notifications_mod.get_undelivered(db):
        if not channels:
            notifications_mod.mark_delivered(db, notification.id)
            delivered += 1
            continue
        if agents_mod.get_agent(db, notification.agent_id) is None:
            logger.info("Agent %s is gone; dropping notification %s", notification.agent_id, notification.id)
            notifications_mod.mark_delivered(db, notification.id)
            delivered += 1
            continue

        accepted = False
        for channel in channels:
            try:
                channel.send(notification)
                accepted = True
            except (SlackError, TelegramError) as e:
                logger.warning("Delivery of %s via %s failed: %s", notification.id, channel.name, e)
        if accepted:
            notifications_mod.mark_delivered(db, notification.id)
            delivered += 1
    if delivered:
        logger.info("Delivered %d notification(s)", delivered)
    return delivered


class NotificationDelivery:
    """Background thread that delivers pending notifications on an interval."""

    def __init__(self, db: Database, channels: list, interval: float = DEFAULT_INTERVAL):
        self.db = db
        self.channels = channels
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="notification-delivery", daemon=True)
        self._thread.start()
        logger.info("Notification delivery started (%d channel(s))", len(self.channels))

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Notification delivery stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                deliver_pending(self.db, self.channels)
            except Exception:
                logger.exception("Error in notification delivery loop")
            self._stop_event.wait(self.interval)
