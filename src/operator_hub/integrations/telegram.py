"""Telegram Bot API integration."""

import httpx

from operator_hub.db.models import Notification

TELEGRAM_API = "https://api.telegram.org"


class TelegramError(Exception):
    """Raised when a Telegram operation fails."""


def send_message(
    bot_token: str,
    chat_id: str,
    text: str,
    transport: httpx.BaseTransport | None = None,
) -> dict:
    """Send a Markdown message to a chat. Returns the Telegram message object."""
    if not bot_token or not chat_id:
        raise TelegramError("Telegram not configured: TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID not set")

    with httpx.Client(timeout=10.0, transport=transport) as client:
        try:
            response = client.post(
                f"{TELEGRAM_API}/bot{bot_token}/sendMessage",
                json={
                    "chat_id": chat_id,
                    "text": text,
                    "parse_mode": "Markdown",
                    "disable_web_page_preview": True,
                },
            )
        except httpx.HTTPError as e:
            raise TelegramError(f"sendMessage failed: {e}") from e

    try:
        data = response.json()
    except ValueError:
        data = {}
    if response.status_code != 200 or not data.get("ok"):
        raise TelegramError(
            f"sendMessage returned {response.status_code}: {data.get('description', response.text)}"
        )
    return data.get("result", {})


def format_notification(notification: Notification) -> str:
    lines = [f"*{notification.title}*"]
    if notification.text:
        lines.append(notification.text)
    if notification.task_id:
        lines.append(f"Task: `{notification.task_id}`")
    lines.append(f"For: {notification.agent_id}")
    return "\n".join(lines)


class TelegramChannel:
    """Delivery channel posting notifications to one Telegram chat."""

    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, transport: httpx.BaseTransport | None = None):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.transport = transport

    def send(self, notification: Notification) -> dict:
        return send_message(self.bot_token, self.chat_id, format_notification(notification), self.transport)
