"""Slack Web API integration."""

from dataclasses import dataclass

from slack_sdk.errors import SlackApiError

from operator_hub.db.models import Notification


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


TYPE_EMOJI = {
    "task-assigned": ":large_blue_circle:",
    "task-completed": ":white_check_mark:",
    "task-blocked": ":red_circle:",
    "task-released": ":leftwards_arrow_with_hook:",
    "task-unblocked": ":large_green_circle:",
}


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"chat.postMessage failed: {e.response.get('error', e)}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_notification(notification: Notification) -> list[dict]:
    """Format a hub notification as Slack blocks."""
    emoji = TYPE_EMOJI.get(notification.type, ":grey_question:")
    task = f" (`{notification.task_id}`)" if notification.task_id else ""
    body = f"\n{notification.text}" if notification.text else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{notification.title}*{task}\nFor: {notification.agent_id}{body}",
            },
        }
    ]


class SlackChannel:
    """Delivery channel posting notifications to one Slack channel."""

    name = "slack"

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def send(self, notification: Notification) -> SlackMessage:
        text = f"{notification.title}: {notification.text}" if notification.text else notification.title
        return send_message(self.token, self.channel, text, blocks=format_notification(notification))
