"""Slack Web API integration: posts board notifications to a channel."""

import logging
from dataclasses import dataclass

from slack_sdk.errors import SlackApiError

from solar_ops.core import status as status_mod
from solar_ops.core.notifications import DEFAULT_DURATION_MS, ERROR, INFO, SUCCESS, WARNING

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


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
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


_LEVEL_EMOJI = {
    SUCCESS: ":white_check_mark:",
    INFO: ":information_source:",
    WARNING: ":warning:",
    ERROR: ":red_circle:",
}

_STATUS_EMOJI = {
    status_mod.PENDING: ":white_circle:",
    status_mod.IN_PROGRESS: ":large_blue_circle:",
    status_mod.COMPLETED: ":white_check_mark:",
}


def format_notification(message: str, level: str) -> list[dict]:
    emoji = _LEVEL_EMOJI.get(level, ":grey_question:")
    return [{"type": "section", "text": {"type": "mrkdwn", "text": f"{emoji} {message}"}}]


def format_task_notification(task) -> list[dict]:
    """Format a task update as Slack blocks."""
    emoji = _STATUS_EMOJI.get(task.status, ":grey_question:")
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Task Update*\n*{task.title}* (`{task.reference}`)\n"
                    f"Status: *{status_mod.label(task.status)}* | Customer: {task.customer_name}"
                ),
            },
        }
    ]


def format_board_summary(user_name: str, counts: dict[str, int]) -> list[dict]:
    """Format a board status summary as Slack blocks."""
    total = sum(counts.values())
    done = counts.get(status_mod.COMPLETED, 0)
    progress = done / total * 100 if total > 0 else 0
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":bar_chart: *Board: {user_name}*\n"
                    f":white_check_mark: Completed: {done} | "
                    f":large_blue_circle: In Progress: {counts.get(status_mod.IN_PROGRESS, 0)} | "
                    f":white_circle: Pending: {counts.get(status_mod.PENDING, 0)}\n"
                    f"Progress: {progress:.0f}% ({done}/{total})"
                ),
            },
        }
    ]


class SlackNotifier:
    """Notification sink that forwards messages at or above a level to Slack.

    Delivery failures are logged and never interrupt the caller.
    """

    _rank = {INFO: 0, SUCCESS: 1, WARNING: 2, ERROR: 3}

    def __init__(self, token: str | None, channel: str, min_level: str = SUCCESS, client=None):
        self.token = token
        self.channel = channel
        self.min_level = min_level
        self._client = client

    def notify(self, message: str, level: str = INFO, duration_ms: int = DEFAULT_DURATION_MS) -> None:
        if self._rank.get(level, 0) < self._rank.get(self.min_level, 0):
            return
        try:
            send_message(
                self.token,
                self.channel,
                message,
                blocks=format_notification(message, level),
                client=self._client,
            )
        except SlackError:
            logger.exception("Failed to deliver notification to %s", self.channel)
