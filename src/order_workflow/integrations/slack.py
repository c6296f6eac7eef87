"""Slack Web API integration."""

from dataclasses import dataclass

from order_workflow.db.models import Notification


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
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def notification_text(note: Notification) -> str:
    if note.kind == "overdue":
        return f"Task overdue: {note.title}"
    return f"New {note.task_type or 'general'} task: {note.title}"


def format_task_notification(note: Notification) -> list[dict]:
    """Format a new-task or overdue alert as Slack blocks."""
    priority_emoji = {
        "high": ":red_circle:",
        "medium": ":large_orange_circle:",
        "low": ":white_circle:",
    }
    emoji = ":rotating_light:" if note.kind == "overdue" else ":inbox_tray:"
    heading = "Task Overdue" if note.kind == "overdue" else "New Task Assigned"
    due = note.due_date.isoformat() if note.due_date else "-"

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *{heading}*\n*{note.title}* (`{note.task_id[:8]}`)\n"
                    f"Assignee: {note.assignee_name or '-'} | Stage: {note.task_type or 'general'} | Due: {due}"
                ),
            },
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"{priority_emoji.get(note.priority, ':grey_question:')} Priority: {note.priority}",
                }
            ],
        },
    ]


def make_sink(token: str | None, channel: str):
    """Build a notification sink that posts each alert to a channel."""

    def sink(note: Notification):
        send_message(token, channel, notification_text(note), format_task_notification(note))

    return sink
