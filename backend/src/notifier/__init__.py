from backend.src.notifier.email_notifier import EmailNotifier
from backend.src.notifier.registry import NotifierRegistry
from backend.src.notifier.slack_notifier import SlackNotifier

__all__ = [
    "EmailNotifier",
    "NotifierRegistry",
    "SlackNotifier",
]
