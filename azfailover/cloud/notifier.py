# File: cloud/notifier.py

import logging

from .interfaces import Notifier

logger = logging.getLogger("azfailover.notifier")


class LoggingNotifier(Notifier):
    """Used when no SNS topic is configured."""

    def publish(self, subject: str, message: str) -> None:
        logger.info(f"NOTIFY: {subject} - {message}")


def notify(notifier: Notifier, subject: str, message: str) -> bool:
    """
    Publish without ever failing the caller.

    Returns False when delivery failed; the failure is logged.
    """
    if notifier is None:
        return False
    try:
        notifier.publish(subject, message)
        return True
    except Exception as e:
        logger.warning(f"Notification '{subject}' not delivered: {e}")
        return False
