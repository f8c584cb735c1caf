"""Fire-and-forget player notifications."""
import logging
from typing import Any, Dict, Iterable, Protocol

logger = logging.getLogger(__name__)

PRIZE_WON = "prize_won"
TOURNAMENT_STARTED = "tournament_started"
TOURNAMENT_ENDED = "tournament_ended"


class Notifier(Protocol):
    def notify(self, user_id: str, message: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the message in the application log."""

    def notify(self, user_id: str, message: Dict[str, Any]) -> None:
        logger.info(f"Notification for {user_id}: {message.get('type')} {message.get('payload')}")


def send(notifier: Notifier, user_id: str, message_type: str, payload: Dict[str, Any]) -> bool:
    """
    Deliver one notification. Failures are logged and never propagate, so the
    write that triggered the notification is unaffected.
    """
    try:
        notifier.notify(user_id, {"type": message_type, "payload": payload})
        return True
    except Exception as e:
        logger.warning(f"Notification {message_type} to {user_id} failed: {e}")
        return False


def broadcast(notifier: Notifier, user_ids: Iterable[str], message_type: str,
              payload: Dict[str, Any]) -> int:
    """Send the same notification to many players; returns how many succeeded."""
    return sum(1 for user_id in user_ids if send(notifier, user_id, message_type, payload))
