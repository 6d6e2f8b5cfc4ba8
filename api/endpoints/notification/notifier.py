# endpoints/notification/notifier.py
import logging
from typing import Any, Dict, Iterable

from utils.jsonSafe import jsonSafe

logger = logging.getLogger(__name__)


class Notifier:
    """
    Delivery sink for settlement outcomes. Delivery is fire-and-forget:
    callers go through `notify`, which never raises.
    """

    def deliver(self, target: str, message: Dict[str, Any]) -> None:
        raise NotImplementedError

    def notify(self, targets: Iterable[Any], message: Dict[str, Any]) -> int:
        delivered = 0
        for target in sorted({str(t) for t in targets if t is not None}):
            try:
                self.deliver(target, message)
                delivered += 1
            except Exception:
                logger.exception(
                    "Failed to deliver %s notification to %s",
                    message.get("event"),
                    target,
                )
        return delivered


class SocketNotifier(Notifier):
    """Emits to the per-user Socket.IO room `user:<id>`."""

    def __init__(self, socketio):
        self.socketio = socketio

    def deliver(self, target: str, message: Dict[str, Any]) -> None:
        event = message.get("event", "transaction:updated")
        self.socketio.emit(event, jsonSafe(message), room=f"user:{target}")


class LogNotifier(Notifier):
    """Used by cron/worker processes that have no socket server attached."""

    def deliver(self, target: str, message: Dict[str, Any]) -> None:
        logger.info("notify %s: %s", target, jsonSafe(message))
