from __future__ import annotations

import logging
from queue import Queue, Empty, Full
from threading import Lock
from typing import Any, Dict, List, Optional

# Simple in-memory pub/sub keyed by topic. Not suitable for multi-process deployments;
# consumers treat it as a liveness hint and re-fetch from the store on (re)connect.
_subs: dict[str, List["Subscription"]] = {}
_lock = Lock()
_logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


def claim_topic(claim_id: int) -> str:
    return f"claim:{int(claim_id)}"


def subject_topic(subject_id: str) -> str:
    return f"subject:{subject_id}"


STAFF_TOPIC = "staff"


class Subscription:
    """A bounded mailbox for one subscriber on one topic.

    When the mailbox overflows, events are dropped and the next ``get`` returns a
    ``resync`` event so the consumer knows its incremental view has a gap.
    """

    def __init__(self, topic: str, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.topic = topic
        self._queue: Queue = Queue(maxsize=maxsize)
        self._overflowed = False

    def offer(self, event: Dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except Full:
            self._overflowed = True
            return False

    def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Next event, or raise ``queue.Empty`` after ``timeout`` seconds."""
        if self._overflowed:
            self._overflowed = False
            self._drain()
            return {"type": "resync", "topic": self.topic}
        return self._queue.get(timeout=timeout)

    def _drain(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except Empty:
                return

    def close(self) -> None:
        unsubscribe(self)


def subscribe(topic: str, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
    sub = Subscription(topic, maxsize=maxsize)
    with _lock:
        _subs.setdefault(topic, []).append(sub)
    return sub


def unsubscribe(sub: Subscription) -> None:
    with _lock:
        arr = _subs.get(sub.topic)
        if not arr:
            return
        try:
            arr.remove(sub)
        except ValueError:
            pass
        if not arr:
            _subs.pop(sub.topic, None)


def publish(topic: str, event: Dict[str, Any]) -> int:
    """Deliver ``event`` to every current subscriber of ``topic``; never blocks.

    Returns the number of mailboxes that accepted it.
    """
    with _lock:
        arr = list(_subs.get(topic, []))
    delivered = 0
    for sub in arr:
        if sub.offer(event):
            delivered += 1
        else:
            _logger.warning("subscriber mailbox full on %s; flagged for resync", topic)
    return delivered


def subscriber_count(topic: str) -> int:
    with _lock:
        return len(_subs.get(topic, []))


def reset() -> None:
    with _lock:
        _subs.clear()
