import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    session_id: str
    version: int
    kind: str


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, feed: "ChangeFeed", session_id: str, token: int):
        self._feed = feed
        self.session_id = session_id
        self._token = token
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._feed._remove(self.session_id, self._token)


class ChangeFeed:
    """Per-session change notification.

    Writers call ``publish`` after committing; readers ``subscribe`` and re-read
    whatever they display when called back. Callbacks run on the publishing
    thread and must not block.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._versions: Dict[str, int] = {}
        self._subscribers: Dict[str, Dict[int, ChangeCallback]] = {}
        self._tokens = itertools.count(1)

    def version(self, session_id: str) -> int:
        with self._lock:
            return self._versions.get(session_id, 0)

    def subscribe(self, session_id: str, on_change: ChangeCallback) -> Subscription:
        with self._lock:
            token = next(self._tokens)
            self._subscribers.setdefault(session_id, {})[token] = on_change
        return Subscription(self, session_id, token)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, {}))

    def publish(self, session_id: str, kind: str) -> ChangeEvent:
        with self._lock:
            version = self._versions.get(session_id, 0) + 1
            self._versions[session_id] = version
            callbacks = list(self._subscribers.get(session_id, {}).values())
        event = ChangeEvent(session_id=session_id, version=version, kind=kind)
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("[feed] Subscriber failed for session %s (%s)", session_id, kind)
        return event

    def _remove(self, session_id: str, token: int) -> None:
        with self._lock:
            subs = self._subscribers.get(session_id)
            if not subs:
                return
            subs.pop(token, None)
            if not subs:
                del self._subscribers[session_id]
