from __future__ import annotations

from typing import Callable
import logging
import threading

from match_engine import Match


logger = logging.getLogger("quickmatch.feed")


class SubscriptionUnavailable(Exception):
    pass


class MatchChangeFeed:
    """Row-level change notifications for match records, keyed by match id.

    Each feed owns its own subscriber registry; construct one per engine (or
    per test) and close it on shutdown.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, dict[int, Callable[[Match], None]]] = {}
        self._next_token = 0
        self._closed = False

    def subscribe(self, match_id: str, on_change: Callable[[Match], None]) -> Callable[[], None]:
        match_key = (match_id or "").strip()
        if not match_key:
            raise ValueError("invalid_match_id")
        with self._lock:
            if self._closed:
                raise SubscriptionUnavailable("feed_closed")
            self._next_token += 1
            token = self._next_token
            self._subscribers.setdefault(match_key, {})[token] = on_change
        logger.debug("feed_subscribed match_id=%s token=%s", match_key, token)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._subscribers.get(match_key)
                if not listeners or listeners.pop(token, None) is None:
                    return
                if not listeners:
                    self._subscribers.pop(match_key, None)
            logger.debug("feed_unsubscribed match_id=%s token=%s", match_key, token)

        return unsubscribe

    def publish(self, match: Match) -> int:
        """Deliver ``match`` to its subscribers, in subscription order."""
        with self._lock:
            callbacks = list((self._subscribers.get(match.id) or {}).values())
        delivered = 0
        for callback in callbacks:
            try:
                callback(match)
                delivered += 1
            except Exception:
                logger.exception("feed_callback_failed match_id=%s", match.id)
        return delivered

    def subscriber_count(self, match_id: str | None = None) -> int:
        with self._lock:
            if match_id is not None:
                return len(self._subscribers.get(match_id) or {})
            return sum(len(listeners) for listeners in self._subscribers.values())

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._subscribers.clear()
