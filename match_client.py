from __future__ import annotations

from enum import Enum
from functools import wraps
from typing import Any, Callable
import logging
import threading

from change_feed import SubscriptionUnavailable
from match_engine import ALLOWED_TRANSITIONS, ANY_GENDER, Match, MatchStatus, MatchStoreError


logger = logging.getLogger("quickmatch.client")

POLL_INTERVAL_SECONDS = 2.0

END_REASON_TIMEOUT = "timeout"


class Phase(str, Enum):
    IDLE = "idle"
    QUEUE = "queue"
    MATCHED = "matched"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"


_PHASE_RANK = {
    Phase.IDLE: 0,
    Phase.QUEUE: 1,
    Phase.MATCHED: 2,
    Phase.CONNECTING: 3,
    Phase.CONNECTED: 4,
    Phase.ENDED: 5,
}

# Phase a freshly found match puts the session in (None: stay in queue).
_WIRE_PHASES: dict[MatchStatus, Phase | None] = {
    MatchStatus.WAITING: None,
    MatchStatus.MATCHED: Phase.MATCHED,
    MatchStatus.CONNECTED: Phase.CONNECTED,
    MatchStatus.ENDED: Phase.ENDED,
    MatchStatus.CANCELLED: Phase.ENDED,
}

# Phase a change event moves the session towards (None: refresh match only).
_EVENT_PHASES: dict[MatchStatus, Phase | None] = {
    MatchStatus.WAITING: None,
    MatchStatus.MATCHED: Phase.MATCHED,
    MatchStatus.CONNECTED: Phase.CONNECTED,
    MatchStatus.ENDED: Phase.ENDED,
    MatchStatus.CANCELLED: Phase.ENDED,
}


class _TimerTask:
    def __init__(self, interval: float, fn: Callable[[], None], *, repeat: bool, name: str) -> None:
        self.interval = max(float(interval), 0.0)
        self._fn = fn
        self._repeat = repeat
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "_TimerTask":
        self._thread.start()
        return self

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _run(self) -> None:
        while not self._cancelled.wait(self.interval):
            try:
                self._fn()
            except Exception:
                logger.exception("timer_task_failed name=%s", self._thread.name)
            if not self._repeat:
                return


class ThreadScheduler:
    """Runs timers on daemon threads that wait on an Event between ticks."""

    def call_every(self, interval: float, fn: Callable[[], None], *, name: str = "match-poll") -> _TimerTask:
        return _TimerTask(interval, fn, repeat=True, name=name).start()

    def call_later(self, delay: float, fn: Callable[[], None], *, name: str = "match-timeout") -> _TimerTask:
        return _TimerTask(delay, fn, repeat=False, name=name).start()


def _dispatches_events(method: Callable[..., Any]) -> Callable[..., Any]:
    """Deliver queued listener events once ``method`` has released the lock."""

    @wraps(method)
    def wrapper(self: "MatchClientController", *args: Any, **kwargs: Any) -> Any:
        try:
            return method(self, *args, **kwargs)
        finally:
            self._dispatch()

    return wrapper


class MatchClientController:
    """Drives one user's quick-match session from idle to connected or ended.

    ``backend`` is anything exposing ``enqueue``, ``find_active_match``,
    ``dequeue_self``, ``get_match``, ``update_match_status`` and
    ``subscribe_match_changes`` (see ``match_backends``). ``scheduler``
    provides ``call_every``/``call_later`` returning objects with ``cancel()``.

    Listeners are called outside the controller's lock, in transition order.

    A controller runs at most one session. Once it is stopped or ended, build
    a new one to match again.
    """

    def __init__(
        self,
        backend: Any,
        *,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        timeout_seconds: float | None = None,
        scheduler: Any = None,
    ) -> None:
        self._backend = backend
        self._poll_interval = max(float(poll_interval_seconds), 0.01)
        self._timeout_seconds = timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self._scheduler = scheduler or ThreadScheduler()
        self._lock = threading.RLock()
        self._listeners: list[Callable[[Phase, Match | None], None]] = []
        self._events: list[tuple[Phase, Match | None, list[Callable[[Phase, Match | None], None]]]] = []
        self._dispatching = False

        self._phase = Phase.IDLE
        self._match: Match | None = None
        self._end_reason: str | None = None
        self._user_id: str | None = None
        self._submitted = False
        self._resolved = False
        self._closed = False

        self._poll_task: Any = None
        self._watch_task: Any = None
        self._timeout_task: Any = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def match(self) -> Match | None:
        return self._match

    @property
    def end_reason(self) -> str | None:
        return self._end_reason

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, callback: Callable[[Phase, Match | None], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    @_dispatches_events
    def start(
        self,
        user_id: str,
        *,
        gender: str | None = None,
        want: str | None = ANY_GENDER,
        locale: str | None = None,
        region: str | None = None,
        priority: int = 0,
    ) -> bool:
        """Join the queue and start watching for a match.

        Returns False without touching the backend when this controller has
        already started (or was stopped). Submission and initial lookup
        errors propagate; the controller is back in ``idle`` afterwards.
        """
        user_norm = (user_id or "").strip()
        if not user_norm:
            raise ValueError("invalid_user_id")

        with self._lock:
            if self._closed or self._phase is not Phase.IDLE:
                logger.info("start_ignored user_id=%s phase=%s", user_norm, self._phase.value)
                return False
            self._user_id = user_norm
            self._set_phase(Phase.QUEUE)

        try:
            self._backend.enqueue(user_norm, gender, want or ANY_GENDER, locale, region, priority)
        except Exception as exc:
            logger.warning("enqueue_failed user_id=%s error=%s", user_norm, exc)
            with self._lock:
                self._set_phase(Phase.IDLE)
            raise

        with self._lock:
            discarded = self._closed
            self._submitted = not discarded
        if discarded:
            # stop() ran while the submission was in flight.
            self._withdraw()
            return False
        logger.info("session_queued user_id=%s want=%s", user_norm, want or ANY_GENDER)

        try:
            existing = self._backend.find_active_match(user_norm)
        except Exception as exc:
            logger.warning("initial_lookup_failed user_id=%s error=%s", user_norm, exc)
            self._cancel_queue_entry()
            with self._lock:
                self._set_phase(Phase.IDLE)
            raise

        if existing is not None:
            if self._wire(existing, source="initial_lookup"):
                # The match predates this submission; the new entry must not stay waiting.
                self._cancel_queue_entry()
            return True

        with self._lock:
            if self._closed or self._resolved:
                return True
            self._poll_task = self._scheduler.call_every(self._poll_interval, self._poll_tick)
            if self._timeout_seconds:
                self._timeout_task = self._scheduler.call_later(self._timeout_seconds, self._on_timeout)
        return True

    def stop(self) -> None:
        """Tear the session down. Safe to call at any point, any number of times.

        The phase is left as it is. A queue entry that never got paired is
        withdrawn, and so is a pairing this session never got to see.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            withdraw = self._submitted and not self._resolved
            self._release()
        if withdraw:
            self._withdraw()
        logger.info("session_stopped user_id=%s phase=%s", self._user_id, self._phase.value)

    @_dispatches_events
    def mark_connecting(self) -> bool:
        """Record that call setup started for a matched session."""
        with self._lock:
            if self._closed or self._phase is not Phase.MATCHED:
                return False
            self._set_phase(Phase.CONNECTING)
            return True

    def __enter__(self) -> "MatchClientController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # --- callbacks ---

    @_dispatches_events
    def _poll_tick(self) -> None:
        with self._lock:
            if self._closed or self._resolved:
                return
            user_id = self._user_id
        try:
            found = self._backend.find_active_match(user_id)
        except (MatchStoreError, OSError) as exc:
            logger.warning("poll_lookup_failed user_id=%s error=%s", user_id, exc)
            return
        except Exception:
            logger.exception("poll_lookup_failed user_id=%s", user_id)
            return
        if found is not None:
            self._wire(found, source="poll")

    @_dispatches_events
    def _watch_tick(self) -> None:
        with self._lock:
            if self._closed or self._match is None or self._phase is Phase.ENDED:
                return
            current = self._match
        try:
            latest = self._backend.get_match(current.id)
        except (MatchStoreError, OSError) as exc:
            logger.warning("watch_lookup_failed match_id=%s error=%s", current.id, exc)
            return
        except Exception:
            logger.exception("watch_lookup_failed match_id=%s", current.id)
            return
        if latest is None:
            logger.info("watch_match_missing match_id=%s", current.id)
            return
        if latest != current:
            self._on_match_change(latest)

    @_dispatches_events
    def _on_match_change(self, match: Match) -> None:
        with self._lock:
            if self._closed or self._match is None or self._phase is Phase.ENDED:
                return
            if match.id != self._match.id:
                return
            self._match = match
            target = _EVENT_PHASES[match.status]
            if target is not None and _PHASE_RANK[target] > _PHASE_RANK[self._phase]:
                if target is Phase.ENDED:
                    self._end(match.status.value)
                else:
                    self._set_phase(target)
            else:
                self._notify()

    @_dispatches_events
    def _on_timeout(self) -> None:
        with self._lock:
            if self._closed or self._resolved or self._phase is Phase.ENDED:
                return
            self._resolved = True
            logger.info("session_timed_out user_id=%s", self._user_id)
            self._end(END_REASON_TIMEOUT)
        self._withdraw()

    # --- internals ---

    def _wire(self, match: Match, *, source: str) -> bool:
        with self._lock:
            if self._closed or self._resolved:
                if self._match is not None and self._match.id != match.id:
                    logger.info("wire_ignored match_id=%s wired_match_id=%s", match.id, self._match.id)
                return False
            self._resolved = True
            self._submitted = False
            self._cancel_task("_poll_task")
            self._cancel_task("_timeout_task")
            self._match = match
            logger.info(
                "match_wired user_id=%s match_id=%s status=%s source=%s",
                self._user_id,
                match.id,
                match.status.value,
                source,
            )

            target = _WIRE_PHASES[match.status]
            if target is Phase.ENDED:
                self._end(match.status.value)
                return True
            if target is not None:
                self._set_phase(target)
            else:
                self._notify()

        try:
            unsubscribe = self._backend.subscribe_match_changes(match.id, self._on_match_change)
        except SubscriptionUnavailable as exc:
            logger.info("subscription_unavailable match_id=%s reason=%s", match.id, exc)
            with self._lock:
                self._start_watch()
            return True
        except Exception:
            logger.exception("subscription_failed match_id=%s", match.id)
            with self._lock:
                self._start_watch()
            return True

        with self._lock:
            keep = not self._closed and self._phase is not Phase.ENDED
            if keep:
                self._unsubscribe = unsubscribe
        if not keep:
            self._call_unsubscribe(unsubscribe)
            return True
        self._resync(match)
        return True

    def _resync(self, wired: Match) -> None:
        # Changes written between the lookup and the subscription never reach the feed callback.
        try:
            latest = self._backend.get_match(wired.id)
        except Exception as exc:
            logger.warning("resync_failed match_id=%s error=%s", wired.id, exc)
            with self._lock:
                self._start_watch()
            return
        if latest is None:
            return
        with self._lock:
            current = self._match
        if current is None or latest.status is current.status:
            return
        if latest.status not in ALLOWED_TRANSITIONS[current.status]:
            return
        logger.info("match_resynced match_id=%s status=%s", latest.id, latest.status.value)
        self._on_match_change(latest)

    def _start_watch(self) -> None:
        if self._watch_task is None and not self._closed and self._phase is not Phase.ENDED:
            self._watch_task = self._scheduler.call_every(self._poll_interval, self._watch_tick, name="match-watch")

    def _end(self, reason: str) -> None:
        self._end_reason = reason
        self._set_phase(Phase.ENDED)
        self._release()

    def _release(self) -> None:
        self._cancel_task("_poll_task")
        self._cancel_task("_watch_task")
        self._cancel_task("_timeout_task")
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            self._call_unsubscribe(unsubscribe)

    def _call_unsubscribe(self, unsubscribe: Callable[[], None]) -> None:
        try:
            unsubscribe()
        except Exception:
            logger.exception("unsubscribe_failed user_id=%s", self._user_id)

    def _cancel_task(self, attr: str) -> None:
        task = getattr(self, attr)
        setattr(self, attr, None)
        if task is not None:
            task.cancel()

    def _cancel_queue_entry(self) -> int | None:
        with self._lock:
            user_id = self._user_id
            self._submitted = False
        if not user_id:
            return None
        try:
            return self._backend.dequeue_self(user_id)
        except Exception as exc:
            logger.warning("dequeue_failed user_id=%s error=%s", user_id, exc)
            return None

    def _withdraw(self) -> None:
        """Leave the queue for a session that was never wired to a match.

        When the entry is already gone, the pairing procedure consumed it
        before any lookup saw the result. That match is cancelled so the
        counterpart ends too and both users can be paired again.
        """
        if self._cancel_queue_entry() is not None:
            return
        user_id = self._user_id
        try:
            unseen = self._backend.find_active_match(user_id)
            if unseen is None:
                return
            self._backend.update_match_status(unseen.id, MatchStatus.CANCELLED, user_id)
        except Exception as exc:
            logger.warning("unseen_match_cancel_failed user_id=%s error=%s", user_id, exc)
            return
        logger.info("unseen_match_cancelled user_id=%s match_id=%s", user_id, unseen.id)

    def _set_phase(self, phase: Phase) -> None:
        if phase is self._phase:
            return
        previous = self._phase
        self._phase = phase
        logger.info(
            "phase_changed user_id=%s from=%s to=%s",
            self._user_id,
            previous.value,
            phase.value,
        )
        self._notify()

    def _notify(self) -> None:
        self._events.append((self._phase, self._match, list(self._listeners)))

    def _dispatch(self) -> None:
        with self._lock:
            if self._dispatching:
                return
            self._dispatching = True
        try:
            while True:
                with self._lock:
                    if not self._events:
                        self._dispatching = False
                        return
                    phase, match, listeners = self._events.pop(0)
                for callback in listeners:
                    try:
                        callback(phase, match)
                    except Exception:
                        logger.exception("listener_failed user_id=%s", self._user_id)
        except BaseException:
            with self._lock:
                self._dispatching = False
            raise
