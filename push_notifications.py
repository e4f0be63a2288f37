from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
import json
import logging
import sqlite3
import threading

from match_engine import Match


logger = logging.getLogger("quickmatch.push")

# A match notification is stale within minutes, so retries stop early.
RETRY_DELAYS_SECONDS = (10, 30, 120, 600)

_KEY_FIELDS = ("p256dh", "auth")


class PushTransientError(Exception):
    pass


class PushPermanentError(Exception):
    def __init__(self, message: str, *, deactivate_subscription: bool = False):
        super().__init__(message)
        self.deactivate_subscription = deactivate_subscription


def parse_subscription(subscription: Any) -> tuple[str, str, str]:
    """Return ``(endpoint, p256dh, auth)`` from a browser PushSubscription JSON."""
    keys = subscription.get("keys") if isinstance(subscription, dict) else None
    if not isinstance(keys, dict):
        raise ValueError("invalid_subscription")
    parts = [str(subscription.get("endpoint") or "").strip()]
    parts.extend(str(keys.get(field) or "").strip() for field in _KEY_FIELDS)
    if not all(parts):
        raise ValueError("invalid_subscription")
    endpoint, p256dh, auth = parts
    return endpoint, p256dh, auth


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PushNotificationService:
    """Web Push to both participants when a match is created.

    ``notify_match`` only queues one delivery row per active subscription, so
    the pairing procedure never waits on a push endpoint. The worker (or a
    direct ``deliver_due`` call) sends them; transient failures are retried
    with ``RETRY_DELAYS_SECONDS`` backoff, permanent ones are not.
    """

    def __init__(
        self,
        *,
        db_path: str | Path,
        enabled: bool,
        vapid_private_key: str,
        vapid_subject: str,
        poll_interval_seconds: int = 2,
    ) -> None:
        self.db_path = Path(db_path)
        self.enabled = bool(enabled)
        self.vapid_private_key = (vapid_private_key or "").strip()
        self.vapid_subject = (vapid_subject or "").strip()
        self.poll_interval_seconds = max(int(poll_interval_seconds), 1)
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._initialized = False
        self._sender: Callable[[dict[str, Any], dict[str, Any]], None] = self._send_with_webpush

    def set_sender_for_tests(self, sender: Callable[[dict[str, Any], dict[str, Any]], None]) -> None:
        self._sender = sender

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._db() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS push_subscriptions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    endpoint TEXT NOT NULL UNIQUE,
                    p256dh TEXT NOT NULL,
                    auth TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_push_subscriptions_user ON push_subscriptions(user_id, status);
                CREATE TABLE IF NOT EXISTS match_push_deliveries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    match_id TEXT NOT NULL,
                    subscription_id INTEGER NOT NULL,
                    state TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    due_at TEXT NOT NULL,
                    last_error TEXT,
                    sent_at TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(match_id, subscription_id)
                );
                CREATE INDEX IF NOT EXISTS idx_match_push_due ON match_push_deliveries(state, due_at);
                """
            )
        self._initialized = True

    def start_worker(self) -> None:
        if not self.enabled:
            return
        self.init_db()
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._worker_loop, name="match-push-worker", daemon=True)
            self._thread.start()

    def stop_worker(self) -> None:
        self._stop_event.set()
        with self._state_lock:
            thread, self._thread = self._thread, None
        if thread and thread.is_alive():
            thread.join(timeout=3)

    def register_subscription(self, *, subscription: dict[str, Any], user_id: str) -> int:
        self._ensure_initialized()
        endpoint, p256dh, auth = parse_subscription(subscription)
        user_norm = (user_id or "").strip()
        if not user_norm:
            raise ValueError("invalid_user_id")

        now_iso = _utcnow().isoformat()
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO push_subscriptions (endpoint, p256dh, auth, user_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'active', ?, ?)
                ON CONFLICT(endpoint) DO UPDATE SET
                    p256dh=excluded.p256dh,
                    auth=excluded.auth,
                    user_id=excluded.user_id,
                    status='active',
                    last_error=NULL,
                    updated_at=excluded.updated_at
                """,
                (endpoint, p256dh, auth, user_norm, now_iso, now_iso),
            )
            row = conn.execute("SELECT id FROM push_subscriptions WHERE endpoint = ?", (endpoint,)).fetchone()
        if not row:
            raise RuntimeError("push_subscription_upsert_failed")
        sub_id = int(row["id"])
        logger.info("push_subscription_active subscription_id=%s user_id=%s", sub_id, user_norm)
        return sub_id

    def unregister_subscription(self, *, endpoint: str) -> int:
        self._ensure_initialized()
        endpoint_norm = (endpoint or "").strip()
        if not endpoint_norm:
            raise ValueError("missing_identifier")
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE push_subscriptions SET status='inactive', updated_at=? WHERE status='active' AND endpoint=?",
                (_utcnow().isoformat(), endpoint_norm),
            )
        return int(cur.rowcount)

    def notify_match(self, match: Match) -> int:
        """Queue a delivery to every active subscription of both users.

        Returns the number of deliveries queued. Nothing is sent here.
        """
        if not self.enabled:
            return 0
        self._ensure_initialized()
        now_iso = _utcnow().isoformat()
        with self._db() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO match_push_deliveries (match_id, subscription_id, due_at, created_at)
                SELECT ?, id, ?, ? FROM push_subscriptions
                WHERE status = 'active' AND user_id IN (?, ?)
                ORDER BY id
                """,
                (match.id, now_iso, now_iso, match.user_a, match.user_b),
            )
        queued = max(int(cur.rowcount), 0)
        logger.info("match_push_queued match_id=%s deliveries=%s", match.id, queued)
        return queued

    def deliver_due(self, *, limit: int = 50, now: datetime | None = None) -> dict[str, int]:
        stats = {"sent": 0, "retrying": 0, "failed_permanent": 0}
        if not self.enabled:
            return stats
        self._ensure_initialized()
        now_dt = now or _utcnow()
        with self._db() as conn:
            due = conn.execute(
                """
                SELECT d.id, d.match_id, d.attempts, d.subscription_id, s.endpoint, s.p256dh, s.auth
                FROM match_push_deliveries d
                JOIN push_subscriptions s ON s.id = d.subscription_id AND s.status = 'active'
                WHERE d.state IN ('pending', 'retrying') AND d.due_at <= ?
                ORDER BY d.due_at, d.id
                LIMIT ?
                """,
                (now_dt.isoformat(), max(int(limit), 1)),
            ).fetchall()

        for row in due:
            subscription = {"endpoint": row["endpoint"], "keys": {field: row[field] for field in _KEY_FIELDS}}
            try:
                self._sender(subscription, self._match_payload(row["match_id"]))
            except PushPermanentError as exc:
                outcome = self._give_up(row, str(exc), now_dt, deactivate=exc.deactivate_subscription)
            except Exception as exc:
                outcome = self._retry_or_give_up(row, str(exc), now_dt)
            else:
                outcome = self._record(row["id"], "sent", row["attempts"] + 1, now_dt, sent=True)
            stats[outcome] += 1
            logger.info(
                "match_push_%s match_id=%s delivery_id=%s subscription_id=%s",
                outcome,
                row["match_id"],
                row["id"],
                row["subscription_id"],
            )
        return stats

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.deliver_due()
            except Exception:
                logger.exception("match_push_iteration_failed")
            self._stop_event.wait(self.poll_interval_seconds)

    def _retry_or_give_up(self, row: sqlite3.Row, error: str, now: datetime) -> str:
        attempts = int(row["attempts"]) + 1
        if attempts > len(RETRY_DELAYS_SECONDS):
            return self._give_up(row, error, now, deactivate=False)
        due_at = now + timedelta(seconds=RETRY_DELAYS_SECONDS[attempts - 1])
        return self._record(row["id"], "retrying", attempts, now, error=error, due_at=due_at)

    def _give_up(self, row: sqlite3.Row, error: str, now: datetime, *, deactivate: bool) -> str:
        outcome = self._record(row["id"], "failed_permanent", int(row["attempts"]) + 1, now, error=error)
        with self._db() as conn:
            conn.execute(
                "UPDATE push_subscriptions SET last_error=?, updated_at=?,"
                " status=CASE WHEN ? THEN 'inactive' ELSE status END WHERE id=?",
                (error[:500], now.isoformat(), int(deactivate), row["subscription_id"]),
            )
        return outcome

    def _record(
        self,
        delivery_id: int,
        state: str,
        attempts: int,
        now: datetime,
        *,
        error: str | None = None,
        due_at: datetime | None = None,
        sent: bool = False,
    ) -> str:
        with self._db() as conn:
            conn.execute(
                """
                UPDATE match_push_deliveries
                SET state=?, attempts=?, last_error=?, due_at=COALESCE(?, due_at), sent_at=?
                WHERE id=?
                """,
                (
                    state,
                    attempts,
                    error[:500] if error else None,
                    due_at.isoformat() if due_at else None,
                    now.isoformat() if sent else None,
                    delivery_id,
                ),
            )
        return state

    @staticmethod
    def _match_payload(match_id: str) -> dict[str, Any]:
        # No PII in the payload; the client resolves the match by id.
        return {
            "title": "Quick Match",
            "body": "We found someone for you. Open the app to join the call.",
            "url": f"/quick-match?match={match_id}",
            "match_id": match_id,
        }

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.init_db()

    def _send_with_webpush(self, subscription: dict[str, Any], payload: dict[str, Any]) -> None:
        if not (self.vapid_private_key and self.vapid_subject):
            raise PushTransientError("missing_vapid")
        try:
            from pywebpush import WebPushException, webpush  # type: ignore
        except Exception as exc:
            raise PushTransientError("pywebpush_import_failed") from exc

        try:
            webpush(
                subscription_info=subscription,
                data=json.dumps(payload, ensure_ascii=False),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                timeout=10,
            )
        except WebPushException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            if status_code in {404, 410}:
                raise PushPermanentError(
                    f"webpush_subscription_gone_{status_code}",
                    deactivate_subscription=True,
                ) from exc
            raise PushTransientError(str(exc) or "webpush_failed") from exc

    @contextmanager
    def _db(self):
        """Connection that commits on success and rolls back on error."""
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=3000")
        try:
            with conn:
                yield conn
        finally:
            conn.close()
