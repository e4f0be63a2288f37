from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable
import logging
import sqlite3
import threading
import uuid


queue_logger = logging.getLogger("quickmatch.queue")
match_logger = logging.getLogger("quickmatch.match")

QUEUE_TTL_SECONDS = 10 * 60
# A pairing nobody moved to connected within this window is given up.
MATCH_TTL_SECONDS = 10 * 60
ANY_GENDER = "any"
# "both" is what older profile rows store for "no preference".
_ANY_ALIASES = {"", "any", "both", "all"}


class QueueStatus(str, Enum):
    WAITING = "waiting"
    CANCELLED = "cancelled"


class MatchStatus(str, Enum):
    WAITING = "waiting"
    MATCHED = "matched"
    CONNECTED = "connected"
    ENDED = "ended"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.ENDED, MatchStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (MatchStatus.MATCHED, MatchStatus.CONNECTED)


# Status only moves forward; terminal statuses have no way out.
ALLOWED_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.WAITING: frozenset(
        {MatchStatus.MATCHED, MatchStatus.CONNECTED, MatchStatus.ENDED, MatchStatus.CANCELLED}
    ),
    MatchStatus.MATCHED: frozenset({MatchStatus.CONNECTED, MatchStatus.ENDED, MatchStatus.CANCELLED}),
    MatchStatus.CONNECTED: frozenset({MatchStatus.ENDED, MatchStatus.CANCELLED}),
    MatchStatus.ENDED: frozenset(),
    MatchStatus.CANCELLED: frozenset(),
}

ACTIVE_STATUSES = tuple(s.value for s in MatchStatus if s.is_active)


class MatchStoreError(Exception):
    pass


class MatchNotFoundError(MatchStoreError):
    pass


class InvalidTransitionError(MatchStoreError):
    def __init__(self, current: MatchStatus, requested: MatchStatus):
        super().__init__(f"invalid_transition {current.value}->{requested.value}")
        self.current = current
        self.requested = requested


class MatchAccessError(MatchStoreError):
    pass


@dataclass(frozen=True)
class QueueEntry:
    id: int
    user_id: str
    gender: str | None
    want: str
    locale: str | None
    region: str | None
    priority: int
    status: QueueStatus
    created_at: str
    dequeued_at: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "QueueEntry":
        data = dict(row)
        return cls(
            id=int(data["id"]),
            user_id=str(data["user_id"]),
            gender=data.get("gender"),
            want=data.get("want") or ANY_GENDER,
            locale=data.get("locale"),
            region=data.get("region"),
            priority=int(data.get("priority") or 0),
            status=QueueStatus(data.get("status") or QueueStatus.WAITING.value),
            created_at=str(data["created_at"]),
            dequeued_at=data.get("dequeued_at"),
        )


@dataclass(frozen=True)
class Match:
    id: str
    user_a: str
    user_b: str
    status: MatchStatus
    created_at: str

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user_a, self.user_b)

    def other_user(self, user_id: str) -> str | None:
        if user_id == self.user_a:
            return self.user_b
        if user_id == self.user_b:
            return self.user_a
        return None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_a": self.user_a,
            "user_b": self.user_b,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> "Match":
        """Build a Match from a wire/database row.

        Accepts the ``a_user_id``/``b_user_id`` column names used by older
        rows; a row without a status is still waiting.
        """
        data = dict(row)
        user_a = data.get("user_a") or data.get("a_user_id")
        user_b = data.get("user_b") or data.get("b_user_id")
        if not data.get("id") or not user_a or not user_b:
            raise ValueError("invalid_match_row")
        return cls(
            id=str(data["id"]),
            user_a=str(user_a),
            user_b=str(user_b),
            status=MatchStatus(data.get("status") or MatchStatus.WAITING.value),
            created_at=str(data.get("created_at") or ""),
        )


def normalize_want(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    if value in _ANY_ALIASES:
        return ANY_GENDER
    return value


def _normalize_optional(raw: str | None) -> str | None:
    value = (raw or "").strip().lower()
    return value or None


def _mutual_pref(a: QueueEntry, b: QueueEntry) -> bool:
    """Return True if both users' preferences are satisfied."""

    def wants(x: QueueEntry, y: QueueEntry) -> bool:
        return x.want == ANY_GENDER or x.want == y.gender

    return wants(a, b) and wants(b, a)


def _affinity(a: QueueEntry, b: QueueEntry) -> int:
    score = 0
    if a.region and a.region == b.region:
        score += 1
    if a.locale and a.locale == b.locale:
        score += 1
    return score


def _candidate_key(anchor: QueueEntry, other: QueueEntry) -> tuple:
    return (-other.priority, -_affinity(anchor, other), other.created_at, other.id)


def pair_entries(entries: Iterable[QueueEntry], busy_users: Iterable[str] = ()) -> list[tuple[QueueEntry, QueueEntry]]:
    """Greedily pair waiting entries.

    Anchors are taken in fairness order (highest priority, then longest
    waiting). Each anchor gets the compatible partner with the highest
    priority, then the most shared locale/region hints, then the longest wait.
    Users in ``busy_users`` (already in an active match) are never paired.
    """
    busy = set(busy_users)
    pool = sorted(
        (e for e in entries if e.status is QueueStatus.WAITING and e.user_id not in busy),
        key=lambda e: (-e.priority, e.created_at, e.id),
    )
    taken: set[int] = set()
    pairs: list[tuple[QueueEntry, QueueEntry]] = []
    for anchor in pool:
        if anchor.id in taken:
            continue
        candidates = [
            other
            for other in pool
            if other.id != anchor.id
            and other.id not in taken
            and other.user_id != anchor.user_id
            and _mutual_pref(anchor, other)
        ]
        if not candidates:
            continue
        partner = min(candidates, key=lambda other: _candidate_key(anchor, other))
        taken.add(anchor.id)
        taken.add(partner.id)
        pairs.append((anchor, partner))
    return pairs


class MatchEngine:
    """Queue store, pairing procedure and match record store on one sqlite db.

    Every match write is published to ``feed`` (anything with a
    ``publish(match)`` method) after the transaction commits.
    """

    def __init__(
        self,
        *,
        db_path: str | Path,
        feed: Any = None,
        pair_interval_seconds: int = 2,
        queue_ttl_seconds: int = QUEUE_TTL_SECONDS,
        match_ttl_seconds: int = MATCH_TTL_SECONDS,
        on_match: Callable[[Match], None] | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.feed = feed
        self.pair_interval_seconds = max(int(pair_interval_seconds), 1)
        self.queue_ttl_seconds = max(int(queue_ttl_seconds), 1)
        self.match_ttl_seconds = max(int(match_ttl_seconds), 1)
        self._on_match = on_match
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        # Serializes enqueue + pairing to avoid double matches.
        self._match_lock = threading.Lock()
        self._initialized = False

    def set_match_hook(self, hook: Callable[[Match], None] | None) -> None:
        self._on_match = hook

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS match_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    gender TEXT,
                    want TEXT NOT NULL DEFAULT 'any',
                    locale TEXT,
                    region TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'waiting',
                    created_at TEXT NOT NULL,
                    dequeued_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS matches (
                    id TEXT PRIMARY KEY,
                    user_a TEXT NOT NULL,
                    user_b TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_match_queue_waiting_user "
                "ON match_queue(user_id) WHERE status = 'waiting'"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_match_queue_status ON match_queue(status, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_matches_user_a ON matches(user_a, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_matches_user_b ON matches(user_b, status)")
            conn.commit()
        self._initialized = True

    def start_worker(self) -> None:
        self.init_db()
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._worker_loop, name="matchmaker-worker", daemon=True)
            self._thread.start()

    def stop_worker(self) -> None:
        self._stop_event.set()
        with self._state_lock:
            thread = self._thread
            self._thread = None
        if thread and thread.is_alive():
            thread.join(timeout=3)

    # --- queue store ---

    def enqueue(
        self,
        user_id: str,
        gender: str | None = None,
        want: str | None = ANY_GENDER,
        locale: str | None = None,
        region: str | None = None,
        priority: int = 0,
    ) -> int:
        """Put the user in the waiting pool and return the entry id.

        A user who is already waiting keeps their place in the queue; only the
        preferences are refreshed.
        """
        self._ensure_initialized()
        user_norm = (user_id or "").strip()
        if not user_norm:
            raise ValueError("invalid_user_id")
        gender_norm = _normalize_optional(gender)
        want_norm = normalize_want(want)
        locale_norm = _normalize_optional(locale)
        region_norm = _normalize_optional(region)
        priority_norm = int(priority or 0)
        now_iso = self._utc_now().isoformat()

        with self._match_lock, self._db() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT id FROM match_queue WHERE user_id = ? AND status = 'waiting'",
                    (user_norm,),
                ).fetchone()
                if row:
                    entry_id = int(row["id"])
                    conn.execute(
                        """
                        UPDATE match_queue
                        SET gender=?, want=?, locale=?, region=?, priority=?
                        WHERE id=?
                        """,
                        (gender_norm, want_norm, locale_norm, region_norm, priority_norm, entry_id),
                    )
                    refreshed = True
                else:
                    cur = conn.execute(
                        """
                        INSERT INTO match_queue (user_id, gender, want, locale, region, priority, status, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, 'waiting', ?)
                        """,
                        (user_norm, gender_norm, want_norm, locale_norm, region_norm, priority_norm, now_iso),
                    )
                    entry_id = int(cur.lastrowid)
                    refreshed = False
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise MatchStoreError(f"enqueue_failed: {exc}") from exc

        queue_logger.info(
            "queue_enqueued user_id=%s entry_id=%s want=%s refreshed=%s",
            user_norm,
            entry_id,
            want_norm,
            refreshed,
        )
        return entry_id

    def dequeue_self(self, user_id: str) -> int | None:
        self._ensure_initialized()
        user_norm = (user_id or "").strip()
        if not user_norm:
            raise ValueError("invalid_user_id")
        now_iso = self._utc_now().isoformat()
        with self._match_lock, self._db() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT id FROM match_queue WHERE user_id = ? AND status = 'waiting'",
                    (user_norm,),
                ).fetchone()
                if not row:
                    conn.rollback()
                    return None
                entry_id = int(row["id"])
                conn.execute(
                    "UPDATE match_queue SET status='cancelled', dequeued_at=? WHERE id=?",
                    (now_iso, entry_id),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise MatchStoreError(f"dequeue_failed: {exc}") from exc
        queue_logger.info("queue_dequeued user_id=%s entry_id=%s", user_norm, entry_id)
        return entry_id

    def get_waiting_entry(self, user_id: str) -> QueueEntry | None:
        self._ensure_initialized()
        row = self._fetch_one(
            "SELECT * FROM match_queue WHERE user_id = ? AND status = 'waiting'",
            ((user_id or "").strip(),),
        )
        return QueueEntry.from_row(row) if row else None

    def count_waiting(self) -> int:
        self._ensure_initialized()
        row = self._fetch_one("SELECT COUNT(*) AS n FROM match_queue WHERE status = 'waiting'", ())
        return int(row["n"]) if row else 0

    def expire_stale_entries(self, now: datetime | None = None) -> int:
        """Cancel waiting entries older than the queue TTL."""
        self._ensure_initialized()
        now_dt = now or self._utc_now()
        cutoff = (now_dt - timedelta(seconds=self.queue_ttl_seconds)).isoformat()
        with self._match_lock, self._db() as conn:
            try:
                rows = conn.execute(
                    "SELECT id, user_id FROM match_queue WHERE status = 'waiting' AND created_at < ?",
                    (cutoff,),
                ).fetchall()
                if not rows:
                    return 0
                conn.executemany(
                    "UPDATE match_queue SET status='cancelled', dequeued_at=? WHERE id=? AND status='waiting'",
                    [(now_dt.isoformat(), int(row["id"])) for row in rows],
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise MatchStoreError(f"expire_failed: {exc}") from exc
        for row in rows:
            queue_logger.info("queue_expired user_id=%s entry_id=%s", row["user_id"], row["id"])
        return len(rows)

    # --- pairing procedure ---

    def pop_and_match(self) -> list[Match]:
        """Atomically pair every compatible set of waiting users.

        Paired entries leave the queue and each pair becomes one ``matched``
        record, all inside a single transaction.
        """
        self._ensure_initialized()
        created: list[Match] = []
        with self._match_lock, self._db() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                entries = [
                    QueueEntry.from_row(row)
                    for row in conn.execute("SELECT * FROM match_queue WHERE status = 'waiting'").fetchall()
                ]
                placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
                busy_rows = conn.execute(
                    f"SELECT user_a, user_b FROM matches WHERE status IN ({placeholders})",
                    ACTIVE_STATUSES,
                ).fetchall()
                busy = {row["user_a"] for row in busy_rows} | {row["user_b"] for row in busy_rows}

                now_iso = self._utc_now().isoformat()
                for anchor, partner in pair_entries(entries, busy_users=busy):
                    match = Match(
                        id=uuid.uuid4().hex,
                        user_a=anchor.user_id,
                        user_b=partner.user_id,
                        status=MatchStatus.MATCHED,
                        created_at=now_iso,
                    )
                    conn.execute(
                        """
                        INSERT INTO matches (id, user_a, user_b, status, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (match.id, match.user_a, match.user_b, match.status.value, now_iso, now_iso),
                    )
                    conn.execute(
                        "UPDATE match_queue SET status='cancelled', dequeued_at=? WHERE id IN (?, ?)",
                        (now_iso, anchor.id, partner.id),
                    )
                    created.append(match)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise MatchStoreError(f"pop_and_match_failed: {exc}") from exc

        for match in created:
            match_logger.info("match_created match_id=%s user_a=%s user_b=%s", match.id, match.user_a, match.user_b)
            self._publish(match)
            if self._on_match:
                try:
                    self._on_match(match)
                except Exception:
                    match_logger.exception("match_hook_failed match_id=%s", match.id)
        return created

    def expire_abandoned_matches(self, now: datetime | None = None) -> list[Match]:
        """Cancel ``matched`` records that never connected within the match TTL.

        Both users count as busy while such a record is active, so a client
        that vanished without cleaning up would otherwise block them for good.
        """
        self._ensure_initialized()
        now_dt = now or self._utc_now()
        cutoff = (now_dt - timedelta(seconds=self.match_ttl_seconds)).isoformat()
        with self._match_lock, self._db() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    "SELECT * FROM matches WHERE status = ? AND updated_at < ?",
                    (MatchStatus.MATCHED.value, cutoff),
                ).fetchall()
                if not rows:
                    conn.rollback()
                    return []
                conn.executemany(
                    "UPDATE matches SET status=?, updated_at=? WHERE id=? AND status=?",
                    [
                        (MatchStatus.CANCELLED.value, now_dt.isoformat(), row["id"], MatchStatus.MATCHED.value)
                        for row in rows
                    ],
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise MatchStoreError(f"expire_matches_failed: {exc}") from exc

        abandoned = []
        for row in rows:
            match = Match.from_row({**dict(row), "status": MatchStatus.CANCELLED.value})
            match_logger.info("match_abandoned match_id=%s user_a=%s user_b=%s", match.id, match.user_a, match.user_b)
            self._publish(match)
            abandoned.append(match)
        return abandoned

    def run_matchmaker_once(self, now: datetime | None = None) -> dict[str, int]:
        expired = self.expire_stale_entries(now=now)
        abandoned = self.expire_abandoned_matches(now=now)
        matched = self.pop_and_match()
        return {"expired": expired, "abandoned": len(abandoned), "matched": len(matched)}

    # --- match record store ---

    def get_match(self, match_id: str) -> Match | None:
        self._ensure_initialized()
        row = self._fetch_one("SELECT * FROM matches WHERE id = ?", ((match_id or "").strip(),))
        return Match.from_row(row) if row else None

    def find_active_match(self, user_id: str) -> Match | None:
        """Newest matched/connected record the user takes part in, if any."""
        self._ensure_initialized()
        user_norm = (user_id or "").strip()
        placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
        row = self._fetch_one(
            f"""
            SELECT * FROM matches
            WHERE (user_a = ? OR user_b = ?) AND status IN ({placeholders})
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (user_norm, user_norm, *ACTIVE_STATUSES),
        )
        return Match.from_row(row) if row else None

    def update_match_status(self, match_id: str, status: MatchStatus | str, *, user_id: str | None = None) -> Match:
        """Move a match forward to ``status`` and publish the new row.

        Re-applying the current status is a no-op. When ``user_id`` is given it
        must be one of the two participants.
        """
        self._ensure_initialized()
        requested = MatchStatus(status)
        with self._db() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT * FROM matches WHERE id = ?", (match_id,)).fetchone()
                if not row:
                    conn.rollback()
                    raise MatchNotFoundError(f"match_not_found {match_id}")
                current = Match.from_row(row)
                if user_id is not None and not current.involves(user_id):
                    conn.rollback()
                    raise MatchAccessError(f"not_a_participant {user_id}")
                if current.status is requested:
                    conn.rollback()
                    return current
                if requested not in ALLOWED_TRANSITIONS[current.status]:
                    conn.rollback()
                    raise InvalidTransitionError(current.status, requested)
                conn.execute(
                    "UPDATE matches SET status=?, updated_at=? WHERE id=?",
                    (requested.value, self._utc_now().isoformat(), match_id),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise MatchStoreError(f"update_failed: {exc}") from exc

        updated = Match(
            id=current.id,
            user_a=current.user_a,
            user_b=current.user_b,
            status=requested,
            created_at=current.created_at,
        )
        match_logger.info(
            "match_status_changed match_id=%s from=%s to=%s",
            match_id,
            current.status.value,
            requested.value,
        )
        self._publish(updated)
        return updated

    def _publish(self, match: Match) -> None:
        if self.feed is None:
            return
        self.feed.publish(match)

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                stats = self.run_matchmaker_once()
                if any(stats.values()):
                    match_logger.info(
                        "matchmaker_iteration expired=%s abandoned=%s matched=%s",
                        stats["expired"],
                        stats["abandoned"],
                        stats["matched"],
                    )
            except Exception:
                match_logger.exception("matchmaker_iteration_failed")
            self._stop_event.wait(self.pair_interval_seconds)

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self.init_db()

    def _fetch_one(self, query: str, params: tuple) -> sqlite3.Row | None:
        try:
            with self._db() as conn:
                return conn.execute(query, params).fetchone()
        except sqlite3.Error as exc:
            raise MatchStoreError(f"query_failed: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=3000")
        return conn

    @contextmanager
    def _db(self):
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise MatchStoreError(f"connect_failed: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)
