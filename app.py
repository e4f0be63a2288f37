from contextlib import asynccontextmanager
from pathlib import Path
import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from change_feed import MatchChangeFeed
from match_engine import (
    ANY_GENDER,
    InvalidTransitionError,
    Match,
    MatchAccessError,
    MatchEngine,
    MatchNotFoundError,
    MatchStatus,
    MatchStoreError,
)
from push_notifications import PushNotificationService

BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("quickmatch.api")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _get_env(name: str) -> str:
    return os.getenv(name, "").strip()


DB_PATH = os.getenv("QUICKMATCH_DB_PATH", str(BASE_DIR / "data" / "quickmatch.sqlite3"))
# Matchmaker worker is ON by default; disable it when pairing runs elsewhere.
WORKER_ENABLED = _env_flag("QUICKMATCH_WORKER_ENABLED", "true")
PAIR_INTERVAL_SECONDS = int(os.getenv("QUICKMATCH_PAIR_INTERVAL_SECONDS", "2"))
QUEUE_TTL_SECONDS = int(os.getenv("QUICKMATCH_QUEUE_TTL_SECONDS", str(10 * 60)))
MATCH_TTL_SECONDS = int(os.getenv("QUICKMATCH_MATCH_TTL_SECONDS", str(10 * 60)))
PUSH_MATCH_NOTIFICATIONS_ENABLED = _env_flag("PUSH_MATCH_NOTIFICATIONS_ENABLED", "false")
PUSH_WORKER_POLL_SECONDS = int(os.getenv("PUSH_WORKER_POLL_SECONDS", "2"))

FEED = MatchChangeFeed()
ENGINE = MatchEngine(
    db_path=DB_PATH,
    feed=FEED,
    pair_interval_seconds=PAIR_INTERVAL_SECONDS,
    queue_ttl_seconds=QUEUE_TTL_SECONDS,
    match_ttl_seconds=MATCH_TTL_SECONDS,
)
PUSH_SERVICE = PushNotificationService(
    db_path=DB_PATH,
    enabled=PUSH_MATCH_NOTIFICATIONS_ENABLED,
    vapid_private_key=_get_env("VAPID_PRIVATE_KEY"),
    vapid_subject=_get_env("VAPID_SUBJECT"),
    poll_interval_seconds=PUSH_WORKER_POLL_SECONDS,
)


def notify_match(match: Match) -> None:
    """Match hook: queue a push to both users. Never breaks pairing."""
    try:
        PUSH_SERVICE.notify_match(match)
    except Exception:
        logger.exception("match_push_failed match_id=%s", match.id)


ENGINE.set_match_hook(notify_match)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    ENGINE.init_db()
    PUSH_SERVICE.init_db()
    if WORKER_ENABLED:
        ENGINE.start_worker()
    PUSH_SERVICE.start_worker()
    try:
        yield
    finally:
        ENGINE.stop_worker()
        PUSH_SERVICE.stop_worker()
        FEED.close()


app = FastAPI(lifespan=lifespan)


class EnqueueIn(BaseModel):
    user_id: str
    gender: str | None = None
    want: str | None = ANY_GENDER
    locale: str | None = None
    region: str | None = None
    priority: int = 0


class LeaveIn(BaseModel):
    user_id: str


class MatchStatusIn(BaseModel):
    status: str
    user_id: str


class PushRegisterIn(BaseModel):
    subscription: dict
    user_id: str


class PushUnregisterIn(BaseModel):
    endpoint: str


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error, "message": message})


def _require_user_id(raw: str | None) -> str:
    user_id = (raw or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing user_id")
    return user_id


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/api/match/enqueue")
def match_enqueue(body: EnqueueIn):
    user_id = _require_user_id(body.user_id)
    try:
        entry_id = ENGINE.enqueue(
            user_id,
            body.gender,
            body.want,
            body.locale,
            body.region,
            body.priority,
        )
    except MatchStoreError:
        logger.exception("enqueue_failed user_id=%s", user_id)
        return _error(503, "enqueue_failed", "Could not join the queue. Try again.")
    return {"ok": True, "entry_id": entry_id}


@app.post("/api/match/leave")
def match_leave(body: LeaveIn):
    user_id = _require_user_id(body.user_id)
    try:
        entry_id = ENGINE.dequeue_self(user_id)
    except MatchStoreError:
        logger.exception("dequeue_failed user_id=%s", user_id)
        return _error(503, "dequeue_failed", "Could not leave the queue. Try again.")
    return {"ok": True, "entry_id": entry_id}


@app.get("/api/match/active")
def match_active(user_id: str):
    user_norm = _require_user_id(user_id)
    try:
        match = ENGINE.find_active_match(user_norm)
    except MatchStoreError:
        logger.exception("active_lookup_failed user_id=%s", user_norm)
        return _error(503, "lookup_failed", "Could not look up your match. Try again.")
    return {"ok": True, "match": match.to_row() if match else None}


@app.get("/api/match/queue")
def match_queue_size():
    try:
        waiting = ENGINE.count_waiting()
    except MatchStoreError:
        logger.exception("queue_size_failed")
        return _error(503, "queue_unavailable", "Could not read the queue. Try again.")
    return {"ok": True, "waiting": waiting}


@app.post("/api/match/pop")
def match_pop():
    try:
        created = ENGINE.pop_and_match()
    except MatchStoreError:
        logger.exception("pop_and_match_failed")
        return _error(503, "pairing_failed", "Could not run the pairing. Try again.")
    return {"ok": True, "matches": [m.to_row() for m in created]}


@app.get("/api/match/{match_id}")
def match_get(match_id: str):
    try:
        match = ENGINE.get_match(match_id)
    except MatchStoreError:
        logger.exception("match_lookup_failed match_id=%s", match_id)
        return _error(503, "lookup_failed", "Could not load the match. Try again.")
    if not match:
        raise HTTPException(status_code=404, detail="match_not_found")
    return {"ok": True, "match": match.to_row()}


@app.post("/api/match/{match_id}/status")
def match_set_status(match_id: str, body: MatchStatusIn):
    user_id = _require_user_id(body.user_id)
    try:
        status = MatchStatus((body.status or "").strip().lower())
    except ValueError:
        return _error(400, "invalid_status", "Unknown match status.")
    try:
        match = ENGINE.update_match_status(match_id, status, user_id=user_id)
    except MatchNotFoundError:
        return _error(404, "match_not_found", "Match not found.")
    except MatchAccessError:
        return _error(403, "not_a_participant", "You are not part of this match.")
    except InvalidTransitionError as exc:
        return _error(409, "invalid_transition", str(exc))
    except MatchStoreError:
        logger.exception("status_update_failed match_id=%s", match_id)
        return _error(503, "update_failed", "Could not update the match. Try again.")
    return {"ok": True, "match": match.to_row()}


@app.post("/api/push/register")
def push_register(body: PushRegisterIn):
    try:
        sub_id = PUSH_SERVICE.register_subscription(subscription=body.subscription, user_id=body.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "subscription_id": sub_id}


@app.post("/api/push/unregister")
def push_unregister(body: PushUnregisterIn):
    try:
        removed = PUSH_SERVICE.unregister_subscription(endpoint=body.endpoint)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "removed": removed}
