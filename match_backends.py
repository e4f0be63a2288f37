from __future__ import annotations

from typing import Any, Callable
from urllib.parse import quote, urlencode
import json
import logging
import urllib.error
import urllib.request

from change_feed import MatchChangeFeed, SubscriptionUnavailable
from match_engine import ANY_GENDER, Match, MatchEngine, MatchStatus, MatchStoreError


logger = logging.getLogger("quickmatch.backend")


class BackendError(MatchStoreError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LocalMatchBackend:
    """Backend for a controller running in the same process as the engine."""

    def __init__(self, engine: MatchEngine, feed: MatchChangeFeed | None = None) -> None:
        self.engine = engine
        self.feed = feed if feed is not None else engine.feed

    def enqueue(
        self,
        user_id: str,
        gender: str | None,
        want: str | None,
        locale: str | None,
        region: str | None,
        priority: int = 0,
    ) -> int:
        return self.engine.enqueue(user_id, gender, want, locale, region, priority)

    def find_active_match(self, user_id: str) -> Match | None:
        return self.engine.find_active_match(user_id)

    def dequeue_self(self, user_id: str) -> int | None:
        return self.engine.dequeue_self(user_id)

    def get_match(self, match_id: str) -> Match | None:
        return self.engine.get_match(match_id)

    def update_match_status(self, match_id: str, status: MatchStatus | str, user_id: str | None = None) -> Match:
        return self.engine.update_match_status(match_id, status, user_id=user_id)

    def subscribe_match_changes(self, match_id: str, on_change: Callable[[Match], None]) -> Callable[[], None]:
        if self.feed is None:
            raise SubscriptionUnavailable("no_change_feed")
        return self.feed.subscribe(match_id, on_change)


class HttpMatchBackend:
    """Backend talking to the quickmatch HTTP routes.

    Plain HTTP has no push channel, so ``subscribe_match_changes`` always
    raises ``SubscriptionUnavailable`` and controllers fall back to polling.
    """

    def __init__(self, base_url: str, *, timeout: float = 5.0) -> None:
        self.base_url = (base_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("invalid_base_url")
        self.timeout = timeout

    def enqueue(
        self,
        user_id: str,
        gender: str | None,
        want: str | None,
        locale: str | None,
        region: str | None,
        priority: int = 0,
    ) -> int:
        data = self._request(
            "POST",
            "/api/match/enqueue",
            body={
                "user_id": user_id,
                "gender": gender,
                "want": want or ANY_GENDER,
                "locale": locale,
                "region": region,
                "priority": priority,
            },
        )
        return int(data["entry_id"])

    def find_active_match(self, user_id: str) -> Match | None:
        data = self._request("GET", "/api/match/active", query={"user_id": user_id})
        return self._match_from(data)

    def dequeue_self(self, user_id: str) -> int | None:
        data = self._request("POST", "/api/match/leave", body={"user_id": user_id})
        entry_id = data.get("entry_id")
        return int(entry_id) if entry_id is not None else None

    def get_match(self, match_id: str) -> Match | None:
        try:
            data = self._request("GET", f"/api/match/{quote(match_id, safe='')}")
        except BackendError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._match_from(data)

    def update_match_status(self, match_id: str, status: MatchStatus | str, user_id: str | None = None) -> Match:
        data = self._request(
            "POST",
            f"/api/match/{quote(match_id, safe='')}/status",
            body={"status": MatchStatus(status).value, "user_id": user_id},
        )
        match = self._match_from(data)
        if match is None:
            raise BackendError("invalid_payload")
        return match

    def subscribe_match_changes(self, match_id: str, on_change: Callable[[Match], None]) -> Callable[[], None]:
        raise SubscriptionUnavailable("http_backend_has_no_change_feed")

    @staticmethod
    def _match_from(data: dict[str, Any]) -> Match | None:
        row = data.get("match")
        if not row:
            return None
        try:
            return Match.from_row(row)
        except (KeyError, ValueError) as exc:
            raise BackendError(f"malformed_match_row: {exc}") from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{urlencode(query)}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            logger.info("backend_http_error method=%s path=%s status=%s", method, path, exc.code)
            raise BackendError(f"http_{exc.code}", status_code=exc.code) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise BackendError(f"transport_failed: {exc}") from exc

        try:
            payload = json.loads(raw.decode("utf-8") or "{}")
        except ValueError as exc:
            raise BackendError("invalid_json") from exc
        if not isinstance(payload, dict):
            raise BackendError("invalid_payload")
        if not payload.get("ok"):
            raise BackendError(str(payload.get("error") or "request_failed"))
        return payload
