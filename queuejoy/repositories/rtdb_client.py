"""Realtime Database backends

Two implementations of the same async protocol:

- FirebaseRestDatabase talks to the Firebase Realtime Database REST API
  (``{db_url}/{path}.json``) over httpx.
- InMemoryRealtimeDatabase keeps the tree in a nested dict. Used by the
  test-suite and for local development when no database URL is set.

Paths are slash separated and relative to the database root ("" is the root).
Writing ``None`` deletes a node, as in the real database.
"""
import asyncio
import copy
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config.settings import Settings
from ..domain.errors import DatabaseError, TransientUpstreamError
from ..utils.idgen import generate_push_id
from ..utils.logger import get_logger

logger = get_logger(__name__)

_RETRYABLE_METHODS = {"GET", "PUT", "PATCH", "DELETE"}


class RealtimeDatabase(ABC):
    """Async protocol every database backend implements"""

    name: str = "rtdb"

    @abstractmethod
    async def get(self, path: str, shallow: bool = False) -> Any:
        ...

    @abstractmethod
    async def put(self, path: str, value: Any) -> None:
        ...

    @abstractmethod
    async def patch(self, path: str, updates: Dict[str, Any]) -> None:
        """Multi-path update; keys are relative to ``path``"""

    @abstractmethod
    async def post(self, path: str, value: Any) -> str:
        """Append under ``path`` with a generated push key; returns the key"""

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    @abstractmethod
    async def query(self, path: str, order_by: str, equal_to: Any) -> Dict[str, Any]:
        """Children of ``path`` whose ``order_by`` child equals ``equal_to``"""

    @abstractmethod
    async def put_if_absent(self, path: str, value: Any) -> Tuple[bool, Any]:
        """
        Atomically write ``value`` only when nothing exists at ``path``.

        Returns (committed, existing_value).
        """

    async def health(self) -> Dict[str, Any]:
        try:
            await self.get("", shallow=True)
            return {"status": "healthy", "backend": self.name}
        except (DatabaseError, TransientUpstreamError) as e:
            return {"status": "unhealthy", "backend": self.name, "error": e.message}

    async def close(self) -> None:
        return None


# ============================================================================
# Firebase REST
# ============================================================================

class FirebaseRestDatabase(RealtimeDatabase):
    """Firebase Realtime Database over its REST API"""

    name = "firebase"

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: float = 10.0,
        max_attempts: int = 2,
        backoff_base_ms: int = 150,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base_ms = max(0, int(backoff_base_ms))
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "FirebaseRestDatabase":
        return cls(
            settings.database_url,
            auth_token=settings.firebase_auth_token,
            timeout=settings.firebase_timeout_seconds,
            client=client,
        )

    def _url(self, path: str) -> str:
        path = path.strip("/")
        return f"{self._base_url}/{path}.json" if path else f"{self._base_url}/.json"

    def _params(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self._auth_token:
            params["auth"] = self._auth_token
        if extra:
            params.update(extra)
        return params

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        accept: Tuple[int, ...] = (),
    ) -> httpx.Response:
        url = self._url(path)
        attempts = self._max_attempts if method in _RETRYABLE_METHODS else 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(
                    method,
                    url,
                    params=self._params(params),
                    content=json.dumps(body) if body is not None or method in ("PUT", "POST") else None,
                    headers=headers,
                )
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"RTDB {method} /{path} failed (attempt {attempt}): {last_error}")
            else:
                if response.status_code < 400 or response.status_code in accept:
                    return response
                if response.status_code < 500:
                    raise DatabaseError(
                        f"Realtime database rejected {method} /{path}",
                        details={"status": response.status_code, "body": response.text[:500]},
                    )
                last_error = f"http_{response.status_code}"
                logger.warning(f"RTDB {method} /{path} returned {response.status_code} (attempt {attempt})")
            if attempt < attempts:
                await asyncio.sleep(self._backoff_base_ms * (2 ** (attempt - 1)) / 1000)
        raise TransientUpstreamError(
            f"Realtime database unavailable for {method} /{path}",
            details={"error": last_error},
        )

    async def get(self, path: str, shallow: bool = False) -> Any:
        response = await self._request("GET", path, params={"shallow": "true"} if shallow else None)
        return response.json()

    async def put(self, path: str, value: Any) -> None:
        await self._request("PUT", path, body=value)

    async def patch(self, path: str, updates: Dict[str, Any]) -> None:
        if not updates:
            return
        await self._request("PATCH", path, body=updates)

    async def post(self, path: str, value: Any) -> str:
        response = await self._request("POST", path, body=value)
        return response.json().get("name", "")

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def query(self, path: str, order_by: str, equal_to: Any) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            path,
            params={"orderBy": json.dumps(order_by), "equalTo": json.dumps(equal_to)},
        )
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def put_if_absent(self, path: str, value: Any) -> Tuple[bool, Any]:
        # ETag conditional write: a 412 means someone else wrote first
        for _ in range(3):
            current = await self._request("GET", path, headers={"X-Firebase-ETag": "true"})
            existing = current.json()
            if existing is not None:
                return False, existing
            etag = current.headers.get("ETag", "")
            response = await self._request(
                "PUT",
                path,
                body=value,
                headers={"if-match": etag},
                accept=(412,),
            )
            if response.status_code != 412:
                return True, None
        existing = await self.get(path)
        return False, existing

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ============================================================================
# In-memory
# ============================================================================

def _segments(path: str) -> List[str]:
    return [s for s in path.strip("/").split("/") if s]


def _prune(node: Any) -> Any:
    if isinstance(node, dict):
        cleaned = {k: _prune(v) for k, v in node.items()}
        cleaned = {k: v for k, v in cleaned.items() if v is not None and v != {}}
        return cleaned or None
    return node


class InMemoryRealtimeDatabase(RealtimeDatabase):
    """
    Nested-dict database with the same write semantics as the real one.

    Every call is appended to ``calls`` as (method, path) and every patch
    body to ``patches`` as (path, updates). Methods listed in ``fail_on``
    raise TransientUpstreamError.
    """

    name = "memory"

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = copy.deepcopy(data) if data else {}
        self.calls: List[Tuple[str, str]] = []
        self.patches: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_on: set = set()

    def _record(self, method: str, path: str) -> None:
        self.calls.append((method, path.strip("/")))
        if method in self.fail_on:
            raise TransientUpstreamError(f"Realtime database unavailable for {method} /{path}")

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    def _read(self, path: str) -> Any:
        node: Any = self.data
        for seg in _segments(path):
            if not isinstance(node, dict) or seg not in node:
                return None
            node = node[seg]
        return node

    def _write(self, path: str, value: Any) -> None:
        segs = _segments(path)
        value = copy.deepcopy(value)
        if not segs:
            self.data = (_prune(value) or {}) if isinstance(value, dict) else {}
            return
        node = self.data
        for seg in segs[:-1]:
            child = node.get(seg)
            if not isinstance(child, dict):
                child = {}
                node[seg] = child
            node = child
        node[segs[-1]] = value
        self.data = _prune(self.data) or {}

    async def get(self, path: str, shallow: bool = False) -> Any:
        self._record("GET", path)
        value = copy.deepcopy(self._read(path))
        if shallow and isinstance(value, dict):
            return {k: True for k in value}
        return value

    async def put(self, path: str, value: Any) -> None:
        self._record("PUT", path)
        self._write(path, value)

    async def patch(self, path: str, updates: Dict[str, Any]) -> None:
        if not updates:
            return
        self._record("PATCH", path)
        self.patches.append((path.strip("/"), copy.deepcopy(updates)))
        base = path.strip("/")
        for key, value in updates.items():
            rel = key.strip("/")
            self._write(f"{base}/{rel}" if base else rel, value)

    async def post(self, path: str, value: Any) -> str:
        self._record("POST", path)
        key = generate_push_id()
        base = path.strip("/")
        self._write(f"{base}/{key}" if base else key, value)
        return key

    async def delete(self, path: str) -> None:
        self._record("DELETE", path)
        self._write(path, None)

    async def query(self, path: str, order_by: str, equal_to: Any) -> Dict[str, Any]:
        self._record("QUERY", path)
        node = self._read(path)
        if not isinstance(node, dict):
            return {}
        if order_by == "$key":
            return {k: copy.deepcopy(v) for k, v in node.items() if k == equal_to}
        return {
            k: copy.deepcopy(v)
            for k, v in node.items()
            if isinstance(v, dict) and v.get(order_by) == equal_to
        }

    async def put_if_absent(self, path: str, value: Any) -> Tuple[bool, Any]:
        self._record("PUT_IF_ABSENT", path)
        existing = self._read(path)
        if existing is not None:
            return False, copy.deepcopy(existing)
        self._write(path, value)
        return True, None


def build_realtime_database(settings: Settings) -> RealtimeDatabase:
    """REST client when a database URL is configured, in-memory otherwise"""
    if settings.database_url:
        return FirebaseRestDatabase.from_settings(settings)
    logger.warning("FIREBASE_DB_URL not set - using in-memory realtime database")
    return InMemoryRealtimeDatabase()
