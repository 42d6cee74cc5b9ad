"""
Pytest Configuration and Fixtures

Shared fixtures: an in-memory realtime database, an in-memory ticket store
and a Telegram client whose HTTP traffic is captured by httpx.MockTransport.
"""
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from queuejoy.config.settings import Settings
from queuejoy.repositories.rtdb_client import InMemoryRealtimeDatabase
from queuejoy.repositories.tenant_store import TenantStore
from queuejoy.repositories.ticket_store import InMemoryTicketStore
from queuejoy.services.telegram_client import TelegramClient

# 2025-01-01T00:00:00Z
NOW_MS = 1735689600000
HOUR_MS = 60 * 60 * 1000


def run(coro):
    """Drive a coroutine from a plain pytest test"""
    return asyncio.run(coro)


class TelegramRecorder:
    """Records Bot API calls and answers them from a scripted handler"""

    def __init__(self, respond: Optional[Callable[[str, Dict[str, Any]], httpx.Response]] = None):
        self.calls: List[Dict[str, Any]] = []
        self.sleeps: List[float] = []
        self._respond = respond

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        content_type = request.headers.get("content-type", "")
        body: Dict[str, Any] = json.loads(request.content) if content_type.startswith("application/json") else {}
        self.calls.append({"method": method, "body": body, "url": str(request.url), "content_type": content_type})
        if self._respond is not None:
            return self._respond(method, body)
        return httpx.Response(200, json={"ok": True, "result": {"message_id": len(self.calls)}})

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def client(self, bot_token: str = "TEST", max_attempts: int = 3) -> TelegramClient:
        return TelegramClient(
            bot_token,
            max_attempts=max_attempts,
            client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            sleep=self.sleep,
        )

    def messages(self) -> List[Dict[str, Any]]:
        return [c["body"] for c in self.calls if c["method"] == "sendMessage"]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        bot_token="TEST",
        broadcast_pause_ms=0,
        firebase_db_url="",
        master_api_key="master-secret",
        telegram_webhook_secret="",
        site_base="https://queuejoy.example",
        explore_url="https://explore.example",
    )


@pytest.fixture
def db() -> InMemoryRealtimeDatabase:
    return InMemoryRealtimeDatabase()


@pytest.fixture
def tickets() -> InMemoryTicketStore:
    return InMemoryTicketStore()


@pytest.fixture
def recorder() -> TelegramRecorder:
    return TelegramRecorder()


@pytest.fixture
def telegram(recorder: TelegramRecorder) -> TelegramClient:
    return recorder.client()


@pytest.fixture
def cafe(db: InMemoryRealtimeDatabase) -> TenantStore:
    return TenantStore(db, "cafe")
