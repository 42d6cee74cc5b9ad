"""Tenant provisioning, start links, announcements and client config"""
import base64

import httpx
import pytest

from queuejoy.config.settings import Settings
from queuejoy.domain.errors import (
    InvalidSlugError,
    NotFoundError,
    ServerMisconfiguredError,
    SlugExistsError,
    TenantNotFoundError,
    ValidationError,
)
from queuejoy.repositories.rtdb_client import InMemoryRealtimeDatabase
from queuejoy.services.announce_service import (
    AnnounceRequest,
    AnnounceService,
    RelayRequest,
    decode_media,
    normalize_chat_ids,
)
from queuejoy.services.client_config_service import ClientConfigService, render_env_js
from queuejoy.services import token_codec
from queuejoy.services.link_service import CreateLinkRequest, LinkService
from queuejoy.services.site_scaffolder import SiteScaffolder
from queuejoy.services.tenant_service import (
    CreateBusinessRequest,
    TenantService,
    UpdateBusinessRequest,
    name_key,
)
from queuejoy.utils.time import iso_from_ms

from .conftest import HOUR_MS, NOW_MS, TelegramRecorder, run


# =============================================================================
# Tenants
# =============================================================================

def test_create_business_seeds_namespace(db, recorder, telegram, settings):
    service = TenantService(db, settings, telegram)
    result = run(service.create_business(CreateBusinessRequest(name="My Cafe", notifyChatId="42")))

    assert result["slug"] == "my-cafe"
    assert result["links"]["admin"] == "https://queuejoy.example/my-cafe/admin.html"
    tenant = db.data["tenants"]["my-cafe"]
    assert tenant["settings"]["name"] == "My Cafe"
    assert tenant["counters"]["default"]["prefix"] == "COFFEE"
    assert tenant["analytics"] == {"servedCount": 0}
    assert db.data["tenants_by_name"][name_key("My Cafe")]["slug"] == "my-cafe"
    assert result["provisioning"] == {"repo": None, "netlify": None}
    assert result["telegram"]["ok"] is True
    assert "my-cafe" in recorder.messages()[0]["text"]


def test_create_business_refuses_taken_slug(db, settings):
    service = TenantService(db, settings)
    run(service.create_business(CreateBusinessRequest(slug="cafe", name="Cafe")))
    with pytest.raises(SlugExistsError) as exc:
        run(service.create_business(CreateBusinessRequest(slug="cafe", name="Another")))
    assert exc.value.http_status == 409
    assert exc.value.details["existing"]["name"] == "Cafe"


def test_create_business_needs_a_slug(db, settings):
    with pytest.raises(InvalidSlugError):
        run(TenantService(db, settings).create_business(CreateBusinessRequest(slug="!!!")))


def test_get_business(db, settings):
    service = TenantService(db, settings)
    run(service.create_business(CreateBusinessRequest(slug="cafe", name="Cafe")))
    assert run(service.get_business("Cafe"))["data"]["slug"] == "cafe"
    with pytest.raises(NotFoundError):
        run(service.get_business("bakery"))


def test_get_business_hides_private_nodes(settings):
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {
        "name": "Cafe",
        "settings": {"name": "Cafe", "pin": "4321"},
        "telegramTokens": {"abc123def456": {"queueKey": "-q1"}},
        "queue": {"-q1": {"queueId": "A002", "chatId": "7"}},
    }}})
    data = run(TenantService(db, settings).get_business("cafe"))["data"]
    assert data == {"name": "Cafe", "slug": "cafe", "settings": {"name": "Cafe"}}


def test_update_business_filters_keys_and_moves_name_index(db, settings):
    service = TenantService(db, settings)
    run(service.create_business(CreateBusinessRequest(slug="cafe", name="Cafe")))
    result = run(service.update_business(UpdateBusinessRequest(
        slug="cafe", data={"name": "Corner Cafe", "pin": "9999", "status": "deleted"}
    )))

    assert result["updated"] == {"name": "Corner Cafe", "pin": "9999"}
    tenant = db.data["tenants"]["cafe"]
    assert tenant["settings"]["pin"] == "9999"
    assert tenant["status"] == "active"
    assert tenant["name"] == "Corner Cafe"
    assert name_key("Cafe") not in db.data["tenants_by_name"]
    assert db.data["tenants_by_name"][name_key("Corner Cafe")]["slug"] == "cafe"


def test_update_business_rejects_unknown_keys(db, settings):
    service = TenantService(db, settings)
    run(service.create_business(CreateBusinessRequest(slug="cafe", name="Cafe")))
    with pytest.raises(ValidationError):
        run(service.update_business(UpdateBusinessRequest(slug="cafe", data={"status": "x"})))
    with pytest.raises(NotFoundError):
        run(service.update_business(UpdateBusinessRequest(slug="bakery", data={"name": "B"})))


def test_scaffold_failures_are_reported(settings):
    def netlify(request):
        return httpx.Response(401, json={"code": 401, "message": "Access Denied"})

    config = settings.model_copy(update={"enable_netlify_create": True, "netlify_auth_token": "nf"})
    scaffolder = SiteScaffolder(config, client=httpx.AsyncClient(transport=httpx.MockTransport(netlify)))
    result = run(scaffolder.scaffold("cafe"))
    assert result["repo"] is None
    assert result["netlify"]["error"] is True


# =============================================================================
# Start links
# =============================================================================

def test_create_link_stores_token_record(db, settings):
    service = LinkService(db, settings, clock=lambda: NOW_MS)
    result = run(service.create_link(
        CreateLinkRequest(queueKey="-OaVK", counterId=3), tenant="cafe", user_agent="pytest"
    ))

    token = result["token"]
    assert result["link"] == f"https://t.me/QueueJoyBot?start={token}"
    assert result["expiresAt"] == iso_from_ms(NOW_MS + 24 * HOUR_MS)
    record = db.data["tenants"]["cafe"]["telegramTokens"][token]
    assert record["queueKey"] == "-OaVK"
    assert record["counterId"] == "3"
    assert record["userAgent"] == "pytest"
    assert record["used"] is False


def test_create_link_requires_queue_key(db, settings):
    with pytest.raises(ValidationError):
        run(LinkService(db, settings).create_link(CreateLinkRequest(queueKey="  ")))


def test_create_link_survives_database_failure(db, settings):
    db.fail_on.add("PUT")
    result = run(LinkService(db, settings).create_link(
        CreateLinkRequest(queueKey="t1", counterId="c1"), tenant="cafe"
    ))
    assert result["ok"] is True
    assert result["tenant"] == "cafe"
    assert result["link"].endswith(f"start={result['token']}")
    decoded = token_codec.decode(result["token"])
    assert (decoded.queue_key, decoded.counter_id, decoded.tenant) == ("t1", "c1", "cafe")


# =============================================================================
# Announcements
# =============================================================================

def test_announce_counts_successes_and_failures(db, settings):
    def respond(method, body):
        if body.get("chat_id") == "2":
            return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"})
        return httpx.Response(200, json={"ok": True, "result": {}})

    recorder = TelegramRecorder(respond)
    service = AnnounceService(db, recorder.client(), settings)
    summary = run(service.announce(AnnounceRequest(message="Open late today", chatIds=["1", "2", "3"])))

    assert summary["success"] == 2
    assert summary["failed"] == 1
    assert summary["errors"] == [{"chatId": "2", "error": "Forbidden: bot was blocked by the user"}]


def test_announce_reads_announcement_node(recorder, settings):
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {"announcement": {
        "chatIds": {"11": True, "12": False}, "botToken": "TENANTBOT",
    }}}})
    service = AnnounceService(db, recorder.client(bot_token=""), settings)
    summary = run(service.announce(AnnounceRequest(slug="cafe", message="hi")))

    assert summary["success"] == 1
    assert "/botTENANTBOT/sendMessage" in recorder.calls[0]["url"]


def test_announce_without_recipients_or_token(db, recorder, settings):
    with pytest.raises(ValidationError):
        run(AnnounceService(db, recorder.client(), settings).announce(AnnounceRequest(message="hi")))
    with pytest.raises(ValidationError):
        run(AnnounceService(db, recorder.client(bot_token=""), settings).announce(
            AnnounceRequest(message="hi", chatIds="1,2")
        ))


def test_announce_with_media(db, recorder, telegram, settings):
    media = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode()
    summary = run(AnnounceService(db, telegram, settings).announce(
        AnnounceRequest(message="Menu", media=media, chatIds="5")
    ))
    assert summary["success"] == 1
    assert recorder.calls[0]["method"] == "sendPhoto"


def test_relay_sends_to_chats_and_copies_admin(db, recorder, telegram, settings):
    settings = settings.model_copy(update={"admin_chat_id": "900"})
    markup = {"inline_keyboard": [[{"text": "Open", "url": "https://queuejoy.example"}]]}
    outcome = run(AnnounceService(db, telegram, settings).relay(RelayRequest(
        message="<b>Closing soon</b>",
        chatIds=[1, "900"],
        parseMode="HTML",
        replyMarkup=markup,
        disableNotification=True,
        copyAdmin=True,
    )))

    assert outcome["ok"] is True
    assert outcome["summary"] == {"total": 2, "success": 2, "failed": 0}
    first, second = recorder.messages()
    assert (first["chat_id"], second["chat_id"]) == ("1", "900")
    assert first["parse_mode"] == "HTML"
    assert first["reply_markup"] == markup
    assert first["disable_notification"] is True


def test_relay_falls_back_to_admin_and_reports_partial(db, settings):
    def respond(method, body):
        if body.get("chat_id") == "2":
            return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})
        return httpx.Response(200, json={"ok": True, "result": {}})

    recorder = TelegramRecorder(respond)
    service = AnnounceService(db, recorder.client(), settings.model_copy(update={"admin_chat_id": "900"}))

    alone = run(service.relay(RelayRequest(message="ping")))
    assert [r["to"] for r in alone["results"]] == ["900"]
    assert "parse_mode" not in recorder.messages()[0]

    mixed = run(service.relay(RelayRequest(message="ping", chatId=2, copyAdmin=True)))
    assert mixed["ok"] == "partial"
    assert mixed["results"][0] == {"to": "2", "ok": False, "status": 400, "error": "Bad Request: chat not found"}


def test_relay_validation(db, recorder, telegram, settings):
    service = AnnounceService(db, telegram, settings)
    with pytest.raises(ValidationError):
        run(service.relay(RelayRequest(chatId=1)))
    with pytest.raises(ValidationError):
        run(service.relay(RelayRequest(message="hi")))
    with pytest.raises(ServerMisconfiguredError):
        run(AnnounceService(db, recorder.client(bot_token=""), settings).relay(RelayRequest(message="hi", chatId=1)))
    assert recorder.calls == []


def test_chat_id_and_media_parsing():
    assert normalize_chat_ids("1, 2,,3") == ["1", "2", "3"]
    assert normalize_chat_ids({"7": True, "8": False}) == ["7"]
    assert normalize_chat_ids([1, None, ""]) == ["1"]
    assert decode_media(base64.b64encode(b"x").decode(), None) == (b"x", "application/octet-stream")
    with pytest.raises(ValidationError):
        decode_media("abc", "image/png")


# =============================================================================
# Client config
# =============================================================================

def test_client_config_hides_operator_pin(settings):
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {
        "name": "Cafe",
        "settings": {"name": "Cafe", "pin": "1234"},
        "firebaseConfig": {"apiKey": "k", "projectId": "p", "privateKey": "nope"},
    }}})
    config = run(ClientConfigService(db, settings).get_firebase_config("cafe"))

    assert config["settings"] == {"name": "Cafe"}
    assert config["firebaseConfig"] == {"apiKey": "k", "projectId": "p"}


def test_client_config_for_unknown_tenant(db, settings):
    with pytest.raises(TenantNotFoundError):
        run(ClientConfigService(db, settings).get_firebase_config("cafe"))


def test_render_env_js():
    script = render_env_js(Settings(tenant_id="cafe", site_base="https://sites.example/"))
    assert script.startswith("window.__ENV__ = {")
    assert 'TENANT_ID: "cafe"' in script
    assert 'FIREBASE_PATH: "tenants/cafe"' in script
    assert 'SITE_BASE: "https://sites.example"' in script
