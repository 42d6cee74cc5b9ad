"""Tenant-scoped store and batched patches"""
import pytest

from queuejoy.domain.errors import DatabaseError, InvalidSlugError, ValidationError
from queuejoy.repositories.rtdb_client import InMemoryRealtimeDatabase
from queuejoy.repositories.tenant_store import GlobalStore, TenantStore, normalize_path

from .conftest import run


@pytest.mark.parametrize("path", ["a/../b", "a//b", "a.b", "a/$x", "a/[0]", "a#b"])
def test_normalize_path_rejects_unsafe_segments(path):
    with pytest.raises(ValidationError):
        normalize_path(path)


def test_normalize_path_trims_slashes():
    assert normalize_path("/queue/-OaVK/") == "queue/-OaVK"
    assert normalize_path("") == ""
    with pytest.raises(ValidationError):
        normalize_path("", allow_root=False)


@pytest.mark.parametrize("slug", ["", "Cafe", "my cafe", "a/b", "../x"])
def test_tenant_store_rejects_bad_slugs(db, slug):
    with pytest.raises(InvalidSlugError):
        TenantStore(db, slug)


def test_tenant_store_is_scoped(db, cafe):
    run(cafe.set("settings/name", "Cafe"))
    assert db.data == {"tenants": {"cafe": {"settings": {"name": "Cafe"}}}}
    assert run(cafe.get("settings/name")) == "Cafe"
    assert run(GlobalStore(db).get("settings")) is None


def test_patch_batch_is_one_round_trip(db, cafe):
    batch = cafe.batch()
    batch.update("queue/-A", {"status": "served", "servedAt": 1})
    batch.set("analytics/servedCount", 3)
    batch.delete("queue/-B/number")
    assert run(batch.commit()) is True

    assert db.count("PATCH") == 1
    path, body = db.patches[0]
    assert path == "tenants/cafe"
    assert set(body) == {"/queue/-A/status", "/queue/-A/servedAt", "/analytics/servedCount", "/queue/-B/number"}


def test_patch_batch_merges_overlapping_paths(cafe):
    batch = cafe.batch()
    batch.set("queue/-A", {"status": "waiting"})
    batch.set("queue/-A/chatId", "42")
    assert batch.as_dict() == {"/queue/-A": {"status": "waiting", "chatId": "42"}}

    batch.set("queue", {})
    assert list(batch) == ["queue"]


def test_patch_batch_increment_uses_staged_value(cafe):
    batch = cafe.batch()
    batch.increment("analytics/servedCount", 2, current=5)
    batch.increment("analytics/servedCount", 1, current=5)
    assert batch.get("analytics/servedCount") == 8


def test_empty_batch_does_not_patch(db, cafe):
    assert run(cafe.batch().commit()) is False
    assert db.count("PATCH") == 0


def test_create_if_absent(db):
    root = GlobalStore(db)
    first = run(root.create_if_absent("tenants/cafe", {"slug": "cafe"}))
    second = run(root.create_if_absent("tenants/cafe", {"slug": "other"}))
    assert first.committed
    assert not second.committed
    assert second.existing == {"slug": "cafe"}


class _NoIndexDatabase(InMemoryRealtimeDatabase):
    async def query(self, path, order_by, equal_to):
        raise DatabaseError("Index not defined", details={"status": 400})


def test_query_falls_back_to_scan_without_index():
    db = _NoIndexDatabase({"tenants": {"cafe": {"queue": {
        "-A": {"chatId": "1", "queueId": "A001"},
        "-B": {"chatId": "2", "queueId": "A002"},
    }}}})
    store = TenantStore(db, "cafe")
    assert run(store.find_first("queue", "chatId", "2")) == ("-B", {"chatId": "2", "queueId": "A002"})
    assert run(store.find_first("queue", "chatId", "3")) is None
