"""Legacy root to tenant migration script"""
import json

import pytest

from queuejoy.repositories.rtdb_client import InMemoryRealtimeDatabase
from scripts.migrate_to_tenants import MigrationConfigError, build_parser, load_slugs, main, run as migrate

from .conftest import run

LEGACY = {
    "settings": {"name": "Old Cafe", "pin": "1234"},
    "queue": {"-A": {"queueId": "A001"}},
    "counters": {"c1": {"name": "Window 1", "prefix": "A"}},
}


def test_copies_present_nodes_and_writes_marker():
    db = InMemoryRealtimeDatabase(LEGACY)
    [summary] = run(migrate(build_parser().parse_args(["--slug", "cafe"]), db=db))

    assert summary["copied"] == ["settings", "queue", "counters"]
    assert summary["failed"] == []
    tenant = db.data["tenants"]["cafe"]
    assert tenant["queue"] == LEGACY["queue"]
    assert tenant["_migratedFrom"]["source"] == "root"
    # source nodes stay in place
    assert db.data["settings"] == LEGACY["settings"]


def test_dry_run_writes_nothing():
    db = InMemoryRealtimeDatabase(LEGACY)
    [summary] = run(migrate(build_parser().parse_args(["--slug", "cafe", "--dry"]), db=db))
    assert summary["dry"] is True
    assert summary["copied"] == []
    assert db.count("PUT") == 0
    assert "tenants" not in db.data


def test_map_file_lists_several_tenants(tmp_path):
    path = tmp_path / "map.json"
    path.write_text(json.dumps({"cafe": {}, "bakery": {}}))
    db = InMemoryRealtimeDatabase(LEGACY)
    summaries = run(migrate(build_parser().parse_args(["--map", str(path)]), db=db))
    assert [s["slug"] for s in summaries] == ["cafe", "bakery"]
    assert set(db.data["tenants"]) == {"cafe", "bakery"}


def test_load_slugs(tmp_path):
    listed = tmp_path / "list.json"
    listed.write_text('["cafe", "bakery"]')
    assert load_slugs(str(listed)) == ["cafe", "bakery"]

    empty = tmp_path / "empty.json"
    empty.write_text("[]")
    with pytest.raises(MigrationConfigError):
        load_slugs(str(empty))

    broken = tmp_path / "broken.json"
    broken.write_text("{nope")
    with pytest.raises(MigrationConfigError):
        load_slugs(str(broken))


def test_invalid_slug_is_rejected_before_any_write():
    db = InMemoryRealtimeDatabase(LEGACY)
    with pytest.raises(MigrationConfigError):
        run(migrate(build_parser().parse_args(["--slug", "Bad Slug!"]), db=db))
    assert db.calls == []


@pytest.mark.parametrize("argv", [[], ["--slug", "Bad Slug!"], ["--map", "/nonexistent/map.json"]])
def test_main_exits_with_one_on_bad_arguments(argv, capsys):
    assert main(argv) == 1
    assert "ERROR:" in capsys.readouterr().err
