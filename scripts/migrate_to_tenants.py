"""
Copy legacy top-level nodes into tenant namespaces

Copies ``settings``, ``queue``, ``counters`` and ``analytics`` from the
database root into ``tenants/<slug>/...`` and writes a
``tenants/<slug>/_migratedFrom`` marker. The source nodes are never deleted.

Run:
    python -m scripts.migrate_to_tenants --slug=my-cafe --dry
    python -m scripts.migrate_to_tenants --map=tenants-map.json
    python -m scripts.migrate_to_tenants --slug=my-cafe --dburl=https://<db>.firebasedatabase.app

Exit codes: 0 on success, 1 on configuration or validation failure.
"""
import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from queuejoy.config.settings import get_settings
from queuejoy.domain.errors import DomainError
from queuejoy.repositories.rtdb_client import FirebaseRestDatabase, RealtimeDatabase
from queuejoy.repositories.tenant_store import SLUG_PATTERN, GlobalStore, TenantStore
from queuejoy.utils.time import now_ms

LEGACY_NODES = ("settings", "queue", "counters", "analytics")


class MigrationConfigError(Exception):
    """Bad arguments, unreadable map file or no database configured"""


def load_slugs(map_path: str) -> List[str]:
    """A map file is a JSON array of slugs or an object keyed by slug"""
    if not os.path.exists(map_path):
        raise MigrationConfigError(f"Map file not found: {map_path}")
    with open(map_path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError as e:
            raise MigrationConfigError(f"Map file is not valid JSON: {e}")
    if isinstance(data, list):
        slugs = [str(s) for s in data]
    elif isinstance(data, dict):
        slugs = list(data.keys())
    else:
        slugs = []
    if not slugs:
        raise MigrationConfigError(
            f"Map file must be an array of slugs or an object keyed by slug; found {type(data).__name__}"
        )
    return slugs


def _child_count(value: Any) -> int:
    return len(value) if isinstance(value, dict) else 1


async def migrate_slug(
    db: RealtimeDatabase,
    slug: str,
    dry: bool = False,
    by: Optional[str] = None,
) -> Dict[str, Any]:
    """Copy every legacy node present at the root; returns a summary"""
    tenant = TenantStore(db, slug)
    root = GlobalStore(db)
    print(f"\n=== Migrating slug: {slug}  (dry={dry}) ===")

    copied: List[str] = []
    failed: List[str] = []
    for node in LEGACY_NODES:
        try:
            value = await root.get(node)
            if value is None:
                print(f' - node "{node}" not found at root, skipping')
                continue
            dest = f"tenants/{slug}/{node}"
            print(f' - copy "{node}" -> "{dest}" (keys: {_child_count(value)})')
            if dry:
                print(f"   (dry run) skipped write for {dest}")
                continue
            await tenant.set(node, value)
            copied.append(node)
            print(f"   copied {node}")
        except DomainError as e:
            failed.append(node)
            print(f"   failed copying {node}: {e.message}", file=sys.stderr)

    marker = {"at": now_ms(), "source": "root", "by": by or os.environ.get("USER") or os.environ.get("USERNAME") or "migrate-to-tenants"}
    if dry:
        print(" - (dry run) marker not written")
    else:
        try:
            await tenant.set("_migratedFrom", marker)
            print(f" - marker written at tenants/{slug}/_migratedFrom")
        except DomainError as e:
            print(f" - failed writing marker: {e.message}", file=sys.stderr)

    return {"slug": slug, "copied": copied, "failed": failed, "dry": dry}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Copy legacy root nodes into tenants/<slug>/")
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--slug", type=str, help="Tenant slug to migrate into")
    target.add_argument("--map", type=str, help="JSON file: array of slugs or object keyed by slug")
    parser.add_argument("--dry", action="store_true", help="Preview only, write nothing")
    parser.add_argument("--dburl", type=str, default=None, help="Realtime database URL (default: FIREBASE_DB_URL)")
    return parser


async def run(args: argparse.Namespace, db: Optional[RealtimeDatabase] = None) -> List[Dict[str, Any]]:
    if args.map:
        slugs = load_slugs(args.map)
    elif args.slug:
        slugs = [args.slug]
    else:
        raise MigrationConfigError("Usage: migrate_to_tenants --slug=<slug> [--dry] | --map=<file>")

    invalid = [s for s in slugs if not SLUG_PATTERN.match(s)]
    if invalid:
        raise MigrationConfigError(f"Invalid tenant slug(s): {', '.join(invalid)}")

    owned = db is None
    if db is None:
        settings = get_settings()
        url = args.dburl or settings.database_url
        if not url:
            raise MigrationConfigError("Set FIREBASE_DB_URL or pass --dburl")
        db = FirebaseRestDatabase(
            url,
            auth_token=settings.firebase_auth_token,
            timeout=settings.firebase_timeout_seconds,
        )

    try:
        return [await migrate_slug(db, slug, dry=args.dry) for slug in slugs]
    finally:
        if owned:
            await db.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        asyncio.run(run(args))
    except MigrationConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    print("Migration finished.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
