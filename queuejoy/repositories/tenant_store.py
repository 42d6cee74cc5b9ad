"""Tenant Store - scoped access to the realtime database

Every tenant owns ``tenants/{slug}/...``. A TenantStore only ever reads and
writes below that prefix; a GlobalStore is the same thing rooted at the
database root, used for the legacy unscoped nodes and for the tenant index.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple

from .rtdb_client import RealtimeDatabase
from ..domain.errors import DatabaseError, InvalidSlugError, ValidationError
from ..utils.logger import get_logger

logger = get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9-]+$")
_ILLEGAL_KEY_CHARS = re.compile(r"[.#$\[\]]")


def normalize_path(path: str, allow_root: bool = True) -> str:
    """
    Validate and canonicalise a relative database path.

    Raises ValidationError for ``..``, empty segments or characters the
    database does not accept in keys.
    """
    if path is None:
        raise ValidationError("Path is required")
    text = str(path).strip()
    if text.startswith("/"):
        text = text[1:]
    if text.endswith("/"):
        text = text[:-1]
    if not text:
        if allow_root:
            return ""
        raise ValidationError("Path must not be empty")
    segments = text.split("/")
    for seg in segments:
        if not seg or seg in (".", ".."):
            raise ValidationError(f"Invalid path segment in '{path}'")
        if _ILLEGAL_KEY_CHARS.search(seg):
            raise ValidationError(f"Illegal character in path '{path}'")
    return "/".join(segments)


@dataclass(frozen=True)
class CreateResult:
    committed: bool
    existing: Any = None


class ScopedStore:
    """Relative-path operations below a fixed root"""

    def __init__(self, db: RealtimeDatabase, root: str = ""):
        self.db = db
        self.root = normalize_path(root)

    @property
    def scope(self) -> str:
        return self.root or "(global)"

    def _abs(self, path: str) -> str:
        rel = normalize_path(path)
        if not self.root:
            return rel
        return f"{self.root}/{rel}" if rel else self.root

    async def get(self, path: str = "", shallow: bool = False) -> Any:
        return await self.db.get(self._abs(path), shallow=shallow)

    async def set(self, path: str, value: Any) -> None:
        await self.db.put(self._abs(path), value)

    async def delete(self, path: str) -> None:
        await self.db.delete(self._abs(normalize_path(path, allow_root=False)))

    async def patch(self, updates: Dict[str, Any]) -> None:
        """Apply a multi-path map at the store root in one round-trip"""
        if not updates:
            return
        body = {"/" + normalize_path(k, allow_root=False): v for k, v in updates.items()}
        await self.db.patch(self.root, body)

    async def push(self, path: str, value: Any) -> str:
        return await self.db.post(self._abs(normalize_path(path, allow_root=False)), value)

    async def create_if_absent(self, path: str, value: Any) -> CreateResult:
        committed, existing = await self.db.put_if_absent(self._abs(path), value)
        return CreateResult(committed=committed, existing=existing)

    async def query_by_index(self, path: str, key: str, eq: Any) -> Dict[str, Any]:
        """
        Indexed equality query on the children of ``path``.

        When the database refuses the query (no index defined for ``key``)
        the children are read once and filtered locally.
        """
        abs_path = self._abs(normalize_path(path, allow_root=False))
        try:
            return await self.db.query(abs_path, key, eq)
        except DatabaseError as e:
            logger.warning(f"Indexed query on /{abs_path} by {key} refused, scanning: {e.details}")
        children = await self.db.get(abs_path)
        if not isinstance(children, dict):
            return {}
        return {
            k: v for k, v in children.items()
            if isinstance(v, dict) and v.get(key) == eq
        }

    async def find_first(self, path: str, key: str, eq: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        """First child matching an indexed query, as (key, entry)"""
        matches = await self.query_by_index(path, key, eq)
        for child_key, entry in matches.items():
            if isinstance(entry, dict):
                return child_key, entry
        return None

    def batch(self) -> "PatchBatch":
        return PatchBatch(self)


class TenantStore(ScopedStore):
    """Store rooted at tenants/{slug}"""

    def __init__(self, db: RealtimeDatabase, slug: str):
        slug = (slug or "").strip()
        if not SLUG_PATTERN.match(slug):
            raise InvalidSlugError(f"Invalid tenant slug '{slug}'", details={"slug": slug})
        self.slug = slug
        super().__init__(db, f"tenants/{slug}")

    async def exists(self) -> bool:
        return bool(await self.get("", shallow=True))


class GlobalStore(ScopedStore):
    """Store rooted at the database root"""

    def __init__(self, db: RealtimeDatabase):
        super().__init__(db, "")

    def tenant(self, slug: str) -> TenantStore:
        return TenantStore(self.db, slug)


class PatchBatch:
    """
    Collects multi-path writes and issues them as a single patch.

    Overlapping paths are merged: a write below an already staged path is
    folded into that value, a write above staged paths replaces them.
    """

    def __init__(self, store: ScopedStore):
        self.store = store
        self._updates: Dict[str, Any] = {}

    def set(self, path: str, value: Any) -> "PatchBatch":
        key = normalize_path(path, allow_root=False)
        for staged in list(self._updates):
            if staged == key:
                continue
            if key.startswith(staged + "/"):
                self._merge_into(staged, key[len(staged) + 1:], value)
                return self
            if staged.startswith(key + "/"):
                del self._updates[staged]
        self._updates[key] = value
        return self

    def delete(self, path: str) -> "PatchBatch":
        return self.set(path, None)

    def increment(self, path: str, by: int = 1, current: Any = 0) -> "PatchBatch":
        """Stage current + by; an already staged number is used as the base"""
        staged = self.get(path)
        base = staged if isinstance(staged, int) else current
        return self.set(path, (base if isinstance(base, int) else 0) + by)

    def update(self, base: str, fields: Dict[str, Any]) -> "PatchBatch":
        base = normalize_path(base, allow_root=False)
        for name, value in fields.items():
            self.set(f"{base}/{name}", value)
        return self

    def _merge_into(self, staged: str, rest: str, value: Any) -> None:
        node = self._updates.get(staged)
        if not isinstance(node, dict):
            node = {}
            self._updates[staged] = node
        parts = rest.split("/")
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def __len__(self) -> int:
        return len(self._updates)

    def __contains__(self, path: str) -> bool:
        return normalize_path(path, allow_root=False) in self._updates

    def __iter__(self) -> Iterator[str]:
        return iter(self._updates)

    def get(self, path: str, default: Any = None) -> Any:
        return self._updates.get(normalize_path(path, allow_root=False), default)

    def as_dict(self) -> Dict[str, Any]:
        return {"/" + k: v for k, v in self._updates.items()}

    async def commit(self) -> bool:
        """Issue the patch; False when nothing was staged"""
        if not self._updates:
            return False
        await self.store.patch(dict(self._updates))
        logger.debug(f"Patched {len(self._updates)} paths under {self.store.scope}")
        return True
