"""Hierarchical key-value store on top of SQLAlchemy's asyncio extension.

Every leaf value is one row of the ``nodes`` table keyed by its full path, so a
subtree read is a prefix scan and a multi-location write is a single database
transaction.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import PermissionDenied, PreconditionFailed, StoreError
from .events import EventRegistry, Subscription
from .models import Node

logger = logging.getLogger(__name__)

STORE_RULES = os.getenv("STORE__RULES", "open")

SERVER_TIMESTAMP = {".sv": "timestamp"}

# default for ``auth``: read with server privileges, no rules applied
PRIVILEGED = object()

_FORBIDDEN = set(".#$[]")


def split_path(path: str) -> Tuple[str, ...]:
    parts = tuple(p for p in path.strip("/").split("/") if p)
    if not parts:
        raise ValueError("store paths must not be empty")
    for part in parts:
        if _FORBIDDEN & set(part):
            raise ValueError(f"invalid path segment {part!r} in {path!r}")
    return parts


def normalize_path(path: str) -> str:
    return "/".join(split_path(path))


def _related(a: str, b: str) -> bool:
    """True if one path is the other or an ancestor of it."""
    return a == b or a.startswith(b + "/") or b.startswith(a + "/")


@dataclass(frozen=True)
class Snapshot:
    path: str
    value: Any = None

    @property
    def key(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def exists(self) -> bool:
        return self.value is not None


class AccessRules:
    """Read rules evaluated for a caller; the default allows everything."""

    async def can_read(self, store: "DataStore", path: str, uid: Optional[str]) -> bool:
        return True


class OwnerRules(AccessRules):
    """Signed-in users read their own ``users/{uid}`` tree and the info of
    devices they own or that nobody owns yet."""

    async def can_read(self, store, path, uid):
        if uid is None:
            return False
        parts = split_path(path)
        if parts[0] == "users":
            return len(parts) > 1 and parts[1] == uid
        if parts[0] == "devices" and len(parts) > 1:
            owner = await store.get(f"devices/{parts[1]}/status/claimedBy")
            return owner.value in (None, uid)
        return False


def make_rules(name: str = STORE_RULES) -> AccessRules:
    if name == "owner":
        return OwnerRules()
    if name == "open":
        return AccessRules()
    raise ValueError(f"unknown store rules {name!r}")


def _flatten(prefix: str, value: Any, ts: int, out: Dict[str, Any]) -> None:
    if value is None:
        return
    if value == SERVER_TIMESTAMP:
        out[prefix] = ts
        return
    if isinstance(value, Mapping):
        for key, child in value.items():
            key = str(key)
            if not key or "/" in key or _FORBIDDEN & set(key):
                raise ValueError(f"invalid key {key!r} under {prefix!r}")
            _flatten(f"{prefix}/{key}", child, ts, out)
        return
    if isinstance(value, (list, tuple)):
        for idx, child in enumerate(value):
            _flatten(f"{prefix}/{idx}", child, ts, out)
        return
    out[prefix] = value


def _assemble(path: str, rows: Iterable[Tuple[str, Any]]) -> Any:
    tree: Dict[str, Any] = {}
    for row_path, value in rows:
        if row_path == path:
            return value
        if not row_path.startswith(path + "/"):
            continue
        node = tree
        parts = row_path[len(path) + 1:].split("/")
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = value
    return tree or None


def _under(path: str):
    """SQL condition matching strict descendants of ``path`` (case-sensitive,
    no LIKE wildcards)."""
    prefix = path + "/"
    return func.substr(Node.path, 1, len(prefix)) == prefix


class DataStore:
    def __init__(self, session_factory, rules: Optional[AccessRules] = None, clock=time.time):
        self._sessions = session_factory
        self.rules = rules or AccessRules()
        self._clock = clock
        self._last_ts = 0
        self._write_lock = asyncio.Lock()
        self._listeners: Dict[str, EventRegistry[Snapshot]] = {}

    def server_now(self) -> int:
        """Milliseconds since the epoch, strictly increasing across writes."""
        now = int(self._clock() * 1000)
        if now <= self._last_ts:
            now = self._last_ts + 1
        self._last_ts = now
        return now

    async def _check_read(self, path: str, auth) -> None:
        if auth is PRIVILEGED:
            return
        if not await self.rules.can_read(self, path, auth):
            raise PermissionDenied(path)

    async def _read(self, session, path: str) -> Any:
        result = await session.execute(
            select(Node.path, Node.value).where(or_(Node.path == path, _under(path)))
        )
        return _assemble(path, result.all())

    async def get(self, path: str, auth=PRIVILEGED) -> Snapshot:
        path = normalize_path(path)
        await self._check_read(path, auth)
        try:
            async with self._sessions() as session:
                value = await self._read(session, path)
        except SQLAlchemyError as exc:
            raise StoreError(f"read of {path} failed: {exc}") from exc
        return Snapshot(path, value)

    async def set(self, path: str, value: Any) -> None:
        await self.update({path: value})

    async def remove(self, path: str) -> None:
        await self.update({path: None})

    async def update(self, values: Mapping[str, Any], expect: Optional[Mapping[str, Any]] = None) -> None:
        """Apply every ``path: value`` pair as one atomic write.

        ``None`` removes a location. With ``expect`` the write only lands if
        each listed path still holds the given value, otherwise
        ``PreconditionFailed`` is raised and nothing is written.
        """
        targets = {normalize_path(p): v for p, v in values.items()}
        paths = sorted(targets)
        for i, a in enumerate(paths):
            for b in paths[i + 1:]:
                if _related(a, b):
                    raise ValueError(f"overlapping paths in one update: {a!r}, {b!r}")
        expected = {normalize_path(p): v for p, v in (expect or {}).items()}

        async with self._write_lock:
            ts = self.server_now()
            rows: Dict[str, Any] = {}
            for path, value in targets.items():
                _flatten(path, value, ts, rows)
            try:
                async with self._sessions() as session:
                    async with session.begin():
                        for path, value in expected.items():
                            current = await self._read(session, path)
                            if current != value:
                                raise PreconditionFailed(path)
                        for path in paths:
                            await self._clear(session, path)
                        session.add_all(Node(path=p, value=v) for p, v in rows.items())
            except IntegrityError as exc:
                if expected:
                    raise PreconditionFailed(next(iter(expected))) from exc
                raise StoreError(f"concurrent write conflict: {exc}") from exc
            except SQLAlchemyError as exc:
                raise StoreError(f"write failed: {exc}") from exc
            # still under the lock so listeners see writes in commit order
            await self._notify(paths)

    async def _clear(self, session, path: str) -> None:
        parts = path.split("/")
        ancestors = ["/".join(parts[:i]) for i in range(1, len(parts))]
        await session.execute(
            delete(Node).where(
                or_(
                    Node.path == path,
                    Node.path.in_(ancestors),
                    _under(path),
                )
            ).execution_options(synchronize_session=False)
        )

    async def listen(self, path: str, auth=PRIVILEGED) -> Subscription[Snapshot]:
        """Subscribe to ``path``: one snapshot now, then one per committed write
        touching it."""
        path = normalize_path(path)
        await self._check_read(path, auth)
        registry = self._listeners.get(path)
        if registry is None:
            registry = self._listeners[path] = EventRegistry(on_empty=lambda r: self._drop_listeners(path, r))
        sub = registry.subscribe()
        try:
            snapshot = await self.get(path)
        except BaseException:
            sub.close()
            raise
        if not sub.pending:
            # a write that landed meanwhile already delivered a newer snapshot
            sub.push(snapshot)
        return sub

    def _drop_listeners(self, path: str, registry: EventRegistry) -> None:
        if self._listeners.get(path) is registry:
            del self._listeners[path]
        logger.debug("last listener on %s detached", path)

    def listener_count(self, path: Optional[str] = None) -> int:
        if path is None:
            return sum(len(r) for r in self._listeners.values())
        registry = self._listeners.get(normalize_path(path))
        return len(registry) if registry is not None else 0

    async def _notify(self, written: List[str]) -> None:
        for path, registry in list(self._listeners.items()):
            if not any(_related(path, w) for w in written):
                continue
            try:
                snapshot = await self.get(path)
            except StoreError as exc:
                logger.warning("change notification for %s failed: %s", path, exc)
                registry.fail(exc)
                continue
            registry.publish(snapshot)
