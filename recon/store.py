"""Document store collaborator: repository interface and in-memory implementation.

The reconciliation pipelines never talk to a concrete database client.
They receive a ``DocumentStore`` exposing point reads, collection scans,
atomic batched writes and change-event subscriptions, which keeps every
pipeline testable against ``InMemoryDocumentStore``.
"""
from __future__ import annotations

import copy
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from . import paths
from .exceptions import DocumentNotFoundError

logger = logging.getLogger(__name__)


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the stored timestamp format)."""
    return datetime.now(timezone.utc).isoformat()


class WriteKind(str, Enum):
    """Write operation kinds."""
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


class ChangeKind(str, Enum):
    """Change event kinds."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass
class Document:
    """A stored document."""
    path: str
    data: dict[str, Any]

    @property
    def id(self) -> str:
        return paths.split(self.path)[1]

    @property
    def collection(self) -> str:
        return paths.split(self.path)[0]


@dataclass
class WriteOp:
    """A single write against a document path.

    ``tag`` is an opaque caller label (usually an entity id or group key)
    used to attribute a failed batch back to the entities it carried.
    """
    kind: WriteKind
    path: str
    data: dict[str, Any] | None = None
    merge: bool = False
    tag: str | None = None


@dataclass
class ChangeEvent:
    """Notification emitted for every committed write that changed a document."""
    kind: ChangeKind
    path: str
    params: dict[str, str]
    before: dict[str, Any] | None
    after: dict[str, Any] | None

    @property
    def doc_id(self) -> str:
        return paths.split(self.path)[1]


EventHandler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A handler registered against a path pattern."""
    pattern: str
    handler: EventHandler
    kinds: frozenset[ChangeKind]
    regex: re.Pattern = field(repr=False, default=None)

    def __post_init__(self) -> None:
        if self.regex is None:
            self.regex = compile_pattern(self.pattern)

    def match(self, event_kind: ChangeKind, path: str) -> dict[str, str] | None:
        if event_kind not in self.kinds:
            return None
        m = self.regex.match(path)
        return m.groupdict() if m else None


def compile_pattern(pattern: str) -> re.Pattern:
    """Compile ``tenants/{tenantId}/...`` into an anchored regex with named groups."""
    parts = []
    for segment in pattern.strip("/").split("/"):
        if segment.startswith("{") and segment.endswith("}"):
            parts.append(f"(?P<{segment[1:-1]}>[^/]+)")
        else:
            parts.append(re.escape(segment))
    return re.compile("^" + "/".join(parts) + "$")


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``patch`` into ``base``; nested maps merge, everything else replaces."""
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def get_field(data: Mapping[str, Any], dotted: str) -> Any:
    """Read a possibly nested field (``address.state``) from a document."""
    value: Any = data
    for part in dotted.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def matches(data: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
    """Field-equality predicate used by collection scans."""
    if not where:
        return True
    return all(get_field(data, key) == expected for key, expected in where.items())


def apply_op(current: dict[str, Any] | None, op: WriteOp) -> dict[str, Any] | None:
    """Compute a document's state after ``op``.

    Raises:
        DocumentNotFoundError: If an update targets a missing document
    """
    if op.kind == WriteKind.DELETE:
        return None
    data = copy.deepcopy(op.data or {})
    if op.kind == WriteKind.UPDATE:
        if current is None:
            raise DocumentNotFoundError(op.path)
        updated = dict(current)
        updated.update(data)
        return updated
    if op.merge and current is not None:
        return deep_merge(current, data)
    return data


class DocumentStore(ABC):
    """Repository interface consumed by every reconciliation pipeline."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self.failed_deliveries = 0

    @abstractmethod
    async def get(self, path: str) -> Document | None:
        """Point read; ``None`` if the document does not exist."""

    @abstractmethod
    async def list(self, collection: str, where: Mapping[str, Any] | None = None) -> list[Document]:
        """Scan a collection, optionally filtered by field equality."""

    @abstractmethod
    async def _commit(self, ops: Sequence[WriteOp]) -> list[ChangeEvent]:
        """Apply ``ops`` atomically and return the resulting change events."""

    async def batch_write(self, ops: Sequence[WriteOp]) -> None:
        """Commit ``ops`` as one atomic batch, then notify subscribers."""
        if not ops:
            return
        events = await self._commit(ops)
        await self._dispatch(events)

    def new_id(self) -> str:
        """Store-assigned document id."""
        return uuid.uuid4().hex[:20]

    def subscribe(
        self,
        pattern: str,
        handler: EventHandler,
        kinds: Iterable[ChangeKind] | None = None,
    ) -> Subscription:
        """Register ``handler`` for changes on paths matching ``pattern``."""
        subscription = Subscription(
            pattern=pattern,
            handler=handler,
            kinds=frozenset(kinds or ChangeKind),
        )
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {pattern}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.remove(subscription)

    async def _dispatch(self, events: Sequence[ChangeEvent]) -> None:
        for event in events:
            for subscription in list(self._subscriptions):
                params = subscription.match(event.kind, event.path)
                if params is None:
                    continue
                event.params = params
                try:
                    await subscription.handler(event)
                except Exception:
                    # The write is already committed; the event stays re-deliverable
                    # by re-running the rebuild operation.
                    self.failed_deliveries += 1
                    logger.exception(f"Handler for {subscription.pattern} failed on {event.kind.value} {event.path}")


def build_event(path: str, before: dict[str, Any] | None, after: dict[str, Any] | None) -> ChangeEvent | None:
    """Describe the transition ``before -> after``; ``None`` when nothing existed."""
    if before is None and after is None:
        return None
    if before is None:
        kind = ChangeKind.CREATED
    elif after is None:
        kind = ChangeKind.DELETED
    else:
        kind = ChangeKind.UPDATED
    return ChangeEvent(
        kind=kind,
        path=path,
        params={},
        before=copy.deepcopy(before),
        after=copy.deepcopy(after),
    )


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store with the same atomicity and event semantics as the SQL store."""

    def __init__(self, documents: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        super().__init__()
        self._docs: dict[str, dict[str, Any]] = {}
        self.commits = 0
        for path, data in (documents or {}).items():
            self._docs[path.strip("/")] = copy.deepcopy(dict(data))

    def seed(self, path: str, data: Mapping[str, Any]) -> None:
        """Insert a document directly, bypassing batches and events."""
        self._docs[path.strip("/")] = copy.deepcopy(dict(data))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Deep copy of every stored document, keyed by path."""
        return copy.deepcopy(self._docs)

    async def get(self, path: str) -> Document | None:
        data = self._docs.get(path.strip("/"))
        if data is None:
            return None
        return Document(path=path.strip("/"), data=copy.deepcopy(data))

    async def list(self, collection: str, where: Mapping[str, Any] | None = None) -> list[Document]:
        prefix = collection.strip("/")
        return [
            Document(path=path, data=copy.deepcopy(data))
            for path, data in self._docs.items()
            if paths.split(path)[0] == prefix and matches(data, where)
        ]

    async def _commit(self, ops: Sequence[WriteOp]) -> list[ChangeEvent]:
        staged: dict[str, dict[str, Any] | None] = {}
        events: list[ChangeEvent] = []
        for op in ops:
            path = op.path.strip("/")
            before = staged[path] if path in staged else self._docs.get(path)
            after = apply_op(before, op)
            staged[path] = after
            event = build_event(path, before, after)
            if event is not None:
                events.append(event)

        for path, data in staged.items():
            if data is None:
                self._docs.pop(path, None)
            else:
                self._docs[path] = data
        self.commits += 1
        return events
