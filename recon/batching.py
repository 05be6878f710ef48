"""Bounded-size batch writer shared by every reconciliation pipeline.

Operations accumulate until the configured limit, then commit as one
atomic batch. A run as a whole is not atomic: a crash between commits
leaves only the batches committed so far, so callers must be safe to
re-run.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Mapping

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import settings
from .exceptions import BatchCommitError, StoreError, TransientStoreError
from .pipelines.sanitize import has_unset, sanitize
from .store import DocumentStore, WriteKind, WriteOp

logger = logging.getLogger(__name__)


class BatchWriter:
    """Commit-on-full write accumulator.

    Usage:
        async with BatchWriter(store) as writer:
            await writer.update(path, {"companyId": "C9"}, tag=contact_id)

    Leaving the block flushes the final partial batch. If the block raises,
    pending (uncommitted) operations are discarded.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        limit: int | None = None,
        max_attempts: int | None = None,
        backoff_multiplier: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self.store = store
        self.limit = settings.batch.limit if limit is None else limit
        if self.limit < 1:
            raise ValueError("Batch limit must be at least 1")
        self.max_attempts = settings.batch.max_attempts if max_attempts is None else max_attempts
        if self.max_attempts < 1:
            raise ValueError("At least one commit attempt is required")
        self.backoff_multiplier = (
            settings.batch.backoff_multiplier if backoff_multiplier is None else backoff_multiplier
        )
        self.backoff_max = settings.batch.backoff_max if backoff_max is None else backoff_max

        self._pending: list[WriteOp] = []
        self._committed: Counter[tuple[str | None, WriteKind]] = Counter()
        self.batches_committed = 0
        self.batches_failed = 0
        self.ops_committed = 0

    async def __aenter__(self) -> BatchWriter:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.flush()
        elif self._pending:
            logger.warning(f"Discarding {len(self._pending)} uncommitted writes after {exc_type.__name__}")
            self._pending = []

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def set(
        self,
        path: str,
        data: Mapping[str, Any],
        *,
        merge: bool = False,
        tag: str | None = None,
    ) -> None:
        await self.add(WriteOp(WriteKind.SET, path, self._prepare(path, data), merge=merge, tag=tag))

    async def update(self, path: str, data: Mapping[str, Any], *, tag: str | None = None) -> None:
        await self.add(WriteOp(WriteKind.UPDATE, path, self._prepare(path, data), tag=tag))

    async def delete(self, path: str, *, tag: str | None = None) -> None:
        await self.add(WriteOp(WriteKind.DELETE, path, tag=tag))

    async def add(self, op: WriteOp) -> None:
        """Queue ``op``; commits the batch once it reaches the limit.

        Raises:
            BatchCommitError: If the batch this op completed failed to commit
        """
        self._pending.append(op)
        if len(self._pending) >= self.limit:
            await self.flush()

    async def flush(self) -> int:
        """Commit whatever is pending.

        Returns:
            Number of operations committed

        Raises:
            BatchCommitError: If the batch failed after retries. The batch
                is dropped either way so the writer stays usable.
        """
        if not self._pending:
            return 0
        ops, self._pending = self._pending, []
        await self._commit(ops)

        self.batches_committed += 1
        self.ops_committed += len(ops)
        for op in ops:
            self._committed[(op.tag, op.kind)] += 1
        logger.info(f"Committed batch #{self.batches_committed} with {len(ops)} writes")
        return len(ops)

    def committed(self, *, tag: str | None = None, kind: WriteKind | None = None) -> int:
        """Committed operation count, optionally narrowed by tag and/or kind."""
        return sum(
            count
            for (op_tag, op_kind), count in self._committed.items()
            if (tag is None or op_tag == tag) and (kind is None or op_kind == kind)
        )

    async def _commit(self, ops: list[WriteOp]) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            retry=retry_if_exception_type(TransientStoreError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.store.batch_write(ops)
        except StoreError as e:
            self.batches_failed += 1
            logger.error(f"Batch of {len(ops)} writes failed: {e}")
            raise BatchCommitError(f"Batch commit failed: {e}", ops) from e

    @staticmethod
    def _prepare(path: str, data: Mapping[str, Any]) -> dict[str, Any]:
        if has_unset(data):
            logger.debug(f"Stripping unset fields from write to {path}")
        return sanitize(dict(data))
