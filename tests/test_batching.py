"""Tests for the bounded-size batch writer."""

import math

import pytest

from conftest import FlakyStore
from recon.batching import BatchWriter
from recon.config import settings
from recon.exceptions import BatchCommitError, StoreError, TransientStoreError
from recon.pipelines.sanitize import UNSET
from recon.store import InMemoryDocumentStore, WriteKind


class RecordingStore(InMemoryDocumentStore):
    """Store that remembers the size of every committed batch."""

    def __init__(self):
        super().__init__()
        self.batch_sizes: list[int] = []

    async def _commit(self, ops):
        self.batch_sizes.append(len(ops))
        return await super()._commit(ops)


class TestBatchWriter:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,total", [(3, 10), (5, 5), (500, 1201)])
    async def test_commits_ceil_batches(self, limit: int, total: int) -> None:
        store = RecordingStore()
        async with BatchWriter(store, limit=limit) as writer:
            for i in range(total):
                await writer.set(f"tenants/t1/crm_companies/c{i}", {"n": i})

        assert len(store.batch_sizes) == math.ceil(total / limit)
        assert all(size <= limit for size in store.batch_sizes)
        assert sum(store.batch_sizes) == total
        assert writer.ops_committed == total

    @pytest.mark.asyncio
    async def test_writes_are_sanitized(self) -> None:
        store = InMemoryDocumentStore()
        async with BatchWriter(store) as writer:
            await writer.set("tenants/t1/crm_companies/c1", {"name": "Acme", "logo": UNSET, "tags": ["a", None]})

        assert store.snapshot()["tenants/t1/crm_companies/c1"] == {"name": "Acme", "tags": ["a"]}

    @pytest.mark.asyncio
    async def test_pending_discarded_on_error(self) -> None:
        store = InMemoryDocumentStore()
        with pytest.raises(RuntimeError):
            async with BatchWriter(store, limit=10) as writer:
                await writer.set("tenants/t1/crm_companies/c1", {"n": 1})
                raise RuntimeError("abort")

        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self) -> None:
        store = FlakyStore(TransientStoreError("contention"), failures=2)
        writer = BatchWriter(store, limit=10, max_attempts=3, backoff_multiplier=0, backoff_max=0)
        await writer.set("tenants/t1/crm_companies/c1", {"n": 1})
        assert await writer.flush() == 1

        assert store.attempts == 3
        assert "tenants/t1/crm_companies/c1" in store.snapshot()

    @pytest.mark.asyncio
    async def test_failed_batch_carries_tags(self) -> None:
        store = FlakyStore(StoreError("boom"), failures=1)
        writer = BatchWriter(store, limit=10, max_attempts=3, backoff_multiplier=0, backoff_max=0)
        await writer.delete("tenants/t1/crm_companies/c1", tag="g1")
        await writer.delete("tenants/t1/crm_companies/c2", tag="g2")

        with pytest.raises(BatchCommitError) as info:
            await writer.flush()

        assert info.value.tags == {"g1", "g2"}
        # non-transient errors are not retried
        assert store.attempts == 1
        assert writer.batches_failed == 1
        assert writer.pending == 0

    @pytest.mark.asyncio
    async def test_update_of_missing_document_rejects_batch(self) -> None:
        store = InMemoryDocumentStore({"tenants/t1/crm_companies/c1": {"n": 1}})
        writer = BatchWriter(store, limit=10)
        await writer.update("tenants/t1/crm_companies/c1", {"n": 2})
        await writer.update("tenants/t1/crm_companies/missing", {"n": 2})

        with pytest.raises(BatchCommitError):
            await writer.flush()
        assert store.snapshot()["tenants/t1/crm_companies/c1"] == {"n": 1}

    @pytest.mark.asyncio
    async def test_committed_counts_by_tag_and_kind(self) -> None:
        store = InMemoryDocumentStore()
        async with BatchWriter(store, limit=2) as writer:
            await writer.set("tenants/t1/x/a", {"n": 1}, tag="a")
            await writer.set("tenants/t1/x/b", {"n": 1}, tag="b")
            await writer.delete("tenants/t1/x/a", tag="a")

        assert writer.committed(tag="a") == 2
        assert writer.committed(kind=WriteKind.DELETE) == 1
        assert writer.batches_committed == 2

    @pytest.mark.parametrize("limit", [0, -1])
    def test_limit_must_be_positive(self, limit: int) -> None:
        with pytest.raises(ValueError):
            BatchWriter(InMemoryDocumentStore(), limit=limit)

    def test_zero_attempts_rejected(self) -> None:
        with pytest.raises(ValueError):
            BatchWriter(InMemoryDocumentStore(), max_attempts=0)

    def test_defaults_from_settings(self) -> None:
        writer = BatchWriter(InMemoryDocumentStore())
        assert writer.limit == settings.batch.limit
        assert writer.max_attempts == settings.batch.max_attempts
