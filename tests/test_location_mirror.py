"""Tests for the location state mirror."""

import pytest

from conftest import TENANT, FlakyStore
from recon import paths
from recon.batching import BatchWriter
from recon.exceptions import StoreError, TenantNotFoundError
from recon.pipelines.location_mirror import (
    compute_state_fields,
    location_mirror_stats,
    normalize_state,
    rebuild_location_mirror,
    register_location_mirror,
    state_from_address_text,
)

LOCATION = paths.company_location("t1", "C1", "L1")
MIRROR = paths.mirror_doc("t1", "C1", "L1")


class TestStateNormalization:

    @pytest.mark.parametrize("raw", ["Illinois", "IL", "il", " illinois ", "ILLINOIS"])
    def test_illinois(self, raw: str) -> None:
        result = normalize_state(raw)
        assert (result.state_code, result.state_name) == ("IL", "Illinois")

    def test_multi_word_state(self) -> None:
        result = normalize_state("new york")
        assert (result.state_code, result.state_name) == ("NY", "New York")

    @pytest.mark.parametrize("raw", ["Zanzibar", "", None, "XX", 42])
    def test_unresolvable(self, raw) -> None:
        result = normalize_state(raw)
        assert result.state_code is None
        assert result.state_name is None

    def test_address_text_with_zip(self) -> None:
        assert state_from_address_text("123 Main St, Chicago, Illinois 60639").state_code == "IL"
        assert state_from_address_text("9 Elm, Springfield, IL 62701-1234").state_code == "IL"

    def test_address_text_code_without_zip(self) -> None:
        assert state_from_address_text("500 Congress Ave, Austin, TX").state_code == "TX"

    def test_address_text_without_state(self) -> None:
        assert state_from_address_text("Somewhere, Zanzibar 12345").state_code is None

    def test_field_precedence(self) -> None:
        fields = compute_state_fields({"state": "Texas", "addressText": "1 Main, Chicago, IL 60601"})
        assert fields.state_code == "TX"
        assert fields.raw == "Texas"

    def test_nested_address_state(self) -> None:
        assert compute_state_fields({"address": {"stateCode": "wa"}}).state_code == "WA"

    def test_falls_back_to_address_text(self) -> None:
        fields = compute_state_fields({"state": "Zanzibar", "address": "1 Main St, Denver, Colorado 80202"})
        assert fields.state_code == "CO"
        assert fields.raw == "Zanzibar"

    def test_pure_function(self) -> None:
        location = {"state": "Illinois", "city": "Chicago"}
        assert compute_state_fields(location) == compute_state_fields(dict(location))


class TestMirrorTriggers:

    @pytest.fixture
    def wired(self, store):
        register_location_mirror(store)
        return store

    async def write(self, store, path: str, data: dict | None) -> None:
        async with BatchWriter(store) as writer:
            if data is None:
                await writer.delete(path)
            else:
                await writer.set(path, data)

    @pytest.mark.asyncio
    async def test_created_location_is_mirrored(self, wired) -> None:
        await self.write(wired, LOCATION, {"name": "Plant", "state": "Illinois"})

        mirror = await wired.get(MIRROR)
        assert mirror.id == "C1_L1"
        assert mirror.data == {"companyId": "C1", "state": "Illinois", "stateCode": "IL", "stateName": "Illinois"}

    @pytest.mark.asyncio
    async def test_update_to_unresolvable_state_deletes_mirror(self, wired) -> None:
        await self.write(wired, LOCATION, {"state": "IL"})
        await self.write(wired, LOCATION, {"state": "Zanzibar"})

        assert await wired.get(MIRROR) is None

    @pytest.mark.asyncio
    async def test_deleted_location_removes_mirror(self, wired) -> None:
        await self.write(wired, LOCATION, {"state": "IL"})
        await self.write(wired, LOCATION, None)

        assert await wired.get(MIRROR) is None

    @pytest.mark.asyncio
    async def test_upsert_merges_into_existing_mirror(self, wired) -> None:
        wired.seed(MIRROR, {"companyId": "C1", "stateCode": "TX", "region": "Midwest"})

        await self.write(wired, LOCATION, {"state": "IL"})

        mirror = (await wired.get(MIRROR)).data
        assert mirror["stateCode"] == "IL"
        assert mirror["region"] == "Midwest"

    @pytest.mark.asyncio
    async def test_other_paths_do_not_trigger(self, wired) -> None:
        await self.write(wired, paths.doc("t1", paths.LOCATIONS, "L1"), {"state": "IL"})
        assert await wired.list(paths.collection("t1", paths.LOCATION_MIRROR)) == []


class TestRebuildAndStats:

    @pytest.fixture
    def locations(self, store, seed):
        seed(paths.COMPANIES, "C1", {"name": "Acme"})
        seed(paths.COMPANIES, "C2", {"name": "Globex"})
        store.seed(paths.company_location("t1", "C1", "L1"), {"state": "Illinois"})
        store.seed(paths.company_location("t1", "C1", "L2"), {"addressText": "1 Main, Austin, TX 73301"})
        store.seed(paths.company_location("t1", "C1", "L3"), {"state": "Zanzibar"})
        store.seed(paths.company_location("t1", "C2", "L4"), {"stateCode": "IL"})

    @pytest.mark.asyncio
    async def test_rebuild_writes_resolvable_locations(self, store, tenant_id, locations) -> None:
        result = await rebuild_location_mirror(store, tenant_id)

        assert result.success
        assert result.count == 3
        assert result.companies_scanned == 2
        ids = {d.id for d in await store.list(paths.collection(tenant_id, paths.LOCATION_MIRROR))}
        assert ids == {"C1_L1", "C1_L2", "C2_L4"}

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, store, tenant_id, locations) -> None:
        await rebuild_location_mirror(store, tenant_id)
        first = store.snapshot()
        await rebuild_location_mirror(store, tenant_id)
        assert store.snapshot() == first

    @pytest.mark.asyncio
    async def test_truncate_removes_stale_records(self, store, tenant_id, locations) -> None:
        store.seed(paths.mirror_doc(tenant_id, "C9", "OLD"), {"companyId": "C9", "stateCode": "CA"})

        result = await rebuild_location_mirror(store, tenant_id, truncate=True)

        assert result.truncated == 1
        assert await store.get(paths.mirror_doc(tenant_id, "C9", "OLD")) is None

    @pytest.mark.asyncio
    async def test_rebuild_removes_mirror_of_unresolvable_location(self, store, tenant_id, locations) -> None:
        store.seed(paths.mirror_doc(tenant_id, "C1", "L3"), {"companyId": "C1", "stateCode": "IL"})

        result = await rebuild_location_mirror(store, tenant_id)

        assert await store.get(paths.mirror_doc(tenant_id, "C1", "L3")) is None
        assert result.removed == 1
        assert result.truncated == 0
        assert result.count == 3

    @pytest.mark.asyncio
    async def test_company_scoped_rebuild(self, store, tenant_id, locations) -> None:
        store.seed(paths.mirror_doc(tenant_id, "C2", "L4"), {"companyId": "C2", "stateCode": "IL"})
        store.seed(paths.mirror_doc(tenant_id, "C1", "OLD"), {"companyId": "C1", "stateCode": "CA"})

        result = await rebuild_location_mirror(store, tenant_id, company_id="C1", truncate=True)

        assert result.count == 2
        assert result.truncated == 1
        assert await store.get(paths.mirror_doc(tenant_id, "C2", "L4")) is not None

    @pytest.mark.asyncio
    async def test_stats(self, store, tenant_id, locations) -> None:
        await rebuild_location_mirror(store, tenant_id)
        store.seed(paths.mirror_doc(tenant_id, "C3", "L9"), {"companyId": "C3"})

        stats = await location_mirror_stats(store, tenant_id, state="IL", sample_limit=1)

        assert stats.total == 4
        assert stats.counts == {"IL": 2, "TX": 1, "UNKNOWN": 1}
        assert len(stats.samples) == 1
        assert stats.samples[0]["stateCode"] == "IL"

    @pytest.mark.asyncio
    async def test_stats_without_state_has_no_samples(self, store, tenant_id) -> None:
        stats = await location_mirror_stats(store, tenant_id)
        assert stats.total == 0
        assert stats.samples is None

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, store) -> None:
        with pytest.raises(TenantNotFoundError):
            await rebuild_location_mirror(store, "ghost")

    @pytest.mark.asyncio
    async def test_failed_batch_reported_per_location(self, tenant_id) -> None:
        flaky = FlakyStore(StoreError("write quota exceeded"), documents={paths.tenant_doc(TENANT): {}})
        flaky.seed(paths.doc(TENANT, paths.COMPANIES, "C1"), {"name": "Acme"})
        flaky.seed(paths.company_location(TENANT, "C1", "L1"), {"state": "IL"})
        flaky.seed(paths.company_location(TENANT, "C1", "L2"), {"state": "TX"})

        result = await rebuild_location_mirror(flaky, tenant_id, batch_size=1)

        assert result.count == 1
        assert result.errors == [{"entityId": "L1", "error": result.errors[0]["error"]}]
        assert await flaky.get(paths.mirror_doc(TENANT, "C1", "L2")) is not None

    @pytest.mark.asyncio
    async def test_invalid_location_is_skipped(self, store, tenant_id, seed) -> None:
        seed(paths.COMPANIES, "C1", {"name": "Acme"})
        store.seed(paths.company_location(tenant_id, "C1", "L1"), {"state": "IL", "addressText": {"line": 1}})
        store.seed(paths.company_location(tenant_id, "C1", "L2"), {"state": "TX"})

        result = await rebuild_location_mirror(store, tenant_id)

        assert result.count == 1
        assert [e["entityId"] for e in result.errors] == ["L1"]
