"""Tests for the association snapshot synchronizer."""

import pytest

from conftest import FlakyStore
from recon import paths
from recon.exceptions import StoreError, TenantNotFoundError, UnsupportedCollectionError
from recon.pipelines.snapshots import REFERENCE_KINDS, SnapshotSynchronizer, ref_id, sync_snapshots
from recon.store import InMemoryDocumentStore


class CountingStore(InMemoryDocumentStore):
    """In-memory store counting point reads and committed batches."""

    def __init__(self, documents=None):
        super().__init__(documents)
        self.gets: list[str] = []

    async def get(self, path):
        self.gets.append(path)
        return await super().get(path)


@pytest.fixture
def store(tenant_id) -> CountingStore:
    return CountingStore({paths.tenant_doc(tenant_id): {"name": "Acme Staffing"}})


@pytest.fixture
def deal_graph(store, seed):
    seed(paths.COMPANIES, "C1", {"companyName": "Acme", "logo": "acme.png", "industry": "Manufacturing"})
    seed(paths.CONTACTS, "K1", {"firstName": "Jane", "lastName": "Doe", "email": "jane@acme.com"})
    store.seed(paths.user_doc("U1"), {"displayName": "Sam Seller", "email": "sam@staffing.com", "tenantId": "t1"})
    store.seed(paths.company_location("t1", "C1", "L1"), {"nickname": "Plant 1", "city": "Chicago", "state": "IL"})
    seed(paths.LOCATIONS, "L2", {"name": "HQ", "city": "Austin"})
    seed(paths.DEALS, "D1", {
        "name": "Big Deal",
        "associations": {
            "companies": ["C1"],
            "contacts": [{"id": "K1", "snapshot": {}}],
            "salespeople": [{"id": "U1"}],
            "locations": ["L1", {"id": "L2"}],
        },
    })
    seed(paths.DEALS, "D2", {
        "name": "Second Deal",
        "associations": {"companies": [{"id": "C1"}], "contacts": ["K1"]},
    })


class TestSyncSnapshots:

    @pytest.mark.asyncio
    async def test_fills_stale_references(self, store, tenant_id, deal_graph) -> None:
        result = await sync_snapshots(store, tenant_id)

        assert result.success
        assert result.owners_updated == 2
        assert result.references_synced == 7
        deal = (await store.get(paths.doc(tenant_id, paths.DEALS, "D1"))).data
        associations = deal["associations"]
        assert associations["companies"] == [{
            "id": "C1",
            "snapshot": {"companyName": "Acme", "name": "Acme", "logo": "acme.png", "industry": "Manufacturing"},
        }]
        assert associations["contacts"][0]["snapshot"] == {
            "fullName": "Jane Doe", "name": "Jane Doe", "email": "jane@acme.com",
        }
        assert associations["salespeople"][0]["snapshot"]["displayName"] == "Sam Seller"
        assert associations["locations"][0]["snapshot"] == {"nickname": "Plant 1", "city": "Chicago", "state": "IL"}
        assert associations["locations"][1]["snapshot"] == {"name": "HQ", "city": "Austin"}
        assert "updatedAt" in deal

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self, store, tenant_id, deal_graph) -> None:
        await sync_snapshots(store, tenant_id)
        commits = store.commits
        before = store.snapshot()

        second = await sync_snapshots(store, tenant_id)

        assert second.references_synced == 0
        assert second.owners_updated == 0
        assert store.commits == commits
        assert store.snapshot() == before

    @pytest.mark.asyncio
    async def test_canonical_entities_read_once_per_run(self, store, tenant_id, deal_graph) -> None:
        await sync_snapshots(store, tenant_id)
        company_path = paths.doc(tenant_id, paths.COMPANIES, "C1")
        contact_path = paths.doc(tenant_id, paths.CONTACTS, "K1")
        assert store.gets.count(company_path) == 1
        assert store.gets.count(contact_path) == 1

    @pytest.mark.asyncio
    async def test_existing_core_fields_are_never_overwritten(self, store, tenant_id, seed) -> None:
        seed(paths.COMPANIES, "C1", {"name": "Canonical Name"})
        seed(paths.DEALS, "D1", {
            "name": "Deal",
            "associations": {"companies": [{"id": "C1", "snapshot": {"name": "Custom Label"}}]},
        })

        result = await sync_snapshots(store, tenant_id)

        assert result.references_synced == 0
        deal = (await store.get(paths.doc(tenant_id, paths.DEALS, "D1"))).data
        assert deal["associations"]["companies"][0]["snapshot"] == {"name": "Custom Label"}

    @pytest.mark.asyncio
    async def test_missing_target_is_skipped_silently(self, store, tenant_id, seed) -> None:
        seed(paths.DEALS, "D1", {"name": "Deal", "associations": {"companies": ["GONE"], "contacts": []}})

        result = await sync_snapshots(store, tenant_id)

        assert result.errors == []
        assert result.references_synced == 0
        assert result.skipped_missing == 1
        deal = (await store.get(paths.doc(tenant_id, paths.DEALS, "D1"))).data
        assert deal["associations"]["companies"] == ["GONE"]

    @pytest.mark.asyncio
    async def test_single_entity(self, store, tenant_id, deal_graph) -> None:
        result = await sync_snapshots(store, tenant_id, entity_id="D2")

        assert result.scanned == 1
        assert result.owners_updated == 1
        untouched = (await store.get(paths.doc(tenant_id, paths.DEALS, "D1"))).data
        assert untouched["associations"]["companies"] == ["C1"]

    @pytest.mark.asyncio
    async def test_missing_single_entity_reported(self, store, tenant_id) -> None:
        result = await sync_snapshots(store, tenant_id, entity_id="nope")
        assert result.success
        assert result.errors[0]["entityId"] == "nope"

    @pytest.mark.asyncio
    async def test_contact_owners_with_deal_references(self, store, tenant_id, seed) -> None:
        seed(paths.DEALS, "D1", {"name": "Deal", "stage": "won"})
        seed(paths.CONTACTS, "K1", {"fullName": "Jane", "associations": {"deals": ["D1"]}})

        result = await sync_snapshots(store, tenant_id, owner_collection=paths.CONTACTS)

        assert result.references_synced == 1
        contact = (await store.get(paths.doc(tenant_id, paths.CONTACTS, "K1"))).data
        assert contact["associations"]["deals"] == [{"id": "D1", "snapshot": {"name": "Deal", "stage": "won"}}]

    @pytest.mark.asyncio
    async def test_failed_batch_reported_per_owner(self, tenant_id) -> None:
        store = FlakyStore(StoreError("unavailable"), failures=1)
        store.seed(paths.tenant_doc(tenant_id), {})
        store.seed(paths.doc(tenant_id, paths.COMPANIES, "C1"), {"name": "Acme"})
        for deal_id in ("D1", "D2"):
            store.seed(paths.doc(tenant_id, paths.DEALS, deal_id), {"name": deal_id, "associations": {"companies": ["C1"]}})

        result = await sync_snapshots(store, tenant_id, batch_size=1)

        assert result.success
        assert result.scanned == 2
        assert [e["entityId"] for e in result.errors] == ["D1"]
        assert result.owners_updated == 1
        assert result.references_synced == 1
        first = (await store.get(paths.doc(tenant_id, paths.DEALS, "D1"))).data
        second = (await store.get(paths.doc(tenant_id, paths.DEALS, "D2"))).data
        assert first["associations"]["companies"] == ["C1"]
        assert second["associations"]["companies"] == [{"id": "C1", "snapshot": {"companyName": "Acme", "name": "Acme"}}]

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, store) -> None:
        with pytest.raises(TenantNotFoundError):
            await sync_snapshots(store, "missing")

    def test_unsupported_owner_collection(self, store, tenant_id) -> None:
        with pytest.raises(UnsupportedCollectionError):
            SnapshotSynchronizer(store, tenant_id, paths.ASSOCIATIONS)


class TestReferenceHelpers:

    def test_ref_id(self) -> None:
        assert ref_id("C1") == "C1"
        assert ref_id(7) == "7"
        assert ref_id({"id": "C1", "snapshot": {}}) == "C1"
        assert ref_id({"snapshot": {}}) is None
        assert ref_id("") is None

    def test_staleness(self) -> None:
        companies = REFERENCE_KINDS["companies"]
        assert companies.is_stale(None)
        assert companies.is_stale({"logo": "x"})
        assert not companies.is_stale({"companyName": "Acme"})
