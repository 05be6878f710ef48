"""Tests for duplicate detection and resolution."""

import pytest

from conftest import TENANT, FlakyStore
from recon import paths
from recon.exceptions import StoreError, TenantNotFoundError, UnsupportedCollectionError
from recon.pipelines.duplicates import find_duplicate_groups, rank_members, resolve_duplicates
from recon.store import Document

TEN_FIELDS = ["name", "industry", "city", "state", "phone", "website", "tier", "source", "notes", "country"]


def company(name: str, filled: int, created_at=None) -> dict:
    """Company with ``filled`` of ``TEN_FIELDS`` populated (name always first)."""
    data = {field: f"{field}-value" for field in TEN_FIELDS[:filled]}
    data["name"] = name
    if created_at is not None:
        data["createdAt"] = created_at
    return data


class TestRanking:

    @pytest.mark.parametrize("order", [("five", "eight"), ("eight", "five")])
    def test_more_complete_record_is_kept_regardless_of_order(self, order) -> None:
        records = {
            "five": company("Acme Inc", 5, "2024-01-01T00:00:00+00:00"),
            "eight": company("ACME, Inc.", 8, "2024-06-01T00:00:00+00:00"),
        }
        docs = [Document(paths.doc(TENANT, paths.COMPANIES, key), records[key]) for key in order]

        groups = find_duplicate_groups(paths.COMPANIES, docs)

        assert len(groups) == 1
        assert groups[0].keep.id == "eight"
        assert [m.id for m in groups[0].delete] == ["five"]

    def test_equal_scores_keep_earliest_created(self) -> None:
        docs = [
            Document(paths.doc(TENANT, paths.COMPANIES, "newer"), company("Acme", 3, "2024-05-01T00:00:00Z")),
            Document(paths.doc(TENANT, paths.COMPANIES, "older"), company("Acme", 3, "2023-01-01T00:00:00Z")),
        ]
        groups = find_duplicate_groups(paths.COMPANIES, docs)
        assert groups[0].keep.id == "older"

    def test_missing_created_at_counts_as_oldest(self) -> None:
        docs = [
            Document(paths.doc(TENANT, paths.COMPANIES, "dated"), company("Acme", 3, "2023-01-01T00:00:00Z")),
            Document(paths.doc(TENANT, paths.COMPANIES, "undated"), company("Acme", 3)),
        ]
        groups = find_duplicate_groups(paths.COMPANIES, docs)
        assert groups[0].keep.id == "undated"

    def test_near_tie_within_margin_prefers_oldest(self) -> None:
        groups = find_duplicate_groups(
            paths.COMPANIES,
            [
                Document("tenants/t1/crm_companies/a", company("Acme", 4, 1_700_000_000)),
                Document("tenants/t1/crm_companies/b", company("Acme", 5, 1_800_000_000)),
            ],
        )
        members = [groups[0].keep, *groups[0].delete]
        ranked = rank_members(members, tie_margin=1.0)
        assert ranked[0].id == "a"

    def test_singletons_and_nameless_records_are_ignored(self) -> None:
        docs = [
            Document("tenants/t1/crm_companies/a", {"name": "Solo"}),
            Document("tenants/t1/crm_companies/b", {"industry": "x"}),
            Document("tenants/t1/crm_companies/c", {"industry": "x"}),
        ]
        assert find_duplicate_groups(paths.COMPANIES, docs) == []


class TestResolveDuplicates:

    @pytest.fixture
    def seeded(self, seed):
        seed(paths.COMPANIES, "keep", company("Acme Inc", 8))
        seed(paths.COMPANIES, "dup1", company("acme inc.", 5))
        seed(paths.COMPANIES, "dup2", company("ACME  INC", 2))
        seed(paths.COMPANIES, "other", company("Globex", 4))
        seed(paths.COMPANIES, "globex2", company("Globex", 2))
        seed(paths.COMPANIES, "solo", company("Initech", 6))

    @pytest.mark.asyncio
    async def test_dry_run_is_inert(self, store, tenant_id, seeded) -> None:
        before = store.snapshot()

        result = await resolve_duplicates(store, tenant_id, paths.COMPANIES, dry_run=True)

        assert store.snapshot() == before
        assert result.success
        assert result.dry_run
        assert result.total == 6
        assert result.duplicate_groups == 2
        assert result.to_delete == 3
        assert result.to_keep == 3
        assert result.deleted == 0

    @pytest.mark.asyncio
    async def test_deletes_all_but_keeper(self, store, tenant_id, seeded) -> None:
        result = await resolve_duplicates(store, tenant_id, paths.COMPANIES, dry_run=False)

        remaining = {d.id for d in await store.list(paths.collection(tenant_id, paths.COMPANIES))}
        assert remaining == {"keep", "other", "solo"}
        assert result.deleted == 3
        assert result.errors == []

        groups = {g["keepId"]: g for g in result.groups}
        assert sorted(groups["keep"]["deleteIds"]) == ["dup1", "dup2"]

    @pytest.mark.asyncio
    async def test_rerun_finds_nothing(self, store, tenant_id, seeded) -> None:
        await resolve_duplicates(store, tenant_id, paths.COMPANIES, dry_run=False)
        second = await resolve_duplicates(store, tenant_id, paths.COMPANIES, dry_run=False)

        assert second.duplicate_groups == 0
        assert second.deleted == 0

    @pytest.mark.asyncio
    async def test_keeper_counters(self, store, tenant_id, seeded) -> None:
        await resolve_duplicates(store, tenant_id, paths.COMPANIES, dry_run=False, update_keeper=True)

        keeper = (await store.get(paths.doc(tenant_id, paths.COMPANIES, "keep"))).data
        assert keeper["mergedDuplicateCount"] == 2
        assert sorted(keeper["mergedDuplicateIds"]) == ["dup1", "dup2"]

    @pytest.mark.asyncio
    async def test_contacts_grouped_by_person_name(self, store, tenant_id, seed) -> None:
        seed(paths.CONTACTS, "a", {"fullName": "Jane Doe", "email": "jane@example.com", "phone": "1"})
        seed(paths.CONTACTS, "b", {"firstName": "Jane", "lastName": "Doe"})

        result = await resolve_duplicates(store, tenant_id, paths.CONTACTS, dry_run=False)

        assert result.deleted == 1
        assert await store.get(paths.doc(tenant_id, paths.CONTACTS, "a")) is not None

    @pytest.mark.asyncio
    async def test_failed_batch_reported_per_group(self, tenant_id) -> None:
        store = FlakyStore(StoreError("unavailable"), failures=1)
        store.seed(paths.tenant_doc(tenant_id), {})
        for doc_id, name, filled in [("a1", "Acme", 5), ("a2", "Acme", 2), ("g1", "Globex", 5), ("g2", "Globex", 2)]:
            store.seed(paths.doc(tenant_id, paths.COMPANIES, doc_id), company(name, filled))

        result = await resolve_duplicates(store, tenant_id, paths.COMPANIES, dry_run=False, batch_size=1)

        assert result.success
        assert len(result.errors) == 1
        assert result.errors[0]["group"] == "acme"
        assert result.deleted == 1
        assert await store.get(paths.doc(tenant_id, paths.COMPANIES, "g2")) is None

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_fatal(self, store) -> None:
        with pytest.raises(TenantNotFoundError):
            await resolve_duplicates(store, "nope", paths.COMPANIES)

    @pytest.mark.asyncio
    async def test_unsupported_collection(self, store, tenant_id) -> None:
        with pytest.raises(UnsupportedCollectionError):
            await resolve_duplicates(store, tenant_id, paths.ASSOCIATIONS)
