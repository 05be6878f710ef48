"""Snapshot synchronizer for embedded association references.

Owning entities (deals by default) embed ``associations.<kind>`` lists of
``{id, snapshot}`` entries. A reference whose snapshot lacks its kind's core
fields is stale: the referenced entity is loaded once per run, projected to
its display fields and merged into the snapshot. References with core fields
present are never re-read or rewritten, so a second run writes nothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from .. import paths
from ..batching import BatchWriter
from ..config import settings
from ..exceptions import BatchCommitError, EntityValidationError, UnsupportedCollectionError
from ..schemas import AssociatedEntity, parse
from ..store import Document, DocumentStore, now_iso
from .common import failed_tags, failure, require_tenant
from .sanitize import UNSET, sanitize

logger = logging.getLogger(__name__)

OWNER_COLLECTIONS = (paths.DEALS, paths.CONTACTS, paths.COMPANIES)


def _value(data: Mapping[str, Any], *keys: str) -> Any:
    """First truthy value among ``keys``, else ``UNSET``."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", [], {}):
            return value
    return UNSET


def _joined_name(data: Mapping[str, Any]) -> Any:
    joined = " ".join(p for p in (data.get("firstName"), data.get("lastName")) if isinstance(p, str) and p)
    return joined or UNSET


def company_snapshot(data: Mapping[str, Any]) -> dict[str, Any]:
    name = _value(data, "companyName", "name", "legalName")
    return {
        "companyName": name,
        "name": name,
        "logo": _value(data, "logo", "logoUrl"),
        "companyUrl": _value(data, "companyUrl", "website", "domain"),
        "industry": _value(data, "industry"),
        "city": _value(data, "city"),
        "state": _value(data, "state"),
    }


def contact_snapshot(data: Mapping[str, Any]) -> dict[str, Any]:
    full_name = _value(data, "fullName")
    if full_name is UNSET:
        full_name = _joined_name(data)
    return {
        "fullName": full_name,
        "name": full_name,
        "email": _value(data, "email"),
        "phone": _value(data, "phone"),
        "title": _value(data, "title", "jobTitle"),
        "companyId": _value(data, "companyId"),
        "companyName": _value(data, "companyName"),
    }


def salesperson_snapshot(data: Mapping[str, Any]) -> dict[str, Any]:
    display_name = _value(data, "displayName")
    if display_name is UNSET:
        display_name = _joined_name(data)
    if display_name is UNSET:
        display_name = _value(data, "email")
    return {
        "displayName": display_name,
        "email": _value(data, "email"),
        "phone": _value(data, "phone", "phoneNumber"),
        "department": _value(data, "department"),
    }


def location_snapshot(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "nickname": _value(data, "nickname"),
        "name": _value(data, "name"),
        "city": _value(data, "city"),
        "state": _value(data, "state"),
    }


def deal_snapshot(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "name": _value(data, "name"),
        "stage": _value(data, "stage"),
        "status": _value(data, "status"),
        "amount": _value(data, "amount", "estimatedRevenue"),
        "closeDate": _value(data, "closeDate", "expectedCloseDate"),
    }


@dataclass(frozen=True)
class ReferenceKind:
    """How one ``associations.<kind>`` list is kept fresh."""
    name: str
    core_fields: tuple[str, ...]
    project: Callable[[Mapping[str, Any]], dict[str, Any]]

    def is_stale(self, snapshot: Any) -> bool:
        if not isinstance(snapshot, Mapping):
            return True
        return not any(snapshot.get(f) for f in self.core_fields)


REFERENCE_KINDS: dict[str, ReferenceKind] = {
    "companies": ReferenceKind("companies", ("name", "companyName"), company_snapshot),
    "contacts": ReferenceKind("contacts", ("fullName", "name", "email"), contact_snapshot),
    "salespeople": ReferenceKind("salespeople", ("displayName", "email"), salesperson_snapshot),
    "locations": ReferenceKind("locations", ("nickname", "name", "city"), location_snapshot),
    "deals": ReferenceKind("deals", ("name",), deal_snapshot),
}


def ref_id(entry: Any) -> str | None:
    """Referenced id of a list entry (bare id string or ``{id, ...}`` map)."""
    if isinstance(entry, str):
        return entry or None
    if isinstance(entry, int) and not isinstance(entry, bool):
        return str(entry)
    if isinstance(entry, Mapping) and entry.get("id"):
        return str(entry["id"])
    return None


@dataclass
class SnapshotSyncResult:
    """Result of a snapshot synchronization run."""
    success: bool
    tenant_id: str
    owner_collection: str
    scanned: int = 0
    owners_updated: int = 0
    references_synced: int = 0
    skipped_missing: int = 0
    errors: list[dict] = field(default_factory=list)


class SnapshotSynchronizer:
    """One synchronization run over a tenant's owning entities.

    Canonical entities are memoized per run by document path, including
    misses, so each referenced entity is read at most once.
    """

    def __init__(self, store: DocumentStore, tenant_id: str, owner_collection: str = paths.DEALS):
        if owner_collection not in OWNER_COLLECTIONS:
            raise UnsupportedCollectionError("Snapshot sync", owner_collection)
        self.store = store
        self.tenant_id = tenant_id
        self.owner_collection = owner_collection
        self._cache: dict[str, dict[str, Any] | None] = {}
        self.reads = 0
        self._resolvers: dict[str, Callable[[str, list[str]], Awaitable[dict[str, Any] | None]]] = {
            "companies": lambda rid, _: self._load(paths.doc(tenant_id, paths.COMPANIES, rid)),
            "contacts": lambda rid, _: self._load(paths.doc(tenant_id, paths.CONTACTS, rid)),
            "salespeople": lambda rid, _: self._load(paths.user_doc(rid)),
            "locations": self._resolve_location,
            "deals": lambda rid, _: self._load(paths.doc(tenant_id, paths.DEALS, rid)),
        }

    async def _load(self, path: str) -> dict[str, Any] | None:
        if path in self._cache:
            return self._cache[path]
        self.reads += 1
        doc = await self.store.get(path)
        data = doc.data if doc is not None else None
        self._cache[path] = data
        return data

    async def _resolve_location(self, location_id: str, company_ids: list[str]) -> dict[str, Any] | None:
        """Company ``locations`` sub-collections first, then ``crm_locations``."""
        for company_id in company_ids:
            data = await self._load(paths.company_location(self.tenant_id, company_id, location_id))
            if data is not None:
                return data
        return await self._load(paths.doc(self.tenant_id, paths.LOCATIONS, location_id))

    def _company_scope(self, owner: Document, associations: Mapping[str, Any]) -> list[str]:
        ids = [rid for rid in (ref_id(e) for e in associations.get("companies") or []) if rid]
        if self.owner_collection == paths.COMPANIES:
            ids.insert(0, owner.id)
        elif owner.data.get("companyId"):
            ids.append(str(owner.data["companyId"]))
        return list(dict.fromkeys(ids))

    async def sync_owner(self, owner: Document) -> tuple[dict[str, Any] | None, int, int]:
        """Compute refreshed associations for one owning entity.

        Returns:
            ``(new_associations or None when unchanged, refs synced, refs skipped)``
        """
        associations = owner.data.get("associations")
        if not isinstance(associations, Mapping):
            return None, 0, 0

        company_ids = self._company_scope(owner, associations)
        updated = dict(associations)
        synced = skipped = 0

        for kind_name, kind in REFERENCE_KINDS.items():
            entries = associations.get(kind_name)
            if not isinstance(entries, list) or not entries:
                continue
            new_entries: list[Any] = []
            kind_changed = False
            for entry in entries:
                rid = ref_id(entry)
                existing = entry.get("snapshot") if isinstance(entry, Mapping) else None
                if rid is None or not kind.is_stale(existing):
                    new_entries.append(entry)
                    continue

                canonical = await self._resolvers[kind_name](rid, company_ids)
                if canonical is None:
                    logger.debug(f"{kind_name} reference {rid} on {owner.id} has no target; leaving as is")
                    skipped += 1
                    new_entries.append(entry)
                    continue

                base = dict(existing) if isinstance(existing, Mapping) else {}
                merged = {**base, **sanitize(kind.project(canonical))}
                if merged == base:
                    new_entries.append(entry)
                    continue
                rebuilt = dict(entry) if isinstance(entry, Mapping) else {"id": rid}
                rebuilt["snapshot"] = merged
                new_entries.append(rebuilt)
                kind_changed = True
                synced += 1

            if kind_changed:
                updated[kind_name] = new_entries

        if synced == 0:
            return None, 0, skipped
        return updated, synced, skipped


async def sync_snapshots(
    store: DocumentStore,
    tenant_id: str,
    *,
    entity_id: str | None = None,
    owner_collection: str = paths.DEALS,
    batch_size: int | None = None,
) -> SnapshotSyncResult:
    """Fill stale association snapshots on a tenant's owning entities.

    Args:
        store: Document store
        tenant_id: Tenant to process
        entity_id: Restrict the run to one owning entity
        owner_collection: Collection of the owning entities
        batch_size: Override the configured snapshot batch limit

    Returns:
        SnapshotSyncResult with reference counts and per-owner errors

    Raises:
        TenantNotFoundError: If the tenant does not exist
        UnsupportedCollectionError: If ``owner_collection`` cannot own associations
    """
    await require_tenant(store, tenant_id)
    synchronizer = SnapshotSynchronizer(store, tenant_id, owner_collection)
    result = SnapshotSyncResult(success=True, tenant_id=tenant_id, owner_collection=owner_collection)

    if entity_id:
        owner = await store.get(paths.doc(tenant_id, owner_collection, entity_id))
        owners = [owner] if owner is not None else []
        if owner is None:
            result.errors.append(failure(entity_id, f"{owner_collection} record not found"))
    else:
        owners = await store.list(paths.collection(tenant_id, owner_collection))

    logger.info(f"Syncing snapshots on {len(owners)} {owner_collection} records for tenant {tenant_id}")
    synced_by_owner: dict[str, int] = {}
    failed: set[str] = set()

    writer = BatchWriter(store, limit=settings.batch.snapshot_limit if batch_size is None else batch_size)
    for owner in owners:
        result.scanned += 1
        try:
            parse(AssociatedEntity, owner)
        except EntityValidationError as e:
            logger.warning(f"Skipping invalid {owner_collection} record {owner.id}: {e.detail}")
            result.errors.append(failure(owner.id, e))
            continue

        associations, synced, skipped = await synchronizer.sync_owner(owner)
        result.skipped_missing += skipped
        if associations is None:
            continue
        synced_by_owner[owner.id] = synced
        try:
            await writer.update(owner.path, {"associations": associations, "updatedAt": now_iso()}, tag=owner.id)
        except BatchCommitError as e:
            _record_failures(e, failed, result)
    try:
        await writer.flush()
    except BatchCommitError as e:
        _record_failures(e, failed, result)

    for owner_id, synced in synced_by_owner.items():
        if owner_id in failed:
            continue
        result.owners_updated += 1
        result.references_synced += synced

    logger.info(
        f"Synced {result.references_synced} references on {result.owners_updated} {owner_collection} "
        f"records for tenant {tenant_id} ({synchronizer.reads} reads, {result.skipped_missing} missing targets)"
    )
    return result


def _record_failures(error: BatchCommitError, failed: set[str], result: SnapshotSyncResult) -> None:
    for owner_id in failed_tags(error):
        if owner_id not in failed:
            failed.add(owner_id)
            result.errors.append(failure(owner_id, error))
