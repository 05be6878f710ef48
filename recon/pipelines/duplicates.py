"""Duplicate detection and resolution for one entity collection.

Entities sharing an identity key form a duplicate group. The most complete
member survives (the oldest one on a near-tie); the rest are deleted unless
the run is a dry run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cmp_to_key
from typing import Any

from .. import paths
from ..batching import BatchWriter
from ..config import settings
from ..exceptions import BatchCommitError, EntityValidationError, UnsupportedCollectionError
from ..schemas import Candidate, Company, Contact, Deal, DocumentModel, parse
from ..store import Document, DocumentStore, now_iso
from .common import failed_tags, failure, parse_timestamp, require_tenant
from .normalization import IDENTITY_KEYS, identity_key
from .scoring import completeness_score

logger = logging.getLogger(__name__)

ENTITY_MODELS: dict[str, type[DocumentModel]] = {
    paths.COMPANIES: Company,
    paths.CONTACTS: Contact,
    paths.CANDIDATES: Candidate,
    paths.DEALS: Deal,
}


@dataclass
class ScoredEntity:
    """Group member with its ranking inputs."""
    doc: Document
    score: float

    @property
    def id(self) -> str:
        return self.doc.id

    @property
    def created(self):
        return parse_timestamp(self.doc.data.get("createdAt"))


@dataclass
class DuplicateGroup:
    """Transient grouping of records sharing an identity key."""
    key: str
    keep: ScoredEntity
    delete: list[ScoredEntity]

    @property
    def size(self) -> int:
        return 1 + len(self.delete)

    def summary(self) -> dict[str, Any]:
        data = self.keep.doc.data
        return {
            "key": self.key,
            "name": data.get("name") or data.get("companyName") or data.get("fullName") or self.key,
            "keepId": self.keep.id,
            "keepScore": round(self.keep.score, 4),
            "deleteIds": [m.id for m in self.delete],
            "deleteScores": [round(m.score, 4) for m in self.delete],
        }


@dataclass
class DuplicateResolution:
    """Result of a duplicate detection/resolution run."""
    success: bool
    tenant_id: str
    collection: str
    dry_run: bool
    total: int = 0
    duplicate_groups: int = 0
    to_delete: int = 0
    to_keep: int = 0
    deleted: int = 0
    keepers_updated: int = 0
    groups: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)


def rank_members(members: list[ScoredEntity], tie_margin: float | None = None) -> list[ScoredEntity]:
    """Order group members best-first.

    Higher completeness wins unless the scores are within ``tie_margin``,
    in which case the earlier ``createdAt`` wins. Records without a
    creation time count as the oldest.
    """
    margin = settings.duplicates.tie_margin if tie_margin is None else tie_margin

    def compare(a: ScoredEntity, b: ScoredEntity) -> int:
        if abs(a.score - b.score) > margin:
            return -1 if a.score > b.score else 1
        a_created, b_created = a.created, b.created
        if a_created != b_created:
            return -1 if a_created < b_created else 1
        return 0

    return sorted(members, key=cmp_to_key(compare))


def find_duplicate_groups(
    collection: str,
    documents: list[Document],
    *,
    tie_margin: float | None = None,
) -> list[DuplicateGroup]:
    """Group ``documents`` by identity key and rank each group of two or more.

    Records whose identity key is empty never join a group.
    """
    by_key: dict[str, list[Document]] = {}
    for doc in documents:
        key = identity_key(collection, doc.data)
        if not key:
            logger.debug(f"Skipping {doc.id}: no identity key")
            continue
        by_key.setdefault(key, []).append(doc)

    groups: list[DuplicateGroup] = []
    for key, docs in by_key.items():
        if len(docs) < 2:
            continue
        scored = [ScoredEntity(d, completeness_score(d.data, collection=collection)) for d in docs]
        ranked = rank_members(scored, tie_margin)
        groups.append(DuplicateGroup(key=key, keep=ranked[0], delete=ranked[1:]))
    return groups


async def _load_entities(
    store: DocumentStore,
    tenant_id: str,
    collection: str,
    result: DuplicateResolution,
) -> list[Document]:
    documents = await store.list(paths.collection(tenant_id, collection))
    model = ENTITY_MODELS[collection]
    valid: list[Document] = []
    for doc in documents:
        try:
            parse(model, doc)
        except EntityValidationError as e:
            logger.warning(f"Skipping invalid {collection} record {doc.id}: {e.detail}")
            result.errors.append(failure(doc.id, e))
            continue
        valid.append(doc)
    return valid


async def resolve_duplicates(
    store: DocumentStore,
    tenant_id: str,
    collection: str = paths.COMPANIES,
    *,
    dry_run: bool = True,
    update_keeper: bool = False,
    batch_size: int | None = None,
) -> DuplicateResolution:
    """Detect duplicate records in a collection and optionally delete them.

    Args:
        store: Document store
        tenant_id: Tenant to process
        collection: One of the collections with an identity key definition
        dry_run: Report the grouping without mutating anything
        update_keeper: Record merged duplicate ids and count on each keeper
        batch_size: Override the configured batch limit

    Returns:
        DuplicateResolution with group summaries, counts and per-group errors

    Raises:
        TenantNotFoundError: If the tenant does not exist
        UnsupportedCollectionError: If the collection has no identity key definition
    """
    if collection not in IDENTITY_KEYS:
        raise UnsupportedCollectionError("Duplicate resolution", collection)
    await require_tenant(store, tenant_id)

    logger.info(f"Resolving duplicates in {collection} for tenant {tenant_id} (dry_run={dry_run})")
    result = DuplicateResolution(success=True, tenant_id=tenant_id, collection=collection, dry_run=dry_run)

    documents = await _load_entities(store, tenant_id, collection, result)
    groups = find_duplicate_groups(collection, documents)

    result.total = len(documents)
    result.duplicate_groups = len(groups)
    result.to_delete = sum(len(g.delete) for g in groups)
    result.to_keep = result.total - result.to_delete
    result.groups = [g.summary() for g in groups]
    logger.info(f"Found {len(groups)} duplicate groups covering {result.to_delete} removable records")

    if dry_run or not groups:
        return result

    failed: set[str] = set()
    writer = BatchWriter(store, limit=batch_size)
    for group in groups:
        try:
            for member in group.delete:
                await writer.delete(member.doc.path, tag=group.key)
            if update_keeper:
                keeper = group.keep.doc.data
                merged_ids = list(keeper.get("mergedDuplicateIds") or [])
                merged_ids.extend(m.id for m in group.delete)
                await writer.update(
                    group.keep.doc.path,
                    {
                        "mergedDuplicateCount": int(keeper.get("mergedDuplicateCount") or 0) + len(group.delete),
                        "mergedDuplicateIds": merged_ids,
                        "updatedAt": now_iso(),
                    },
                    tag=group.key,
                )
        except BatchCommitError as e:
            _record_failed_groups(e, groups, failed, result)
    try:
        await writer.flush()
    except BatchCommitError as e:
        _record_failed_groups(e, groups, failed, result)

    for group in groups:
        if group.key in failed:
            continue
        result.deleted += len(group.delete)
        if update_keeper:
            result.keepers_updated += 1

    logger.info(
        f"Deleted {result.deleted} duplicate {collection} records for tenant {tenant_id} "
        f"({len(failed)} groups failed)"
    )
    return result


def _record_failed_groups(
    error: BatchCommitError,
    groups: list[DuplicateGroup],
    failed: set[str],
    result: DuplicateResolution,
) -> None:
    keep_ids = {g.key: g.keep.id for g in groups}
    for key in failed_tags(error):
        if key in failed:
            continue
        failed.add(key)
        logger.error(f"Duplicate group '{key}' failed: {error}")
        result.errors.append({"entityId": keep_ids.get(key), "group": key, "error": str(error)})
