"""Explicit association materializer.

Turns implicit foreign-key lists on owning entities (a deal's
``salespeopleIds``, ``contactIds``) into first-class edge records in
``crm_associations``. Edges are append-only: unless ``skip_existing`` is
requested, every run inserts a fresh edge per id, so repeated runs
accumulate duplicate edges.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .. import paths
from ..batching import BatchWriter
from ..exceptions import BatchCommitError, EntityValidationError
from ..schemas import AssociationEdge, Deal, Salesperson, parse
from ..store import Document, DocumentStore, now_iso
from .common import failed_tags, failure, require_tenant
from .normalization import normalize_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkRule:
    """One implicit foreign-key list to materialize as edges."""
    source_collection: str
    source_type: str
    field: str
    target_type: str
    association_type: str
    strength: str = "medium"
    role: str | None = None

    def metadata(self, data: Mapping[str, Any]) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "source": f"{self.field}_field",
            f"{self.source_type}Name": data.get("name"),
        }
        if self.target_type == "salesperson":
            meta["salesOwnerName"] = data.get("salesOwnerName") or "unknown"
        return meta


DEFAULT_RULES: tuple[LinkRule, ...] = (
    LinkRule(paths.DEALS, "deal", "salespeopleIds", "salesperson", "assignment", strength="strong"),
    LinkRule(paths.DEALS, "deal", "contactIds", "contact", "involvement", strength="medium"),
)


@dataclass
class AssignmentResult:
    """Result of resolving deal owner names to salespeople."""
    deals_processed: int = 0
    assigned: int = 0
    unmatched: list[str] = field(default_factory=list)


@dataclass
class MaterializeResult:
    """Result of a materialization run."""
    success: bool
    tenant_id: str
    sources_processed: int = 0
    salespeople_assigned: int = 0
    edges_created: int = 0
    edges_skipped: int = 0
    errors: list[dict] = field(default_factory=list)


async def salesperson_directory(store: DocumentStore, tenant_id: str) -> dict[str, str]:
    """Normalized salesperson name -> user id for a tenant's users."""
    directory: dict[str, str] = {}
    for doc in await store.list(paths.USERS, {"tenantId": tenant_id}):
        try:
            person = parse(Salesperson, doc)
        except EntityValidationError as e:
            logger.warning(f"Skipping invalid user {doc.id}: {e.detail}")
            continue
        for name in (person.display_name, person.resolved_name):
            key = normalize_name(name)
            if key:
                directory.setdefault(key, doc.id)
    return directory


async def assign_salespeople(
    store: DocumentStore,
    tenant_id: str,
    *,
    mapping: Mapping[str, str] | None = None,
    batch_size: int | None = None,
    errors: list[dict] | None = None,
) -> AssignmentResult:
    """Resolve each deal's ``salesOwnerName`` to a salesperson id.

    The id is unioned into ``salespeopleIds`` and set as
    ``assignedSalespersonId``. Names resolve through ``mapping`` when given,
    else through the tenant's users by display name.
    """
    if mapping is not None:
        directory = {normalize_name(name): uid for name, uid in mapping.items()}
    else:
        directory = await salesperson_directory(store, tenant_id)

    result = AssignmentResult()
    writer = BatchWriter(store, limit=batch_size)
    for doc in await store.list(paths.collection(tenant_id, paths.DEALS)):
        try:
            deal = parse(Deal, doc)
        except EntityValidationError as e:
            if errors is not None:
                errors.append(failure(doc.id, e))
            continue
        if not deal.sales_owner_name:
            continue
        result.deals_processed += 1

        person_id = directory.get(normalize_name(deal.sales_owner_name))
        if person_id is None:
            logger.debug(f"No salesperson named '{deal.sales_owner_name}' for deal {doc.id}")
            result.unmatched.append(doc.id)
            continue

        current = list(deal.salespeople_ids or [])
        if person_id in current and deal.assigned_salesperson_id == person_id:
            continue
        if person_id not in current:
            current.append(person_id)
        result.assigned += 1
        try:
            await writer.update(
                doc.path,
                {"salespeopleIds": current, "assignedSalespersonId": person_id, "updatedAt": now_iso()},
                tag=doc.id,
            )
        except BatchCommitError as e:
            result.assigned -= _lost(e, errors)
    try:
        await writer.flush()
    except BatchCommitError as e:
        result.assigned -= _lost(e, errors)

    logger.info(f"Assigned salespeople on {result.assigned} deals for tenant {tenant_id}")
    return result


def _edge_key(edge: Mapping[str, Any]) -> tuple:
    return (
        edge.get("sourceEntityType"),
        edge.get("sourceEntityId"),
        edge.get("targetEntityType"),
        edge.get("targetEntityId"),
        edge.get("associationType"),
    )


def build_edges(rule: LinkRule, source: Document) -> list[AssociationEdge]:
    """Edges implied by ``rule`` on one owning entity."""
    ids = source.data.get(rule.field)
    if not isinstance(ids, list):
        return []
    timestamp = now_iso()
    edges = []
    for target_id in dict.fromkeys(str(i) for i in ids if i not in (None, "")):
        edges.append(AssociationEdge(
            source_entity_type=rule.source_type,
            source_entity_id=source.id,
            target_entity_type=rule.target_type,
            target_entity_id=target_id,
            association_type=rule.association_type,
            role=rule.role,
            strength=rule.strength,
            metadata=rule.metadata(source.data),
            created_at=timestamp,
            updated_at=timestamp,
        ))
    return edges


async def materialize_associations(
    store: DocumentStore,
    tenant_id: str,
    *,
    rules: Sequence[LinkRule] = DEFAULT_RULES,
    assign_owners: bool = True,
    skip_existing: bool = False,
    batch_size: int | None = None,
) -> MaterializeResult:
    """Insert association edges for every implicit foreign key of a tenant.

    Args:
        store: Document store
        tenant_id: Tenant to process
        rules: Implicit-link rules to apply
        assign_owners: Resolve ``salesOwnerName`` into ``salespeopleIds`` first
        skip_existing: Do not insert an edge equivalent to one already stored
        batch_size: Override the configured batch limit

    Returns:
        MaterializeResult with edge counts and per-entity errors

    Raises:
        TenantNotFoundError: If the tenant does not exist
    """
    await require_tenant(store, tenant_id)
    result = MaterializeResult(success=True, tenant_id=tenant_id)

    if assign_owners:
        assignment = await assign_salespeople(store, tenant_id, batch_size=batch_size, errors=result.errors)
        result.salespeople_assigned = assignment.assigned

    edges_collection = paths.collection(tenant_id, paths.ASSOCIATIONS)
    existing: set[tuple] = set()
    if skip_existing:
        existing = {_edge_key(doc.data) for doc in await store.list(edges_collection)}

    writer = BatchWriter(store, limit=batch_size)
    sources: dict[str, list[Document]] = {}
    for rule in rules:
        if rule.source_collection not in sources:
            sources[rule.source_collection] = await store.list(paths.collection(tenant_id, rule.source_collection))
        for source in sources[rule.source_collection]:
            for edge in build_edges(rule, source):
                data = edge.model_dump(by_alias=True, exclude_none=True)
                key = _edge_key(data)
                if skip_existing and key in existing:
                    result.edges_skipped += 1
                    continue
                existing.add(key)
                try:
                    await writer.set(paths.doc(tenant_id, paths.ASSOCIATIONS, store.new_id()), data, tag=source.id)
                except BatchCommitError as e:
                    _drop_lost(e, result)
    try:
        await writer.flush()
    except BatchCommitError as e:
        _drop_lost(e, result)

    result.sources_processed = sum(len(docs) for docs in sources.values())
    result.edges_created = writer.ops_committed
    logger.info(
        f"Materialized {result.edges_created} association edges for tenant {tenant_id} "
        f"({result.edges_skipped} already present)"
    )
    return result


def _lost(error: BatchCommitError, errors: list[dict] | None) -> int:
    tags = failed_tags(error)
    if errors is not None:
        errors.extend(failure(tag, error) for tag in tags)
    return len(tags)


def _drop_lost(error: BatchCommitError, result: MaterializeResult) -> None:
    for source_id in failed_tags(error):
        result.errors.append(failure(source_id, error))
