"""Association graph linker: remap external foreign keys to canonical ids.

Imported CRM records carry the source system's identifiers
(``externalCompanyId``, ``externalContactIds``). The linker resolves them
against the ``externalId`` of companies and contacts and writes the
canonical ``companyId`` / ``contactIds`` foreign keys.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .. import paths
from ..batching import BatchWriter
from ..exceptions import BatchCommitError, EntityValidationError, ReconciliationError
from ..schemas import Company, Contact, Deal, DocumentModel, parse
from ..store import Document, DocumentStore, now_iso
from .common import failed_tags, failure, require_tenant

logger = logging.getLogger(__name__)


@dataclass
class TenantLinkSummary:
    """Per-tenant linking outcome."""
    tenant_id: str
    status: str = "completed"
    companies_found: int = 0
    contacts_linked: int = 0
    deals_linked: int = 0
    deal_contact_links: int = 0
    processed: int = 0
    errors: int = 0
    error_details: list[dict] = field(default_factory=list)
    message: str | None = None

    @property
    def linked(self) -> int:
        return self.contacts_linked + self.deals_linked

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "status": self.status,
            "companiesFound": self.companies_found,
            "contactsLinked": self.contacts_linked,
            "dealsLinked": self.deals_linked,
            "dealContactLinks": self.deal_contact_links,
            "linked": self.linked,
            "processed": self.processed,
            "errors": self.errors,
            "errorDetails": self.error_details,
            "message": self.message,
        }


@dataclass
class LinkResult:
    """Aggregate over all processed tenants."""
    success: bool
    tenants: list[TenantLinkSummary] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return sum(t.processed for t in self.tenants)

    @property
    def total_linked(self) -> int:
        return sum(t.linked for t in self.tenants)

    @property
    def total_errors(self) -> int:
        return sum(t.errors for t in self.tenants)

    @property
    def success_rate(self) -> float:
        if not self.total_processed:
            return 0.0
        return round(self.total_linked / self.total_processed * 100, 2)


async def _load_valid(
    store: DocumentStore,
    tenant_id: str,
    collection: str,
    model: type[DocumentModel],
    summary: TenantLinkSummary,
) -> list[tuple[Document, Any]]:
    loaded = []
    for doc in await store.list(paths.collection(tenant_id, collection)):
        try:
            loaded.append((doc, parse(model, doc)))
        except EntityValidationError as e:
            logger.warning(f"Skipping invalid {collection} record {doc.id}: {e.detail}")
            summary.errors += 1
            summary.error_details.append(failure(doc.id, e))
    return loaded


def _external_map(records: list[tuple[Document, Any]]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for doc, entity in records:
        if entity.external_id:
            mapping[entity.external_id] = doc.id
    return mapping


async def _flush(writer: BatchWriter, summary: TenantLinkSummary, counted: dict[str, str]) -> None:
    """Commit pending updates; lost updates become per-entity errors."""
    try:
        await writer.flush()
    except BatchCommitError as e:
        _record_lost(e, summary, counted)


def _record_lost(error: BatchCommitError, summary: TenantLinkSummary, counted: dict[str, str]) -> None:
    for tag in failed_tags(error):
        counter = counted.pop(tag, None)
        if counter:
            setattr(summary, counter, getattr(summary, counter) - 1)
        summary.errors += 1
        summary.error_details.append(failure(tag.split(":", 1)[-1], error))


async def link_tenant(store: DocumentStore, tenant_id: str, *, batch_size: int | None = None) -> TenantLinkSummary:
    """Link one tenant's contacts and deals to canonical company/contact ids.

    Raises:
        TenantNotFoundError: If the tenant does not exist
    """
    await require_tenant(store, tenant_id)
    summary = TenantLinkSummary(tenant_id=tenant_id)

    companies = await _load_valid(store, tenant_id, paths.COMPANIES, Company, summary)
    if not companies:
        summary.status = "no_companies"
        summary.message = "No companies found"
        logger.info(f"No companies found for tenant {tenant_id}")
        return summary

    company_map = _external_map(companies)
    summary.companies_found = len(company_map)
    logger.info(f"Tenant {tenant_id}: {len(company_map)} companies with external ids")

    contacts = await _load_valid(store, tenant_id, paths.CONTACTS, Contact, summary)
    deals = await _load_valid(store, tenant_id, paths.DEALS, Deal, summary)
    # tag -> summary counter incremented for it, so a lost batch can be undone
    counted: dict[str, str] = {}
    writer = BatchWriter(store, limit=batch_size)

    async def queue(path: str, data: dict[str, Any], tag: str, counter: str) -> None:
        setattr(summary, counter, getattr(summary, counter) + 1)
        counted[tag] = counter
        try:
            await writer.update(path, data, tag=tag)
        except BatchCommitError as e:
            _record_lost(e, summary, counted)

    for collection, records, counter in (
        (paths.CONTACTS, contacts, "contacts_linked"),
        (paths.DEALS, deals, "deals_linked"),
    ):
        for doc, entity in records:
            if collection == paths.CONTACTS:
                summary.processed += 1
            external = entity.external_company_id
            if not external:
                continue
            target = company_map.get(external)
            if target is None:
                logger.warning(f"No company with external id {external} for {collection} record {doc.id}")
                summary.errors += 1
                summary.error_details.append(failure(doc.id, f"Unresolved externalCompanyId {external}"))
                continue
            if entity.company_id == target:
                logger.debug(f"{collection} record {doc.id} already linked to {target}")
                continue
            await queue(doc.path, {"companyId": target, "updatedAt": now_iso()}, f"company:{doc.id}", counter)
        await _flush(writer, summary, counted)

    if deals and contacts:
        contact_map = _external_map(contacts)
        for doc, deal in deals:
            external_ids = deal.external_contact_ids
            if not external_ids:
                continue
            resolved = []
            for external in external_ids:
                contact_id = contact_map.get(external)
                if contact_id is None:
                    summary.errors += 1
                    summary.error_details.append(failure(doc.id, f"Unresolved externalContactId {external}"))
                    continue
                resolved.append(contact_id)
            if not resolved or resolved == (deal.contact_ids or []):
                continue
            await queue(doc.path, {"contactIds": resolved, "updatedAt": now_iso()}, f"contacts:{doc.id}", "deal_contact_links")
        await _flush(writer, summary, counted)

    logger.info(
        f"Tenant {tenant_id} linked: {summary.contacts_linked} contacts, {summary.deals_linked} deals, "
        f"{summary.deal_contact_links} deal-contact links, {summary.errors} errors"
    )
    return summary


async def link_entities(
    store: DocumentStore,
    tenant_id: str | None = None,
    *,
    batch_size: int | None = None,
) -> LinkResult:
    """Link one tenant, or every tenant when ``tenant_id`` is omitted.

    A specific tenant that cannot be resolved aborts the run. When iterating
    all tenants, a failing tenant is reported with ``status="error"`` and
    the remaining tenants are still processed.

    Raises:
        TenantNotFoundError: If ``tenant_id`` is given and does not exist
    """
    if tenant_id:
        return LinkResult(success=True, tenants=[await link_tenant(store, tenant_id, batch_size=batch_size)])

    result = LinkResult(success=True)
    tenants = await store.list(paths.TENANTS)
    logger.info(f"Linking CRM entities across {len(tenants)} tenants")
    for tenant in tenants:
        try:
            summary = await link_tenant(store, tenant.id, batch_size=batch_size)
        except ReconciliationError as e:
            logger.error(f"Linking failed for tenant {tenant.id}: {e}")
            summary = TenantLinkSummary(tenant_id=tenant.id, status="error", message=str(e))
        result.tenants.append(summary)

    logger.info(
        f"Linking complete: {result.total_linked} linked, {result.total_errors} errors "
        f"across {len(result.tenants)} tenants"
    )
    return result
