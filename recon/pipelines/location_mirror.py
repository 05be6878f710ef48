"""Location state mirror: derived ``company_locations`` projection.

Each company location gets a mirror record at ``{companyId}_{locationId}``
holding the normalized U.S. state. The mirror is a pure function of the
location document as of the last processed change event: when no state
resolves, the mirror record must not exist.
"""
from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Mapping

from config.us_states import STATE_NAMES_BY_CODE, US_STATES

from .. import paths
from ..batching import BatchWriter
from ..config import settings
from ..exceptions import BatchCommitError, EntityValidationError
from ..schemas import Location, LocationMirrorRecord, parse
from ..store import ChangeEvent, ChangeKind, DocumentStore, Subscription, WriteKind, get_field
from .common import failed_tags, failure, require_tenant

logger = logging.getLogger(__name__)

# ", Illinois 60639" / ", New York 10001-1234"
_NAME_ZIP_RE = re.compile(r",\s*([A-Za-z][A-Za-z .]*?)\s+\d{5}(?:-\d{4})?\b")
# ", IL" anywhere after a comma
_CODE_RE = re.compile(r",\s*([A-Za-z]{2})\b")


@dataclass(frozen=True)
class StateFields:
    """Normalized state of a location."""
    state_code: str | None
    state_name: str | None
    raw: Any = None


NO_STATE = StateFields(None, None)


def _title(name: str) -> str:
    return " ".join(word.capitalize() for word in name.lower().split())


def normalize_state(value: Any) -> StateFields:
    """Resolve a two-letter code or full state name.

    Examples:
        "IL" -> ("IL", "Illinois"); "illinois" -> ("IL", "Illinois");
        "Zanzibar" -> (None, None)
    """
    if value is None or not isinstance(value, str):
        return NO_STATE
    text = " ".join(value.split()).upper()
    if not text:
        return NO_STATE

    if len(text) == 2 and text in STATE_NAMES_BY_CODE:
        return StateFields(text, _title(STATE_NAMES_BY_CODE[text]))

    code = US_STATES.get(text)
    if code:
        return StateFields(code, _title(text))
    return NO_STATE


def state_from_address_text(text: Any) -> StateFields:
    """Pull the state out of a free-text address (``..., IL 60639``)."""
    if not text or not isinstance(text, str):
        return NO_STATE

    for match in _NAME_ZIP_RE.finditer(text):
        found = normalize_state(match.group(1))
        if found.state_code:
            return found

    for match in _CODE_RE.finditer(text):
        found = normalize_state(match.group(1))
        if found.state_code:
            return found
    return NO_STATE


def compute_state_fields(location: Mapping[str, Any] | None) -> StateFields:
    """Derive ``stateCode``/``stateName`` from a location document.

    Order: explicit state-like fields (``state``, ``stateCode``,
    ``address.state``, ``address.stateCode``), then the first free-text
    address field (``addressText``, ``address``, ``streetAddress``).
    """
    if not location:
        return NO_STATE

    raw = None
    for key in ("state", "stateCode", "address.state", "address.stateCode"):
        value = get_field(location, key)
        if value not in (None, ""):
            raw = value
            break

    resolved = normalize_state(raw)
    if not resolved.state_code:
        address = location.get("address")
        text = (
            location.get("addressText")
            or (address if isinstance(address, str) else None)
            or location.get("streetAddress")
        )
        resolved = state_from_address_text(text)

    return StateFields(resolved.state_code, resolved.state_name, raw)


def mirror_payload(company_id: str, fields: StateFields) -> dict[str, Any]:
    record = LocationMirrorRecord(
        company_id=company_id,
        state=fields.raw,
        state_code=fields.state_code,
        state_name=fields.state_name,
    )
    return record.model_dump(by_alias=True)


async def sync_location_mirror(
    store: DocumentStore,
    tenant_id: str,
    company_id: str,
    location_id: str,
    location: Mapping[str, Any] | None,
) -> str:
    """Make the mirror record match ``location``'s current state.

    Returns:
        ``"upserted"`` or ``"deleted"``
    """
    path = paths.mirror_doc(tenant_id, company_id, location_id)
    fields = compute_state_fields(location)
    async with BatchWriter(store, limit=1) as writer:
        if fields.state_code:
            await writer.set(path, mirror_payload(company_id, fields), merge=True, tag=location_id)
            action = "upserted"
        else:
            await writer.delete(path, tag=location_id)
            action = "deleted"
    logger.debug(f"Mirror {action} for {company_id}/{location_id} (state={fields.state_code})")
    return action


async def handle_location_event(store: DocumentStore, event: ChangeEvent) -> str:
    """Change-event handler for ``crm_companies/{companyId}/locations/{locationId}``.

    Created/updated events recompute the mirror from the event's after-image;
    deleted events remove the mirror unconditionally.
    """
    tenant_id = event.params["tenantId"]
    company_id = event.params["companyId"]
    location_id = event.params["locationId"]
    if event.kind == ChangeKind.DELETED:
        location = None
    else:
        location = event.after
    return await sync_location_mirror(store, tenant_id, company_id, location_id, location)


def register_location_mirror(store: DocumentStore) -> Subscription:
    """Subscribe the mirror handler to company location changes on ``store``.

    Returns:
        The subscription, for ``store.unsubscribe`` on shutdown
    """

    async def on_company_location_changed(event: ChangeEvent) -> None:
        await handle_location_event(store, event)

    subscription = store.subscribe(paths.COMPANY_LOCATION_PATTERN, on_company_location_changed)
    logger.info("Location mirror triggers registered")
    return subscription


@dataclass
class MirrorRebuildResult:
    """Result of a mirror rebuild."""
    success: bool
    tenant_id: str
    count: int = 0
    companies_scanned: int = 0
    truncated: int = 0
    removed: int = 0
    errors: list[dict] = field(default_factory=list)


async def rebuild_location_mirror(
    store: DocumentStore,
    tenant_id: str,
    *,
    company_id: str | None = None,
    truncate: bool = False,
    batch_size: int | None = None,
) -> MirrorRebuildResult:
    """Recompute mirror records for every location of a tenant (or one company).

    Locations whose state no longer resolves lose their existing mirror
    record, so the rebuild also repairs missed trigger deliveries.

    Args:
        store: Document store
        tenant_id: Tenant to rebuild
        company_id: Restrict to a single company
        truncate: Delete existing mirror records first (only the company's
            records when ``company_id`` is given)
        batch_size: Override the configured batch limit

    Returns:
        MirrorRebuildResult with the number of mirror records written

    Raises:
        TenantNotFoundError: If the tenant does not exist
    """
    await require_tenant(store, tenant_id)

    result = MirrorRebuildResult(success=True, tenant_id=tenant_id)
    mirror_collection = paths.collection(tenant_id, paths.LOCATION_MIRROR)
    writer = BatchWriter(store, limit=batch_size)

    async def write(op: Awaitable[None]) -> None:
        try:
            await op
        except BatchCommitError as e:
            result.errors.extend(failure(tag, e) for tag in failed_tags(e))

    where = {"companyId": company_id} if company_id else None
    existing = {record.path: record.id for record in await store.list(mirror_collection, where)}
    if truncate:
        for path, record_id in existing.items():
            await write(writer.delete(path, tag=record_id))
        # Deletes must land before the upserts re-create records.
        await write(writer.flush())
        result.truncated = writer.committed(kind=WriteKind.DELETE)
        existing = {}

    if company_id:
        company = await store.get(paths.doc(tenant_id, paths.COMPANIES, company_id))
        companies = [company] if company is not None else []
    else:
        companies = await store.list(paths.collection(tenant_id, paths.COMPANIES))

    for company in companies:
        result.companies_scanned += 1
        for location in await store.list(paths.company_locations(tenant_id, company.id)):
            try:
                parse(Location, location)
            except EntityValidationError as e:
                logger.warning(f"Skipping invalid location {location.path}: {e.detail}")
                result.errors.append(failure(location.id, e))
                continue
            fields = compute_state_fields(location.data)
            mirror_path = paths.mirror_doc(tenant_id, company.id, location.id)
            if not fields.state_code:
                if mirror_path in existing:
                    await write(writer.delete(mirror_path, tag=location.id))
                continue
            await write(writer.set(
                mirror_path,
                mirror_payload(company.id, fields),
                merge=True,
                tag=location.id,
            ))
    await write(writer.flush())

    result.removed = writer.committed(kind=WriteKind.DELETE) - result.truncated
    result.count = writer.committed(kind=WriteKind.SET)

    logger.info(
        f"Rebuilt location mirror for tenant {tenant_id}: {result.count} records "
        f"from {result.companies_scanned} companies "
        f"(truncated {result.truncated}, removed {result.removed})"
    )
    return result


@dataclass
class MirrorStats:
    """Mirror diagnostics."""
    success: bool
    tenant_id: str
    total: int
    counts: dict[str, int]
    samples: list[dict] | None = None


async def location_mirror_stats(
    store: DocumentStore,
    tenant_id: str,
    *,
    state: str | None = None,
    sample_limit: int | None = None,
) -> MirrorStats:
    """Count mirror records per ``stateCode`` and sample those of one state.

    Raises:
        TenantNotFoundError: If the tenant does not exist
    """
    await require_tenant(store, tenant_id)

    limit = settings.mirror.sample_limit if sample_limit is None else sample_limit
    records = await store.list(paths.collection(tenant_id, paths.LOCATION_MIRROR))
    counts: Counter[str] = Counter()
    samples: list[dict] = []
    for record in records:
        code = record.data.get("stateCode") or "UNKNOWN"
        counts[code] += 1
        if state and code == state and len(samples) < limit:
            samples.append({"id": record.id, **record.data})

    return MirrorStats(
        success=True,
        tenant_id=tenant_id,
        total=len(records),
        counts=dict(counts),
        samples=samples if state else None,
    )
