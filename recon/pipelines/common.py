"""Helpers shared by the reconciliation pipelines."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .. import paths
from ..exceptions import BatchCommitError, TenantNotFoundError
from ..store import Document, DocumentStore

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


async def require_tenant(store: DocumentStore, tenant_id: str) -> Document:
    """Load the tenant document or abort the run.

    Raises:
        TenantNotFoundError: If ``tenants/{tenant_id}`` does not exist
        StoreError: If the store cannot be read
    """
    if not tenant_id:
        raise TenantNotFoundError(tenant_id)
    tenant = await store.get(paths.tenant_doc(tenant_id))
    if tenant is None:
        raise TenantNotFoundError(tenant_id)
    return tenant


def parse_timestamp(value: Any) -> datetime:
    """Best-effort conversion of a stored timestamp to an aware datetime.

    Accepts datetimes, ISO-8601 strings, epoch numbers (seconds, or
    milliseconds when large) and ``{"seconds": ...}`` style maps. Anything
    missing or unparseable sorts as the Unix epoch.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool) or value is None:
        return EPOCH
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return EPOCH
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return EPOCH
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)):
            return parse_timestamp(seconds)
    return EPOCH


def failure(entity_id: str | None, error: Exception | str) -> dict[str, Any]:
    """Per-entity error entry as reported in operation results."""
    return {"entityId": entity_id, "error": str(error)}


def failed_tags(error: BatchCommitError) -> list[str]:
    """Entity tags carried by a failed batch, in write order."""
    return list(dict.fromkeys(op.tag for op in error.ops if op.tag is not None))
