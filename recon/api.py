"""FastAPI app exposing the reconciliation operations to operators.

Every operation returns ``{"success": true, ...counts, "errors": [...]}``.
Fatal, run-aborting conditions are turned into ``{"success": false, ...}``
error responses by the exception handlers below.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ai.duplicates import check_candidate_duplicates

from . import paths
from .config import StoreBackend, settings
from .exceptions import (
    EntityNotFoundError,
    EntityValidationError,
    ReconciliationError,
    StoreError,
    TenantNotFoundError,
    UnsupportedCollectionError,
)
from .logging_config import setup_logging
from .pipelines.duplicates import resolve_duplicates
from .pipelines.linking import link_entities
from .pipelines.location_mirror import (
    location_mirror_stats,
    rebuild_location_mirror,
    register_location_mirror,
)
from .pipelines.materialize import materialize_associations
from .pipelines.snapshots import sync_snapshots
from .store import DocumentStore, InMemoryDocumentStore

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    """Request/response body with camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Pydantic request/response models
class HealthResponse(CamelModel):
    """Health check response."""
    status: str
    version: str
    store: str


class ErrorResponse(CamelModel):
    """Error response."""
    success: bool = False
    error: str
    detail: str | None = None


class OperationResponse(CamelModel):
    """Common envelope of operator operations."""
    success: bool = True
    errors: list[dict[str, Any]] = Field(default_factory=list)


class RebuildMirrorRequest(CamelModel):
    company_id: str | None = None
    truncate: bool = False


class RebuildMirrorResponse(OperationResponse):
    tenant_id: str
    count: int
    companies_scanned: int
    truncated: int
    removed: int


class MirrorStatsResponse(OperationResponse):
    tenant_id: str
    total: int
    counts: dict[str, int]
    samples: list[dict[str, Any]] | None = None


class LinkEntitiesRequest(CamelModel):
    tenant_id: str | None = None


class LinkEntitiesResponse(OperationResponse):
    total_processed: int
    total_linked: int
    total_errors: int
    success_rate: float
    results: list[dict[str, Any]]


class ResolveDuplicatesRequest(CamelModel):
    collection: str = paths.COMPANIES
    dry_run: bool = True
    update_keeper: bool = False


class ResolveDuplicatesResponse(OperationResponse):
    tenant_id: str
    collection: str
    dry_run: bool
    total: int
    duplicate_groups: int
    to_delete: int
    to_keep: int
    deleted: int
    groups: list[dict[str, Any]]


class SyncSnapshotsRequest(CamelModel):
    entity_id: str | None = None
    owner_collection: str = paths.DEALS


class SyncSnapshotsResponse(OperationResponse):
    tenant_id: str
    owner_collection: str
    scanned: int
    owners_updated: int
    references_synced: int
    skipped_missing: int


class MaterializeRequest(CamelModel):
    assign_owners: bool = True
    skip_existing: bool = False


class MaterializeResponse(OperationResponse):
    tenant_id: str
    sources_processed: int
    salespeople_assigned: int
    edges_created: int
    edges_skipped: int


class DuplicateCheckRequest(CamelModel):
    updated_by: str | None = None


class DuplicateCheckResponse(OperationResponse):
    tenant_id: str
    candidate_id: str
    duplicate_results: dict[str, Any]


def create_store() -> DocumentStore:
    """Document store selected by ``STORE_BACKEND``."""
    if settings.store.backend == StoreBackend.SQL:
        from .sql_store import SqlDocumentStore

        return SqlDocumentStore()
    return InMemoryDocumentStore()


def get_store(request: Request) -> DocumentStore:
    """Dependency: the process-wide document store."""
    return request.app.state.store


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


def create_app(store: DocumentStore | None = None) -> FastAPI:
    """Build the application around ``store`` (created from settings if omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        # Startup
        setup_logging()
        mirror_subscription = register_location_mirror(app.state.store)
        logger.info(f"Application starting up with {type(app.state.store).__name__}")

        yield

        # Shutdown
        app.state.store.unsubscribe(mirror_subscription)
        logger.info("Application shutting down")

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="Association consistency and reconciliation operations for CRM tenants",
        lifespan=lifespan,
    )
    app.state.store = store or create_store()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(TenantNotFoundError)
    async def tenant_not_found_handler(request, exc: TenantNotFoundError):
        """Handle unresolvable tenants."""
        logger.warning(f"Tenant not found: {exc.tenant_id}")
        return _error(status.HTTP_404_NOT_FOUND, "tenant_not_found", exc)

    @app.exception_handler(EntityNotFoundError)
    async def entity_not_found_handler(request, exc: EntityNotFoundError):
        logger.warning(str(exc))
        return _error(status.HTTP_404_NOT_FOUND, "entity_not_found", exc)

    @app.exception_handler(EntityValidationError)
    async def entity_validation_handler(request, exc: EntityValidationError):
        logger.warning(str(exc))
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_entity", exc)

    @app.exception_handler(StoreError)
    async def store_error_handler(request, exc: StoreError):
        """Handle document store failures."""
        logger.error(f"Store error: {exc}")
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "store_error", exc)

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request, exc: ReconciliationError):
        logger.error(f"Reconciliation error: {exc}", exc_info=True)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "reconciliation_error", exc)

    @app.exception_handler(UnsupportedCollectionError)
    async def unsupported_collection_handler(request, exc: UnsupportedCollectionError):
        """Handle operations requested for a collection they cannot process."""
        logger.warning(str(exc))
        return _error(status.HTTP_400_BAD_REQUEST, "invalid_request", exc)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/health", response_model=HealthResponse)
    async def health(store: DocumentStore = Depends(get_store)) -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="ok", version=settings.version, store=type(store).__name__)

    @app.post(
        "/tenants/{tenant_id}/location-mirror/rebuild",
        response_model=RebuildMirrorResponse,
    )
    async def rebuild_mirror(
        tenant_id: str,
        body: RebuildMirrorRequest | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> RebuildMirrorResponse:
        """Recompute location mirror records for a tenant or one company."""
        body = body or RebuildMirrorRequest()
        result = await rebuild_location_mirror(
            store, tenant_id, company_id=body.company_id, truncate=body.truncate
        )
        return RebuildMirrorResponse(
            tenant_id=result.tenant_id,
            count=result.count,
            companies_scanned=result.companies_scanned,
            truncated=result.truncated,
            removed=result.removed,
            errors=result.errors,
        )

    @app.get(
        "/tenants/{tenant_id}/location-mirror/stats",
        response_model=MirrorStatsResponse,
    )
    async def mirror_stats(
        tenant_id: str,
        state: str | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> MirrorStatsResponse:
        """Mirror record counts per state code, with samples for ``state``."""
        stats = await location_mirror_stats(store, tenant_id, state=state)
        return MirrorStatsResponse(
            tenant_id=stats.tenant_id,
            total=stats.total,
            counts=stats.counts,
            samples=stats.samples,
        )

    @app.post("/link-entities", response_model=LinkEntitiesResponse)
    async def link(
        body: LinkEntitiesRequest | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> LinkEntitiesResponse:
        """Remap external company/contact ids to canonical ids."""
        body = body or LinkEntitiesRequest()
        result = await link_entities(store, body.tenant_id)
        errors = [e for t in result.tenants for e in t.error_details]
        return LinkEntitiesResponse(
            total_processed=result.total_processed,
            total_linked=result.total_linked,
            total_errors=result.total_errors,
            success_rate=result.success_rate,
            results=[t.to_dict() for t in result.tenants],
            errors=errors,
        )

    @app.post(
        "/tenants/{tenant_id}/duplicates/resolve",
        response_model=ResolveDuplicatesResponse,
    )
    async def resolve(
        tenant_id: str,
        body: ResolveDuplicatesRequest | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> ResolveDuplicatesResponse:
        """Detect duplicate records and delete them unless ``dryRun``."""
        body = body or ResolveDuplicatesRequest()
        result = await resolve_duplicates(
            store,
            tenant_id,
            body.collection,
            dry_run=body.dry_run,
            update_keeper=body.update_keeper,
        )
        return ResolveDuplicatesResponse(
            tenant_id=result.tenant_id,
            collection=result.collection,
            dry_run=result.dry_run,
            total=result.total,
            duplicate_groups=result.duplicate_groups,
            to_delete=result.to_delete,
            to_keep=result.to_keep,
            deleted=result.deleted,
            groups=result.groups,
            errors=result.errors,
        )

    @app.post(
        "/tenants/{tenant_id}/snapshots/sync",
        response_model=SyncSnapshotsResponse,
    )
    async def sync(
        tenant_id: str,
        body: SyncSnapshotsRequest | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> SyncSnapshotsResponse:
        """Fill stale association snapshots."""
        body = body or SyncSnapshotsRequest()
        result = await sync_snapshots(
            store, tenant_id, entity_id=body.entity_id, owner_collection=body.owner_collection
        )
        return SyncSnapshotsResponse(
            tenant_id=result.tenant_id,
            owner_collection=result.owner_collection,
            scanned=result.scanned,
            owners_updated=result.owners_updated,
            references_synced=result.references_synced,
            skipped_missing=result.skipped_missing,
            errors=result.errors,
        )

    @app.post(
        "/tenants/{tenant_id}/associations/materialize",
        response_model=MaterializeResponse,
    )
    async def materialize(
        tenant_id: str,
        body: MaterializeRequest | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> MaterializeResponse:
        """Insert explicit association edges from implicit foreign keys."""
        body = body or MaterializeRequest()
        result = await materialize_associations(
            store, tenant_id, assign_owners=body.assign_owners, skip_existing=body.skip_existing
        )
        return MaterializeResponse(
            tenant_id=result.tenant_id,
            sources_processed=result.sources_processed,
            salespeople_assigned=result.salespeople_assigned,
            edges_created=result.edges_created,
            edges_skipped=result.edges_skipped,
            errors=result.errors,
        )

    @app.post(
        "/tenants/{tenant_id}/candidates/{candidate_id}/duplicate-check",
        response_model=DuplicateCheckResponse,
    )
    async def duplicate_check(
        tenant_id: str,
        candidate_id: str,
        body: DuplicateCheckRequest | None = None,
        store: DocumentStore = Depends(get_store),
    ) -> DuplicateCheckResponse:
        """Find likely duplicates of one candidate and store the result on it."""
        body = body or DuplicateCheckRequest()
        check = await check_candidate_duplicates(store, tenant_id, candidate_id, updated_by=body.updated_by)
        return DuplicateCheckResponse(
            tenant_id=tenant_id,
            candidate_id=candidate_id,
            duplicate_results=check.to_dict(),
        )


app = create_app()
