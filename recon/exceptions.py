"""Exception hierarchy for the reconciliation engine.

Fatal conditions are raised; per-entity failures are collected into the
result objects returned by each pipeline.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .store import WriteOp


class ReconciliationError(Exception):
    """Base class for run-aborting reconciliation failures."""
    pass


class TenantNotFoundError(ReconciliationError):
    """Raised when the requested tenant cannot be resolved."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id


class StoreError(ReconciliationError):
    """Raised when the document store cannot be read or written."""
    pass


class TransientStoreError(StoreError):
    """A store failure worth retrying (timeouts, contention)."""
    pass


class DocumentNotFoundError(StoreError):
    """Raised when an update targets a document that does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Document {path} does not exist")
        self.path = path


class BatchCommitError(StoreError):
    """Raised when a batch could not be committed, even after retries."""

    def __init__(self, message: str, ops: Sequence[WriteOp]):
        super().__init__(message)
        self.ops = list(ops)

    @property
    def tags(self) -> set[str]:
        """Tags of the operations that were lost with the batch."""
        return {op.tag for op in self.ops if op.tag is not None}


class EntityValidationError(ReconciliationError):
    """Raised when a stored document fails schema validation."""

    def __init__(self, path: str, detail: str):
        super().__init__(f"Invalid document {path}: {detail}")
        self.path = path
        self.detail = detail


class EntityNotFoundError(ReconciliationError):
    """Raised when an operation targets a single entity that does not exist."""

    def __init__(self, collection: str, entity_id: str):
        super().__init__(f"{collection} record {entity_id} not found")
        self.collection = collection
        self.entity_id = entity_id


class UnsupportedCollectionError(ReconciliationError):
    """Raised when an operation is requested for a collection it cannot process."""

    def __init__(self, operation: str, collection: str):
        super().__init__(f"{operation} is not supported for '{collection}'")
        self.operation = operation
        self.collection = collection
