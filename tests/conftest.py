"""Pytest configuration and shared fixtures."""

import pytest

from recon import paths
from recon.store import InMemoryDocumentStore

TENANT = "t1"


@pytest.fixture
def tenant_id() -> str:
    """Tenant id seeded into every ``store`` fixture."""
    return TENANT


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """In-memory document store with one existing tenant.

    Returns:
        InMemoryDocumentStore: Store containing ``tenants/t1``
    """
    return InMemoryDocumentStore({paths.tenant_doc(TENANT): {"name": "Acme Staffing"}})


@pytest.fixture
def seed(store: InMemoryDocumentStore):
    """Helper seeding a tenant-scoped document: ``seed(collection, doc_id, data)``."""

    def _seed(collection: str, doc_id: str, data: dict) -> str:
        path = paths.doc(TENANT, collection, doc_id)
        store.seed(path, data)
        return path

    return _seed


class FlakyStore(InMemoryDocumentStore):
    """Store whose first ``failures`` commits raise ``error``."""

    def __init__(self, error: Exception, failures: int = 1, documents=None):
        super().__init__(documents)
        self.error = error
        self.failures = failures
        self.attempts = 0

    async def _commit(self, ops):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return await super()._commit(ops)
