"""Document paths for tenant-scoped collections."""
from __future__ import annotations

TENANTS = "tenants"
USERS = "users"

COMPANIES = "crm_companies"
CONTACTS = "crm_contacts"
DEALS = "crm_deals"
LOCATIONS = "crm_locations"
CANDIDATES = "candidates"
ASSOCIATIONS = "crm_associations"
LOCATION_MIRROR = "company_locations"

COMPANY_LOCATION_PATTERN = "tenants/{tenantId}/crm_companies/{companyId}/locations/{locationId}"


def tenant_doc(tenant_id: str) -> str:
    return f"{TENANTS}/{tenant_id}"


def collection(tenant_id: str, name: str) -> str:
    """Path of a tenant-scoped top-level collection."""
    return f"{TENANTS}/{tenant_id}/{name}"


def doc(tenant_id: str, name: str, doc_id: str) -> str:
    return f"{collection(tenant_id, name)}/{doc_id}"


def company_locations(tenant_id: str, company_id: str) -> str:
    """Path of a company's ``locations`` sub-collection."""
    return f"{doc(tenant_id, COMPANIES, company_id)}/locations"


def company_location(tenant_id: str, company_id: str, location_id: str) -> str:
    return f"{company_locations(tenant_id, company_id)}/{location_id}"


def mirror_id(company_id: str, location_id: str) -> str:
    """Deterministic id of a location mirror record."""
    return f"{company_id}_{location_id}"


def mirror_doc(tenant_id: str, company_id: str, location_id: str) -> str:
    return doc(tenant_id, LOCATION_MIRROR, mirror_id(company_id, location_id))


def user_doc(user_id: str) -> str:
    return f"{USERS}/{user_id}"


def split(path: str) -> tuple[str, str]:
    """Split a document path into ``(collection_path, doc_id)``."""
    parent, _, doc_id = path.rpartition("/")
    return parent, doc_id
