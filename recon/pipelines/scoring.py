"""Completeness scoring: how filled-in a record is, as a fraction in [0, 1]."""
from __future__ import annotations

from typing import Any, Mapping, Sequence

from .. import paths

COMPANY_FIELDS = (
    "name", "companyName", "status", "industry", "tier", "tags",
    "accountOwner", "source", "address", "city", "state", "zipcode",
    "country", "phone", "website", "linkedInUrl", "latitude", "longitude",
    "notes", "salesOwnerId", "salesOwnerName", "salesOwnerRef",
    "freshsalesId", "externalId", "logo", "companyStructure", "dealIntelligence",
)

CONTACT_FIELDS = (
    "fullName", "firstName", "lastName", "email", "phone", "workPhone",
    "mobilePhone", "jobTitle", "title", "companyId", "companyName",
    "address", "city", "state", "zipcode", "country", "linkedInUrl",
    "website", "notes", "tags", "birthday", "lastContactedTime", "leadSource",
)

CANDIDATE_FIELDS = (
    "firstName", "lastName", "fullName", "email", "phone", "city", "state",
    "skills", "experience", "education", "resumeUrl", "linkedInUrl", "notes",
    "tags", "status", "source",
)

DEAL_FIELDS = (
    "name", "stage", "status", "amount", "closeDate", "companyId",
    "contactIds", "salespeopleIds", "notes", "tags", "source", "probability",
)

IMPORTANT_FIELDS: dict[str, tuple[str, ...]] = {
    paths.COMPANIES: COMPANY_FIELDS,
    paths.CONTACTS: CONTACT_FIELDS,
    paths.CANDIDATES: CANDIDATE_FIELDS,
    paths.DEALS: DEAL_FIELDS,
}


def is_present(value: Any) -> bool:
    """Whether a field value counts toward completeness.

    Non-empty strings, any number or boolean, non-empty lists and
    non-empty mappings count; ``None`` and empty values do not.
    """
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (list, tuple, set, frozenset, Mapping)):
        return len(value) > 0
    return True


def completeness_score(
    record: Mapping[str, Any],
    fields: Sequence[str] | None = None,
    *,
    collection: str | None = None,
) -> float:
    """Fraction of important fields populated on ``record``.

    Args:
        record: Entity data
        fields: Explicit field list; takes precedence over ``collection``
        collection: Collection name used to pick the built-in field list

    Returns:
        Score in [0, 1]; 0 when the field list is empty

    Raises:
        ValueError: If neither a field list nor a known collection is given
    """
    if fields is None:
        if collection not in IMPORTANT_FIELDS:
            raise ValueError(f"No completeness fields defined for collection '{collection}'")
        fields = IMPORTANT_FIELDS[collection]
    if not fields:
        return 0.0
    present = sum(1 for name in fields if is_present(record.get(name)))
    return present / len(fields)
