"""Pydantic schemas for the entity kinds the engine reads.

Documents are validated here, at the store-read boundary, before any field
is used by reconciliation logic. Unknown fields are preserved so a
validated entity can be dumped back without losing data.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .exceptions import EntityValidationError
from .store import Document


class DocumentModel(BaseModel):
    """Base for stored documents: camelCase on the wire, extra fields kept."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    id: str
    tenant_id: str | None = None
    created_at: Any = None
    updated_at: Any = None
    search_keywords: list[str] | None = None


class AssociationRef(BaseModel):
    """One entry of an ``associations.<kind>`` list."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str | None = None
    snapshot: dict[str, Any] | None = None

    @classmethod
    def coerce(cls, value: Any) -> Any:
        if isinstance(value, (str, int)):
            return {"id": str(value)}
        return value


def _refs(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, list):
        return [AssociationRef.coerce(v) for v in value]
    return value


class Associations(BaseModel):
    """Denormalized association references embedded in an owning entity."""
    model_config = ConfigDict(extra="allow")

    companies: list[AssociationRef] = Field(default_factory=list)
    contacts: list[AssociationRef] = Field(default_factory=list)
    salespeople: list[AssociationRef] = Field(default_factory=list)
    locations: list[AssociationRef] = Field(default_factory=list)
    deals: list[AssociationRef] = Field(default_factory=list)

    @field_validator("companies", "contacts", "salespeople", "locations", "deals", mode="before")
    @classmethod
    def coerce_refs(cls, v):
        return _refs(v)


class AssociatedEntity(DocumentModel):
    """An entity that may carry embedded association references."""
    associations: Associations = Field(default_factory=Associations)

    @field_validator("associations", mode="before")
    @classmethod
    def default_associations(cls, v):
        return {} if v is None else v


class Company(AssociatedEntity):
    name: str | None = None
    company_name: str | None = None
    legal_name: str | None = None
    external_id: str | None = None
    logo: str | None = None
    logo_url: str | None = None

    @property
    def display_name(self) -> str | None:
        return self.company_name or self.name or self.legal_name


class Contact(AssociatedEntity):
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company_id: str | None = None
    external_id: str | None = None
    external_company_id: str | None = None


class Deal(AssociatedEntity):
    name: str | None = None
    company_id: str | None = None
    external_company_id: str | None = None
    external_contact_ids: list[str] | None = None
    contact_ids: list[str] | None = None
    salespeople_ids: list[str] | None = None
    assigned_salesperson_id: str | None = None
    sales_owner_name: str | None = None


class Salesperson(DocumentModel):
    display_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None

    @property
    def resolved_name(self) -> str | None:
        joined = " ".join(p for p in (self.first_name, self.last_name) if p)
        return self.display_name or joined or self.email


class Location(DocumentModel):
    name: str | None = None
    nickname: str | None = None
    city: str | None = None
    state: Any = None
    state_code: Any = None
    address: Any = None
    address_text: str | None = None
    street_address: str | None = None


class Candidate(DocumentModel):
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class AssociationEdge(BaseModel):
    """An explicit, independently stored association record."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    source_entity_type: str
    source_entity_id: str
    target_entity_type: str
    target_entity_id: str
    association_type: str
    role: str | None = None
    strength: str = "medium"
    metadata: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None


class LocationMirrorRecord(BaseModel):
    """Derived per-(company, location) state projection."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    company_id: str
    state: Any = None
    state_code: str
    state_name: str | None = None


def parse(model: type[DocumentModel], doc: Document) -> Any:
    """Validate ``doc`` as ``model``.

    Raises:
        EntityValidationError: If the payload does not fit the schema
    """
    try:
        return model.model_validate({**doc.data, "id": doc.id})
    except ValidationError as e:
        raise EntityValidationError(doc.path, str(e)) from e
