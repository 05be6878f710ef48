"""Text normalization and identity keys used for duplicate grouping.

Two records of the same kind are treated as the same real-world entity
when their identity keys are equal. A record with an empty key never
joins a duplicate group.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any, Callable, Mapping

from .. import paths

logger = logging.getLogger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]")


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_name(value: Any) -> str:
    """Canonical comparison form of a display name.

    Lowercases, strips punctuation and collapses whitespace:
    ``"  Acme,  Inc. "`` -> ``"acme inc"``.
    """
    if not isinstance(value, str) or not value.strip():
        return ""
    text = unicodedata.normalize('NFC', value)
    text = text.lower()
    text = _NON_WORD_RE.sub('', text)
    return normalize_whitespace(text)


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _person_name(data: Mapping[str, Any]) -> str | None:
    full = _first_present(data, "fullName")
    if full:
        return full
    parts = [data.get("firstName"), data.get("lastName")]
    joined = " ".join(p.strip() for p in parts if isinstance(p, str) and p.strip())
    return joined or None


def company_key(data: Mapping[str, Any]) -> str:
    return normalize_name(_first_present(data, "name", "companyName"))


def contact_key(data: Mapping[str, Any]) -> str:
    return normalize_name(_person_name(data))


def candidate_key(data: Mapping[str, Any]) -> str:
    return normalize_name(_person_name(data) or _first_present(data, "name"))


def deal_key(data: Mapping[str, Any]) -> str:
    return normalize_name(_first_present(data, "name"))


IDENTITY_KEYS: dict[str, Callable[[Mapping[str, Any]], str]] = {
    paths.COMPANIES: company_key,
    paths.CONTACTS: contact_key,
    paths.CANDIDATES: candidate_key,
    paths.DEALS: deal_key,
}


def identity_key(collection: str, data: Mapping[str, Any]) -> str:
    """Identity key of a record in ``collection``.

    Raises:
        ValueError: If the collection has no identity key definition
    """
    try:
        key_fn = IDENTITY_KEYS[collection]
    except KeyError:
        raise ValueError(f"No identity key defined for collection '{collection}'") from None
    return key_fn(data)
