"""Candidate duplicate detection with exact-contact and fuzzy-name matching.

Scores every other candidate of the tenant against one candidate:
exact email and exact phone matches carry fixed confidences, names are
compared with rapidfuzz. The best matches are persisted on the candidate.
"""
from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any

from rapidfuzz import fuzz

from recon import paths
from recon.batching import BatchWriter
from recon.config import settings
from recon.exceptions import EntityNotFoundError, EntityValidationError
from recon.pipelines.common import require_tenant
from recon.pipelines.normalization import normalize_name
from recon.schemas import Candidate, parse
from recon.store import Document, DocumentStore, now_iso

logger = logging.getLogger(__name__)

EMAIL_CONFIDENCE = 0.95
PHONE_CONFIDENCE = 0.90


@dataclass
class DuplicateMatch:
    """One likely duplicate of the checked candidate."""
    candidate_id: str
    match_type: str  # exact_email, exact_phone, name_similarity
    confidence: float
    reason: str
    candidate: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "candidateId": data["candidate_id"],
            "matchType": data["match_type"],
            "confidence": data["confidence"],
            "reason": data["reason"],
            "candidateData": data["candidate"],
        }


@dataclass
class DuplicateCheck:
    """Outcome of a candidate duplicate check."""
    is_duplicate: bool
    confidence: float
    duplicate_count: int
    duplicates: list[DuplicateMatch]
    last_checked: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "isDuplicate": self.is_duplicate,
            "confidence": self.confidence,
            "duplicateCount": self.duplicate_count,
            "duplicates": [d.to_dict() for d in self.duplicates],
            "lastChecked": self.last_checked,
        }


def _normalize_email(value: str | None) -> str:
    return value.strip().lower() if value else ""


def _normalize_phone(value: str | None) -> str:
    return re.sub(r"\D", "", value) if value else ""


def name_similarity(a: str, b: str) -> float:
    """Token-order-insensitive similarity of two names in [0, 1]."""
    left, right = normalize_name(a), normalize_name(b)
    if not left or not right:
        return 0.0
    return fuzz.token_sort_ratio(left, right) / 100.0


def _summary(candidate: Candidate) -> dict[str, Any]:
    return {
        "name": candidate.display_name or None,
        "email": candidate.email,
        "phone": candidate.phone,
    }


def find_candidate_duplicates(
    target: Candidate,
    others: list[Candidate],
    *,
    name_threshold: float | None = None,
    duplicate_threshold: float | None = None,
    max_matches: int | None = None,
    checked_at: str | None = None,
) -> DuplicateCheck:
    """Score ``others`` against ``target`` and keep the best matches.

    Args:
        target: Candidate being checked
        others: Other candidates of the same tenant
        name_threshold: Minimum name similarity for a fuzzy match
        duplicate_threshold: Best confidence above which the target is flagged
        max_matches: Number of matches to report

    Returns:
        DuplicateCheck with matches sorted by descending confidence
    """
    cfg = settings.duplicates
    name_threshold = cfg.candidate_name_threshold if name_threshold is None else name_threshold
    duplicate_threshold = cfg.candidate_duplicate_threshold if duplicate_threshold is None else duplicate_threshold
    max_matches = cfg.max_reported_matches if max_matches is None else max_matches

    email = _normalize_email(target.email)
    phone = _normalize_phone(target.phone)
    name = target.display_name
    matches: dict[str, DuplicateMatch] = {}

    for other in others:
        if other.id == target.id:
            continue
        if email and _normalize_email(other.email) == email:
            matches[other.id] = DuplicateMatch(other.id, "exact_email", EMAIL_CONFIDENCE, "Exact email match", _summary(other))
            continue
        if phone and _normalize_phone(other.phone) == phone:
            matches[other.id] = DuplicateMatch(other.id, "exact_phone", PHONE_CONFIDENCE, "Exact phone match", _summary(other))
            continue
        similarity = name_similarity(name, other.display_name)
        if similarity > name_threshold:
            matches[other.id] = DuplicateMatch(
                other.id,
                "name_similarity",
                round(similarity, 4),
                f"Name similarity {similarity:.0%}",
                _summary(other),
            )

    ranked = sorted(matches.values(), key=lambda m: m.confidence, reverse=True)
    best = ranked[0].confidence if ranked else 0.0
    return DuplicateCheck(
        is_duplicate=bool(ranked) and best > duplicate_threshold,
        confidence=best,
        duplicate_count=len(ranked),
        duplicates=ranked[:max_matches],
        last_checked=checked_at or now_iso(),
    )


async def check_candidate_duplicates(
    store: DocumentStore,
    tenant_id: str,
    candidate_id: str,
    *,
    updated_by: str | None = None,
) -> DuplicateCheck:
    """Run a duplicate check for one candidate and persist the result on it.

    Raises:
        TenantNotFoundError: If the tenant does not exist
        EntityNotFoundError: If the candidate does not exist
        EntityValidationError: If the candidate document is malformed
        BatchCommitError: If the result could not be written
    """
    await require_tenant(store, tenant_id)
    doc = await store.get(paths.doc(tenant_id, paths.CANDIDATES, candidate_id))
    if doc is None:
        raise EntityNotFoundError(paths.CANDIDATES, candidate_id)
    target = parse(Candidate, doc)

    others: list[Candidate] = []
    for other in await store.list(paths.collection(tenant_id, paths.CANDIDATES)):
        if other.id == candidate_id:
            continue
        others.append(_parse_or_skip(other))
    check = find_candidate_duplicates(target, [c for c in others if c is not None])

    async with BatchWriter(store, limit=1) as writer:
        await writer.update(
            doc.path,
            {
                "duplicateCheck": check.to_dict(),
                "lastDuplicateCheck": check.last_checked,
                "updatedAt": check.last_checked,
                "updatedBy": updated_by or "system",
            },
            tag=candidate_id,
        )
    logger.info(
        f"Duplicate check for candidate {candidate_id}: {check.duplicate_count} matches, "
        f"duplicate={check.is_duplicate}"
    )
    return check


def _parse_or_skip(doc: Document) -> Candidate | None:
    try:
        return parse(Candidate, doc)
    except EntityValidationError as e:
        logger.warning(f"Skipping invalid candidate {doc.id}: {e.detail}")
        return None
