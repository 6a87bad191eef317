"""
Enrichment pipeline — Prospect status state machine.

Legal transitions:

    new        → enriching
    enriching  → enriched | review | not_viable
    review     → enriching
    enriched   → contacted → proposal | interested → closed_won | closed_lost
    (any)      → not_viable

``derive_target_status`` is the single source of truth for "what status do the
facts support". The worker uses it after an attempt and every reconciliation
sweep uses it to repair drift, so the two can never disagree.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from prospect_api.config import settings
from prospect_api.errors import InvalidTransition
from prospect_api.models.prospect import Contact, ProspectActivity
from prospect_api.services.audit import PROSPECTS_TABLE, record_audit
from prospect_api.services.email_classifier import count_acceptable

logger = logging.getLogger("enrichment.status")

# ── States ──────────────────────────────────────────────

NEW = "new"
ENRICHING = "enriching"
REVIEW = "review"
ENRICHED = "enriched"
CONTACTED = "contacted"
PROPOSAL = "proposal"
INTERESTED = "interested"
CLOSED_WON = "closed_won"
CLOSED_LOST = "closed_lost"
NOT_VIABLE = "not_viable"

ALL_STATUSES = (
    NEW, ENRICHING, REVIEW, ENRICHED, CONTACTED, PROPOSAL,
    INTERESTED, CLOSED_WON, CLOSED_LOST, NOT_VIABLE,
)

# Statuses owned by the enrichment pipeline (reconciliation may repair these)
PIPELINE_STATUSES = (ENRICHING, REVIEW, ENRICHED)

LEGACY_STATUS_MAP = {"qualified": INTERESTED}

_FORWARD = {
    NEW: {ENRICHING},
    ENRICHING: {ENRICHED, REVIEW},
    REVIEW: {ENRICHING},
    ENRICHED: {CONTACTED},
    CONTACTED: {PROPOSAL, INTERESTED},
    PROPOSAL: {CLOSED_WON, CLOSED_LOST},
    INTERESTED: {CLOSED_WON, CLOSED_LOST},
    CLOSED_WON: set(),
    CLOSED_LOST: set(),
    NOT_VIABLE: set(),
}

# Every state may be overridden to not_viable (except itself)
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    state: frozenset(nxt | ({NOT_VIABLE} if state != NOT_VIABLE else set()))
    for state, nxt in _FORWARD.items()
}


def normalise_status(value: str) -> str:
    """Lowercase, map legacy names, reject unknown values."""
    status = (value or "").strip().lower()
    status = LEGACY_STATUS_MAP.get(status, status)
    if status not in ALL_STATUSES:
        raise ValueError(f"Unknown prospect status: {value!r}")
    return status


def can_transition(old: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


def assert_transition(old: str, new: str) -> None:
    if not can_transition(old, new):
        raise InvalidTransition(old, new)


# ── Facts → target status ───────────────────────────────

@dataclass(frozen=True)
class EnrichmentFacts:
    """Everything the status decision depends on, read from stored data."""

    total_contacts: int
    acceptable_contacts: int
    has_icebreaker: bool
    has_company_name: bool
    retry_count: int

    @classmethod
    def build(
        cls,
        emails: Iterable[Optional[str]],
        icebreaker: Optional[str],
        company_name: Optional[str],
        retry_count: int,
    ) -> "EnrichmentFacts":
        emails = list(emails)
        return cls(
            total_contacts=len(emails),
            acceptable_contacts=count_acceptable(emails),
            has_icebreaker=bool(icebreaker and icebreaker.strip()),
            has_company_name=bool(company_name and company_name.strip()),
            retry_count=retry_count or 0,
        )


def is_enriched(facts: EnrichmentFacts) -> bool:
    """The enriched predicate: acceptable email AND icebreaker AND company name."""
    return facts.acceptable_contacts > 0 and facts.has_icebreaker and facts.has_company_name


def derive_target_status(facts: EnrichmentFacts, max_retries: Optional[int] = None) -> str:
    """Pure: the status the stored facts support.

    Precedence: enriched → review (contacts but none acceptable) →
    review (retries exhausted) → enriching (retry).
    """
    limit = settings.enrichment_max_retries if max_retries is None else max_retries
    if is_enriched(facts):
        return ENRICHED
    if facts.total_contacts > 0 and facts.acceptable_contacts == 0:
        return REVIEW
    if facts.retry_count >= limit:
        return REVIEW
    return ENRICHING


def resolve_repair_status(
    current: str,
    facts: EnrichmentFacts,
    *,
    leave_enriching: bool = False,
    max_retries: Optional[int] = None,
) -> str:
    """Status a repair sweep should write for a pipeline-owned prospect.

    An ``enriched`` record keeps its status unless it provably fails the
    enriched predicate. With ``leave_enriching`` (graceful stop) the record is
    never left in ``enriching``: the best non-enriching state is ``review``.
    """
    if current == ENRICHED and is_enriched(facts):
        return ENRICHED
    target = derive_target_status(facts, max_retries)
    if leave_enriching and target == ENRICHING:
        return REVIEW
    return target


async def load_facts(db: AsyncSession, prospect: ProspectActivity) -> EnrichmentFacts:
    """Read contacts fresh from the DB rather than the (possibly stale) relationship."""
    rows = await db.execute(select(Contact.email).where(Contact.prospect_id == prospect.id))
    emails = [r[0] for r in rows.all()]
    company = prospect.report.known_company_name if prospect.report else None
    return EnrichmentFacts.build(
        emails=emails,
        icebreaker=prospect.icebreaker_text,
        company_name=company,
        retry_count=prospect.enrichment_retry_count,
    )


# ── Mutations (always audited) ──────────────────────────

def apply_status(
    db: AsyncSession,
    prospect: ProspectActivity,
    new_status: str,
    *,
    changed_by: str,
    context: str,
    force: bool = False,
    action_type: str = "STATUS_CHANGE",
) -> bool:
    """Move ``prospect`` to ``new_status`` and audit it. Returns False on no-op.

    ``force`` skips the transition table; only data-integrity repairs use it.
    """
    old = prospect.status
    if old == new_status:
        return False
    if not force:
        assert_transition(old, new_status)
    prospect.status = new_status
    record_audit(
        db,
        table=PROSPECTS_TABLE,
        record_id=prospect.id,
        action_type=action_type,
        field_name="status",
        old_value=old,
        new_value=new_status,
        business_context=context,
        changed_by=changed_by,
    )
    logger.info("Prospect %s: %s → %s (%s)", prospect.id, old, new_status, context)
    return True


def apply_field(
    db: AsyncSession,
    prospect: ProspectActivity,
    field: str,
    value,
    *,
    changed_by: str,
    context: str,
    action_type: str = "UPDATE",
) -> bool:
    """Set a non-status field on ``prospect`` with an audit row. No-op when unchanged."""
    old = getattr(prospect, field)
    if old == value:
        return False
    setattr(prospect, field, value)
    record_audit(
        db,
        table=PROSPECTS_TABLE,
        record_id=prospect.id,
        action_type=action_type,
        field_name=field,
        old_value=old,
        new_value=value,
        business_context=context,
        changed_by=changed_by,
    )
    return True
