"""
Enrichment Worker — contact lookup + AI icebreaker for ONE prospect.

Contract with the orchestrator:
  * it is called while ``worker_id`` holds the prospect's lock;
  * it always leaves its JobItem in a terminal status;
  * it always releases the lock before returning (or raising);
  * the next status comes from status_machine.derive_target_status().

Retry budget: a completed attempt that does not reach ``enriched`` and any
provider/network/parse failure count against it. Rate limits, exhausted
credits and a lost lock do not.

Phases (each DB phase is its own short session, no transaction is held
across network calls):
  1. Claim   — verify lock ownership, mark item processing, stamp attempt
  2. Fetch   — domain check, scrape, AI extraction, icebreaker
  3. Apply   — store contacts, derive status, release lock, finish item
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from prospect_api.config import settings
from prospect_api.database import async_session_factory
from prospect_api.errors import (
    ConfigurationError,
    ProviderError,
    ProviderQuotaExhausted,
    ProviderRateLimited,
)
from prospect_api.models.enrichment_job import (
    EnrichmentJobItem,
    get_or_create_settings,
    sync_job_counters,
)
from prospect_api.models.prospect import Contact, ProspectActivity
from prospect_api.services.ai import call_ai, extract_json
from prospect_api.services.audit import PROSPECTS_TABLE, record_audit
from prospect_api.services.domain_validation import validate_domain
from prospect_api.services.email_classifier import is_sales_acceptable, is_valid_email_format
from prospect_api.services.lock_manager import clear_lock, utcnow
from prospect_api.services.scraper import combine_pages, scrape_website
from prospect_api.services.status_machine import (
    ENRICHED,
    ENRICHING,
    NOT_VIABLE,
    apply_field,
    apply_status,
    derive_target_status,
    load_facts,
)

logger = logging.getLogger("enrichment.worker")

# ─── Prompts ──────────────────────────────────────────────────────────

CONTACT_EXTRACTION_SYSTEM = """You extract business contact information from website text.
Return ONLY a JSON object:
{
  "company_name": "Official business name or null",
  "contacts": [
    {"name": "Full Name", "title": "Role", "email": "address or null",
     "phone": "number or null", "is_primary": true}
  ]
}
Rules:
- Only include people or mailboxes that actually appear in the text. Never guess emails.
- Prefer owners, founders, executives and department heads.
- Mark the most senior decision-maker as is_primary.
- Return an empty contacts list when nobody is named."""

ICEBREAKER_SYSTEM = """You write personalised B2B cold-email openers.
Write 1-2 sentences (under 50 words) that reference something specific about the
business. No greetings, no sign-off, no generic flattery, no mention of AI.
Return only the opener text."""


def _contact_prompt(domain: str, text: str, emails: list[str]) -> str:
    found = ", ".join(emails) if emails else "none"
    return (
        f"Website: {domain}\n"
        f"Emails seen in page markup: {found}\n\n"
        f"Website text:\n{text}"
    )


def _icebreaker_prompt(company: str, domain: str, contact_name: str | None, text: str) -> str:
    who = f"Recipient: {contact_name}\n" if contact_name else ""
    return f"Company: {company}\nWebsite: {domain}\n{who}\nAbout the business:\n{text[:3000]}"


# ─── Result ───────────────────────────────────────────────────────────

@dataclass
class WorkerResult:
    """Outcome of one attempt, as reported to callers and JobItems."""
    prospect_id: str
    status: Optional[str]
    item_status: str
    contacts_found: int = 0
    has_emails: bool = False
    error: Optional[str] = None

    def as_response(self) -> dict:
        return {
            "status": self.status,
            "contactsFound": self.contacts_found,
            "hasEmails": self.has_emails,
        }


# ─── AI steps ─────────────────────────────────────────────────────────

async def extract_contacts(domain: str, scraped: dict) -> dict:
    """AI extraction → {"company_name": str|None, "contacts": [dict, ...]}."""
    text = combine_pages(scraped["pages"])
    messages = [
        {"role": "system", "content": CONTACT_EXTRACTION_SYSTEM},
        {"role": "user", "content": _contact_prompt(domain, text, scraped.get("emails", []))},
    ]
    raw = await call_ai(messages, temperature=0.1, max_tokens=2000)
    data = extract_json(raw)
    if not isinstance(data, dict):
        raise ValueError(f"AI returned {type(data).__name__}, expected a JSON object")

    contacts = data.get("contacts") or []
    if not isinstance(contacts, list):
        raise ValueError("AI returned a non-list 'contacts' field")
    company = data.get("company_name")
    return {
        "company_name": company.strip() if isinstance(company, str) and company.strip() else None,
        "contacts": [c for c in contacts if isinstance(c, dict)],
    }


async def generate_icebreaker(
    company: str, domain: str, contact_name: str | None, text: str
) -> Optional[str]:
    """Optional step: failures are logged and swallowed, except 429/402/config."""
    messages = [
        {"role": "system", "content": ICEBREAKER_SYSTEM},
        {"role": "user", "content": _icebreaker_prompt(company, domain, contact_name, text)},
    ]
    try:
        opener = await call_ai(messages, temperature=0.7, max_tokens=200)
    except (ProviderRateLimited, ProviderQuotaExhausted, ConfigurationError):
        raise
    except ProviderError as e:
        logger.warning("Icebreaker generation failed for %s: %s", domain, e)
        return None
    opener = opener.strip().strip('"').strip()
    return opener or None


def _text(value) -> Optional[str]:
    """AI fields arrive as str, int, float or null."""
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


def _clean_contact(raw: dict) -> Optional[dict]:
    name = _text(raw.get("name"))
    email = (_text(raw.get("email")) or "").lower() or None
    if email and not is_valid_email_format(email):
        email = None
    if not name and not email:
        return None
    return {
        "name": name,
        "email": email,
        "title": _text(raw.get("title")),
        "phone": _text(raw.get("phone")),
        "is_primary": bool(raw.get("is_primary")),
    }


# ─── Phase 1: Claim ───────────────────────────────────────────────────

async def _claim(prospect_id: str, worker_id: str, job_item_id: Optional[str]) -> Optional[dict]:
    """Returns a snapshot for the fetch phase, or None when the attempt must not run."""
    async with async_session_factory() as db:
        prospect = await db.get(ProspectActivity, prospect_id)
        item = await db.get(EnrichmentJobItem, job_item_id) if job_item_id else None

        if item is not None and item.status != "pending":
            # Already resolved (graceful stop, halt) before we got here
            logger.info("Item %s is %s — nothing to do", item.id, item.status)
            return None

        reason = None
        if prospect is None:
            reason = "Prospect not found"
        elif prospect.enrichment_locked_by != worker_id:
            reason = "Lock lost before start"
        elif prospect.status != ENRICHING:
            reason = f"Prospect is {prospect.status}, not enriching"

        if reason:
            logger.warning("Skipping %s for %s: %s", prospect_id, worker_id, reason)
            if item is not None:
                item.finish("failed", reason)
                await sync_job_counters(db, item.job_id)
            await db.commit()
            return None

        now = utcnow()
        prospect.last_enrichment_attempt = now
        prospect.enrichment_attempts = (prospect.enrichment_attempts or 0) + 1
        if item is not None:
            item.status = "processing"
            item.started_at = now
            await sync_job_counters(db, item.job_id)

        existing = list(prospect.contacts)
        snapshot = {
            "domain": prospect.domain,
            "company_name": prospect.report.known_company_name if prospect.report else None,
            "has_icebreaker": bool(prospect.icebreaker_text),
            "existing_emails": [c.email.lower() for c in existing if c.email],
            "existing_count": len(existing),
            "primary_name": next((c.name for c in existing if c.is_primary and c.name), None),
        }
        await db.commit()
        return snapshot


# ─── Phase 2: Fetch ───────────────────────────────────────────────────

async def _fetch(snapshot: dict) -> dict:
    """Network phase. Returns findings; raises provider/network errors."""
    domain = snapshot["domain"]
    viable, reason = validate_domain(domain)
    if not viable:
        return {"viable": False, "reason": reason}

    scraped = await scrape_website(domain)
    if not scraped["pages"]:
        raise ProviderError(f"Could not access website for {domain}")

    extracted = await extract_contacts(domain, scraped)
    contacts = [c for c in (_clean_contact(raw) for raw in extracted["contacts"]) if c]

    company = snapshot["company_name"] or extracted["company_name"]
    icebreaker = None
    emails = snapshot["existing_emails"] + [c["email"] for c in contacts if c["email"]]
    if (
        not snapshot["has_icebreaker"]
        and company
        and any(is_sales_acceptable(e) for e in emails)
    ):
        primary = next(
            (c["name"] for c in contacts if c["is_primary"] and c["name"]),
            snapshot["primary_name"],
        )
        icebreaker = await generate_icebreaker(
            company, domain, primary, combine_pages(scraped["pages"], 3000)
        )

    return {
        "viable": True,
        "company_name": extracted["company_name"],
        "contacts": contacts,
        "icebreaker": icebreaker,
    }


# ─── Phase 3: Apply ───────────────────────────────────────────────────

def _store_contacts(db, prospect: ProspectActivity, snapshot: dict, contacts: list[dict]) -> int:
    """Insert new contacts (deduped by email, capped per domain). Returns count added."""
    seen = {e.lower() for e in snapshot["existing_emails"]}
    room = max(settings.max_contacts_per_domain - snapshot["existing_count"], 0)
    has_primary = snapshot["primary_name"] is not None
    added = 0

    for c in contacts:
        if added >= room:
            logger.info("Contact cap reached for %s", prospect.domain)
            break
        if c["email"]:
            if c["email"] in seen:
                continue
            seen.add(c["email"])
        is_primary = c["is_primary"] and not has_primary and is_sales_acceptable(c["email"])
        has_primary = has_primary or is_primary
        db.add(Contact(
            prospect_id=prospect.id,
            name=c["name"],
            email=c["email"],
            phone=c["phone"],
            title=c["title"],
            is_primary=is_primary,
            source="enrichment",
        ))
        added += 1
    return added


async def _apply(
    prospect_id: str,
    worker_id: str,
    job_item_id: Optional[str],
    snapshot: dict,
    findings: dict,
) -> WorkerResult:
    async with async_session_factory() as db:
        prospect = await db.get(ProspectActivity, prospect_id)
        item = await db.get(EnrichmentJobItem, job_item_id) if job_item_id else None

        if prospect is None or prospect.enrichment_locked_by != worker_id:
            # Swept or stopped mid-flight; whoever took the lock owns the record now
            logger.warning("Lock on %s lost during enrichment — discarding results", prospect_id)
            if item is not None and item.status == "processing":
                item.finish("failed", "Lock lost during enrichment")
                await sync_job_counters(db, item.job_id)
            await db.commit()
            return WorkerResult(prospect_id, prospect.status if prospect else None, "failed",
                                error="lock lost")

        added = 0
        if not findings["viable"]:
            if prospect.status == ENRICHING:
                apply_status(db, prospect, NOT_VIABLE, changed_by=worker_id,
                             context=findings["reason"])
            target = NOT_VIABLE
            facts = await load_facts(db, prospect)
        else:
            added = _store_contacts(db, prospect, snapshot, findings["contacts"])
            report = prospect.report
            if findings["company_name"] and report is not None and not report.extracted_company_name:
                report.extracted_company_name = findings["company_name"]
            if findings["icebreaker"]:
                apply_field(db, prospect, "icebreaker_text", findings["icebreaker"],
                            changed_by=worker_id, context="Icebreaker generated")

            facts = await load_facts(db, prospect)
            target = derive_target_status(facts)
            if target != ENRICHED:
                apply_field(db, prospect, "enrichment_retry_count",
                            prospect.enrichment_retry_count + 1, changed_by=worker_id,
                            context="Enrichment attempt did not reach enriched")
                facts = await load_facts(db, prospect)
                target = derive_target_status(facts)

            apply_field(db, prospect, "contact_count", facts.acceptable_contacts,
                        changed_by=worker_id, context=f"{added} contacts found")
            if prospect.status == ENRICHING:
                apply_status(db, prospect, target, changed_by=worker_id,
                             context=f"Enrichment finished: {facts.acceptable_contacts} "
                                     f"acceptable of {facts.total_contacts} contacts")

        result = WorkerResult(
            prospect_id=prospect_id,
            status=prospect.status,
            item_status="success",
            contacts_found=added,
            has_emails=facts.acceptable_contacts > 0,
        )

        record_audit(
            db, table=PROSPECTS_TABLE, record_id=prospect_id,
            action_type="ENRICHMENT_ATTEMPT", field_name="outcome",
            old_value=ENRICHING, new_value=target,
            business_context=f"{added} new contacts, has_emails={result.has_emails}",
            changed_by=worker_id,
        )
        totals = await get_or_create_settings(db)
        if target == ENRICHED:
            totals.total_enriched += 1
        else:
            totals.total_failed += 1

        clear_lock(prospect, worker_id)
        if item is not None:
            item.contacts_found = added
            item.has_emails = result.has_emails
            item.finish("success")
            await sync_job_counters(db, item.job_id)
        await db.commit()

    logger.info("✅ Enriched %s → %s (%d contacts)", prospect_id, result.status, added)
    return result


async def _fail(
    prospect_id: str,
    worker_id: str,
    job_item_id: Optional[str],
    error: str,
    *,
    count_retry: bool,
    item_status: str = "failed",
) -> WorkerResult:
    """Failure path: optional retry++, status re-derived, lock released, item finished."""
    async with async_session_factory() as db:
        prospect = await db.get(ProspectActivity, prospect_id)
        item = await db.get(EnrichmentJobItem, job_item_id) if job_item_id else None
        status = prospect.status if prospect else None

        if prospect is not None and prospect.enrichment_locked_by == worker_id:
            if count_retry:
                apply_field(db, prospect, "enrichment_retry_count",
                            prospect.enrichment_retry_count + 1, changed_by=worker_id,
                            context=f"Enrichment failed: {error[:200]}")
                facts = await load_facts(db, prospect)
                target = derive_target_status(facts)
                if prospect.status == ENRICHING:
                    apply_status(db, prospect, target, changed_by=worker_id,
                                 context=f"Enrichment failed: {error[:200]}")
                totals = await get_or_create_settings(db)
                totals.total_failed += 1
            record_audit(
                db, table=PROSPECTS_TABLE, record_id=prospect_id,
                action_type="ENRICHMENT_ATTEMPT", field_name="outcome",
                old_value=ENRICHING, new_value=item_status,
                business_context=error[:500], changed_by=worker_id,
            )
            clear_lock(prospect, worker_id)
            status = prospect.status

        if item is not None and item.status in ("pending", "processing"):
            item.finish(item_status, error)
            await sync_job_counters(db, item.job_id)
        await db.commit()

    logger.warning("❌ Enrichment of %s %s: %s", prospect_id, item_status, error)
    return WorkerResult(prospect_id, status, item_status, error=error)


# ─── Entry point ──────────────────────────────────────────────────────

async def enrich_prospect(
    prospect_id: str,
    worker_id: str,
    job_item_id: Optional[str] = None,
) -> WorkerResult:
    """Run one enrichment attempt. ``worker_id`` must already hold the lock.

    Raises ProviderRateLimited / ProviderQuotaExhausted / ConfigurationError
    after cleaning up, so the caller can halt the batch. Everything else is
    recorded on the item and returned, unexpected errors included (they are
    charged to the retry budget like any other failed attempt).
    """
    snapshot = await _claim(prospect_id, worker_id, job_item_id)
    if snapshot is None:
        return WorkerResult(prospect_id, None, "failed", error="not started")

    try:
        findings = await _fetch(snapshot)
    except ProviderRateLimited as e:
        await _fail(prospect_id, worker_id, job_item_id, str(e),
                    count_retry=False, item_status="rate_limited")
        raise
    except (ProviderQuotaExhausted, ConfigurationError) as e:
        await _fail(prospect_id, worker_id, job_item_id, str(e), count_retry=False)
        raise
    except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        return await _fail(prospect_id, worker_id, job_item_id, str(e) or type(e).__name__,
                           count_retry=True)
    except Exception as e:
        logger.exception("Unexpected error fetching %s", prospect_id)
        return await _fail(prospect_id, worker_id, job_item_id, f"{type(e).__name__}: {e}",
                           count_retry=True)

    try:
        return await _apply(prospect_id, worker_id, job_item_id, snapshot, findings)
    except Exception as e:
        # _apply rolled back; the lock and item are still ours to settle
        logger.exception("Unexpected error applying results for %s", prospect_id)
        return await _fail(prospect_id, worker_id, job_item_id, f"{type(e).__name__}: {e}",
                           count_retry=True)
