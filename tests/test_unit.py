"""
Unit Tests for Enrichment Pipeline Pure Functions.

No database required — email classification, domain viability, the
transition table, the facts → status rules and provider status mapping.
"""

from datetime import timedelta

import pytest

from prospect_api.errors import (
    ConfigurationError,
    InvalidTransition,
    ProviderError,
    ProviderQuotaExhausted,
    ProviderRateLimited,
)
from prospect_api.services.ai import _raise_for_status
from prospect_api.services.domain_validation import clean_domain, is_viable_domain, validate_domain
from prospect_api.services.email_classifier import (
    count_acceptable,
    is_role_email,
    is_sales_acceptable,
    rejection_reason,
)
from prospect_api.services.lock_manager import is_stale, utcnow
from prospect_api.services.status_machine import (
    ALLOWED_TRANSITIONS,
    ALL_STATUSES,
    EnrichmentFacts,
    assert_transition,
    can_transition,
    derive_target_status,
    normalise_status,
    resolve_repair_status,
)


# ═══════════════════════════════════════════════════════════
# EMAIL CLASSIFICATION
# ═══════════════════════════════════════════════════════════

class TestSalesAcceptable:
    """Role, institutional and malformed addresses are rejected."""

    def test_institutional_rejected(self):
        assert not is_sales_acceptable("legal@example.gov")

    def test_named_person_accepted(self):
        assert is_sales_acceptable("jsmith@example.com")

    def test_role_mailbox_rejected(self):
        assert not is_sales_acceptable("info@acme.com")

    def test_personal_mailbox_accepted(self):
        assert is_sales_acceptable("jane@gmail.com")

    @pytest.mark.parametrize("email", [
        "support@acme.com", "noreply@acme.com", "no-reply@acme.com",
        "sales.team@acme.com", "billing-dept@acme.com", "HR@acme.com",
    ])
    def test_role_variants(self, email):
        assert is_role_email(email)
        assert not is_sales_acceptable(email)

    def test_role_word_inside_name_is_not_role(self):
        assert not is_role_email("infante@acme.com")
        assert is_sales_acceptable("infante@acme.com")

    def test_edu_and_mil_rejected(self):
        assert not is_sales_acceptable("prof@state.edu")
        assert not is_sales_acceptable("officer@army.mil")

    @pytest.mark.parametrize("email", [None, "", "   ", "not-an-email", "a@b", "@acme.com"])
    def test_malformed_rejected(self, email):
        assert not is_sales_acceptable(email)

    def test_rejection_reason_explains(self):
        assert rejection_reason("info@acme.com").startswith("role mailbox")
        assert rejection_reason("legal@example.gov").startswith("role mailbox")
        assert rejection_reason("jane@city.gov").startswith("institutional")
        assert rejection_reason("jane@acme.com") is None

    def test_count_acceptable_is_distinct(self):
        emails = ["jane@x.com", "JANE@x.com", "info@x.com", None, "bob@x.com"]
        assert count_acceptable(emails) == 2


# ═══════════════════════════════════════════════════════════
# DOMAIN VIABILITY
# ═══════════════════════════════════════════════════════════

class TestDomainValidation:
    def test_clean_domain(self):
        assert clean_domain("https://www.Example.com/about?x=1") == "example.com"
        assert clean_domain("acme.io:8080") == "acme.io"

    def test_us_domains_viable(self):
        for domain in ("acme.com", "acme.io", "acme.co", "acme.us", "sub.acme.net"):
            assert is_viable_domain(domain), domain

    def test_foreign_cctld_not_viable(self):
        ok, reason = validate_domain("acme.co.uk")
        assert not ok
        assert ".uk" in reason
        assert not is_viable_domain("acme.de")

    def test_institutional_not_viable(self):
        assert not is_viable_domain("city.gov")
        assert not is_viable_domain("college.edu")

    def test_malformed(self):
        assert validate_domain("") == (False, "Empty domain")
        assert not is_viable_domain("not a domain")

    def test_unknown_tld(self):
        ok, reason = validate_domain("acme.xyz")
        assert not ok
        assert "xyz" in reason


# ═══════════════════════════════════════════════════════════
# STATUS MACHINE — TRANSITION TABLE
# ═══════════════════════════════════════════════════════════

class TestTransitions:
    EXPECTED = {
        "new": {"enriching", "not_viable"},
        "enriching": {"enriched", "review", "not_viable"},
        "review": {"enriching", "not_viable"},
        "enriched": {"contacted", "not_viable"},
        "contacted": {"proposal", "interested", "not_viable"},
        "proposal": {"closed_won", "closed_lost", "not_viable"},
        "interested": {"closed_won", "closed_lost", "not_viable"},
        "closed_won": {"not_viable"},
        "closed_lost": {"not_viable"},
        "not_viable": set(),
    }

    def test_table_is_exact(self):
        assert {k: set(v) for k, v in ALLOWED_TRANSITIONS.items()} == self.EXPECTED

    def test_every_pair(self):
        for old in ALL_STATUSES:
            for new in ALL_STATUSES:
                assert can_transition(old, new) == (new in self.EXPECTED[old]), (old, new)

    def test_illegal_raises(self):
        with pytest.raises(InvalidTransition) as exc:
            assert_transition("new", "enriched")
        assert exc.value.old_status == "new"
        assert exc.value.new_status == "enriched"

    def test_review_cannot_jump_to_enriched(self):
        assert not can_transition("review", "enriched")

    def test_normalise_maps_legacy(self):
        assert normalise_status("qualified") == "interested"
        assert normalise_status(" Enriched ") == "enriched"

    def test_normalise_rejects_unknown(self):
        with pytest.raises(ValueError):
            normalise_status("hot_lead")


# ═══════════════════════════════════════════════════════════
# STATUS MACHINE — FACTS → TARGET
# ═══════════════════════════════════════════════════════════

def _facts(emails=(), icebreaker="Hi", company="Acme", retries=0):
    return EnrichmentFacts.build(emails, icebreaker, company, retries)


class TestDeriveTargetStatus:
    def test_enriched_needs_all_three(self):
        assert derive_target_status(_facts(["jane@x.com"]), 3) == "enriched"
        assert derive_target_status(_facts(["jane@x.com"], icebreaker=None), 3) == "enriching"
        assert derive_target_status(_facts(["jane@x.com"], company="  "), 3) == "enriching"

    def test_mixed_contacts_enriched(self):
        assert derive_target_status(_facts(["info@x.com", "jane@x.com"]), 3) == "enriched"

    def test_only_role_contacts_go_to_review(self):
        assert derive_target_status(_facts(["info@x.com", "sales@x.com"]), 3) == "review"

    def test_no_contacts_retries_left(self):
        assert derive_target_status(_facts(retries=2), 3) == "enriching"

    def test_no_contacts_retries_exhausted(self):
        assert derive_target_status(_facts(retries=3), 3) == "review"

    def test_acceptable_but_missing_icebreaker_exhausted(self):
        facts = _facts(["jane@x.com"], icebreaker=None, retries=3)
        assert derive_target_status(facts, 3) == "review"


class TestResolveRepairStatus:
    def test_enriched_kept_when_predicate_holds(self):
        assert resolve_repair_status("enriched", _facts(["jane@x.com"]), max_retries=3) == "enriched"

    def test_enriched_demoted_when_predicate_fails(self):
        facts = _facts(["info@x.com"])
        assert resolve_repair_status("enriched", facts, max_retries=3) == "review"

    def test_leave_enriching_goes_to_review(self):
        facts = _facts(retries=0)
        assert resolve_repair_status("enriching", facts, max_retries=3) == "enriching"
        assert resolve_repair_status(
            "enriching", facts, leave_enriching=True, max_retries=3
        ) == "review"

    def test_leave_enriching_still_promotes(self):
        facts = _facts(["jane@x.com"])
        assert resolve_repair_status(
            "enriching", facts, leave_enriching=True, max_retries=3
        ) == "enriched"


# ═══════════════════════════════════════════════════════════
# LOCK STALENESS
# ═══════════════════════════════════════════════════════════

class TestIsStale:
    def test_none_is_not_stale(self):
        assert not is_stale(None, 10)

    def test_exactly_at_threshold_is_live(self):
        now = utcnow()
        assert not is_stale(now - timedelta(minutes=10), 10, now=now)

    def test_past_threshold_is_stale(self):
        now = utcnow()
        assert is_stale(now - timedelta(minutes=10, seconds=1), 10, now=now)

    def test_naive_timestamps_are_utc(self):
        now = utcnow()
        naive = (now - timedelta(minutes=30)).replace(tzinfo=None)
        assert is_stale(naive, 10, now=now)


# ═══════════════════════════════════════════════════════════
# PROVIDER STATUS MAPPING
# ═══════════════════════════════════════════════════════════

class TestRaiseForStatus:
    def test_ok_passes(self):
        _raise_for_status(200, "{}", "AI API")

    def test_retry_after_header_carried(self):
        with pytest.raises(ProviderRateLimited) as exc:
            _raise_for_status(429, "slow down", "AI API", "42")
        assert exc.value.retry_after == 42

    def test_retry_after_from_message(self):
        with pytest.raises(ProviderRateLimited) as exc:
            _raise_for_status(429, "Rate limit reached. Please wait 17 seconds.", "AI API")
        assert exc.value.retry_after == 17

    def test_http_date_retry_after_ignored(self):
        with pytest.raises(ProviderRateLimited) as exc:
            _raise_for_status(429, "slow down", "AI API", "Wed, 21 Oct 2026 07:28:00 GMT")
        assert exc.value.retry_after is None

    @pytest.mark.parametrize("status,error", [
        (402, ProviderQuotaExhausted),
        (401, ConfigurationError),
        (403, ConfigurationError),
        (500, ProviderError),
    ])
    def test_other_statuses(self, status, error):
        with pytest.raises(error):
            _raise_for_status(status, "nope", "AI API")
