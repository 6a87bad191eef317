"""
Enrichment pipeline — Sales-acceptable email classification.

An email is sales-acceptable iff it is well-formed, its local part is not a
role/compliance mailbox, and its domain is not institutional (.gov/.edu/.mil).
Personal mailboxes (gmail.com, yahoo.com, …) ARE acceptable.
"""

import re
from email.utils import parseaddr
from typing import Iterable, Optional

# ─── Constants ─────────────────────────────────────────────────────────
EMAIL_REGEX = re.compile(
    r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}",
)

# Role mailboxes nobody reads for sales outreach
ROLE_PREFIXES = {
    "info", "contact", "admin", "support", "help", "sales", "marketing",
    "legal", "privacy", "supplier", "billing", "accounts", "finance", "hr",
    "jobs", "careers", "noreply", "webmaster", "postmaster", "abuse", "security",
    # compliance / technical bounce addresses
    "compliance", "counsel", "attorney", "dmca", "no-reply", "donotreply",
    "bounce", "unsubscribe", "mailer-daemon",
}

INSTITUTIONAL_SUFFIXES = (".gov", ".edu", ".mil")

def _split(email: str) -> tuple[str, str]:
    local, _, domain = email.strip().lower().rpartition("@")
    return local, domain


def is_valid_email_format(email: str) -> bool:
    """Check basic email format validity."""
    if not email or len(email) > 254:
        return False
    _, addr = parseaddr(email.strip())
    if not addr:
        return False
    return bool(EMAIL_REGEX.fullmatch(addr))


def is_role_email(email: str) -> bool:
    """True when the local part is a role prefix, alone or followed by '.' / '-'."""
    local, _ = _split(email)
    if local in ROLE_PREFIXES:
        return True
    return any(
        local.startswith(prefix + ".") or local.startswith(prefix + "-")
        for prefix in ROLE_PREFIXES
    )


def is_institutional_domain(email: str) -> bool:
    _, domain = _split(email)
    return domain.endswith(INSTITUTIONAL_SUFFIXES)


def rejection_reason(email: Optional[str]) -> Optional[str]:
    """Why an email is not sales-acceptable, or None when it is."""
    if not email or not email.strip():
        return "empty"
    if not is_valid_email_format(email):
        return "invalid format"
    if is_role_email(email):
        return f"role mailbox ({_split(email)[0]}@)"
    if is_institutional_domain(email):
        return f"institutional domain ({_split(email)[1]})"
    return None


def is_sales_acceptable(email: Optional[str]) -> bool:
    return rejection_reason(email) is None


def count_acceptable(emails: Iterable[Optional[str]]) -> int:
    """Number of distinct sales-acceptable emails."""
    return len({e.strip().lower() for e in emails if is_sales_acceptable(e)})
