"""
Enrichment pipeline — Domain viability check.

Only US-market domains are worth enriching. Country-code TLDs outside the US
and institutional domains are marked not_viable instead of burning AI calls.
"""

import re
from typing import Optional

DOMAIN_REGEX = re.compile(r"^(?=.{4,253}$)([a-z0-9](?:[a-z0-9\-]{0,61}[a-z0-9])?\.)+[a-z]{2,24}$")

BLOCKED_SUFFIXES = (
    # UK / Commonwealth
    ".uk", ".au", ".ca", ".nz", ".ie",
    # Europe
    ".eu", ".de", ".fr", ".nl", ".be", ".es", ".it", ".ch", ".at", ".se",
    ".no", ".dk", ".fi", ".pt", ".gr", ".pl", ".cz", ".ro", ".ru", ".ua",
    ".by", ".lt", ".lv", ".ee", ".bg", ".hr", ".rs", ".si",
    # Asia / Middle East
    ".jp", ".cn", ".in", ".sg", ".hk", ".kr", ".tw", ".my", ".th", ".id",
    ".ph", ".vn", ".ae", ".sa", ".il", ".tr",
    # Latin America / Africa
    ".mx", ".br", ".ar", ".cl", ".pe", ".ve", ".za", ".ng", ".eg", ".ke",
    # Institutional
    ".gov", ".edu", ".mil",
)

# .co is treated as a generic startup TLD, not Colombia
ALLOWED_SUFFIXES = (".com", ".net", ".org", ".io", ".co", ".us", ".biz", ".ai", ".app")


def clean_domain(raw: str) -> str:
    """'https://www.Example.com/about' → 'example.com'."""
    d = (raw or "").strip().lower()
    d = re.sub(r"^[a-z]+://", "", d)
    d = re.sub(r"^www\.", "", d)
    return d.split("/")[0].split("?")[0].split(":")[0]


def validate_domain(raw: str) -> tuple[bool, Optional[str]]:
    """Return (viable, reason). reason is None when viable."""
    domain = clean_domain(raw)
    if not domain:
        return False, "Empty domain"
    if not DOMAIN_REGEX.match(domain):
        return False, f"Malformed domain: {domain}"
    for suffix in BLOCKED_SUFFIXES:
        if domain.endswith(suffix):
            return False, f"Non-US domain ({suffix}) — not viable for outreach"
    if not domain.endswith(ALLOWED_SUFFIXES):
        return False, f"Unrecognised TLD: {domain.rsplit('.', 1)[-1]}"
    return True, None


def is_viable_domain(raw: str) -> bool:
    return validate_domain(raw)[0]
