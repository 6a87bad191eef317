"""
Enrichment pipeline — Website scraper.

Fetches the homepage plus the usual contact/about/team pages of a domain and
reduces each to plain text for the AI extractor. Tries the bare domain first
and falls back to the www. host when nothing answers.
"""

import asyncio
import logging
import re

import aiohttp
from bs4 import BeautifulSoup

from prospect_api.config import settings
from prospect_api.services.email_classifier import EMAIL_REGEX, is_valid_email_format

logger = logging.getLogger("enrichment.scraper")

# Pages likely to name the people behind the business
CONTACT_PATHS = ["", "/contact", "/contact-us", "/about", "/about-us", "/team"]

_WS = re.compile(r"\s+")


def html_to_text(html: str) -> str:
    """Visible text of an HTML page, whitespace collapsed."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript", "svg", "iframe"]):
        tag.decompose()
    return _WS.sub(" ", soup.get_text(" ", strip=True)).strip()


def find_emails(html: str) -> list[str]:
    """Emails from mailto: links and body text, in first-seen order."""
    soup = BeautifulSoup(html, "lxml")
    found: list[str] = []
    for link in soup.find_all("a", href=True):
        href = link["href"]
        if href.lower().startswith("mailto:"):
            email = href[7:].split("?")[0].strip().lower()
            if is_valid_email_format(email) and email not in found:
                found.append(email)
    for email in EMAIL_REGEX.findall(soup.get_text(" ")):
        email = email.lower()
        if is_valid_email_format(email) and email not in found:
            found.append(email)
    return found


async def _fetch(session: aiohttp.ClientSession, url: str) -> str | None:
    try:
        async with session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=settings.scrape_timeout),
            allow_redirects=True,
            headers={"User-Agent": settings.scrape_user_agent},
        ) as resp:
            if resp.status != 200:
                return None
            if "html" not in resp.headers.get("Content-Type", "text/html"):
                return None
            return await resp.text(errors="replace")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.debug("Scrape error on %s: %s", url, e)
        return None


async def scrape_website(domain: str) -> dict:
    """Scrape ``domain``. Returns {"pages": {url: text}, "emails": [...]}.

    An empty ``pages`` dict means the site could not be reached at all.
    """
    findings: dict = {"pages": {}, "emails": []}

    async with aiohttp.ClientSession() as session:
        for host in (domain, f"www.{domain}"):
            base_url = f"https://{host}"
            for path in CONTACT_PATHS:
                url = base_url + path
                html = await _fetch(session, url)
                if not html:
                    continue
                text = html_to_text(html)
                if text:
                    findings["pages"][url] = text
                for email in find_emails(html):
                    if email not in findings["emails"]:
                        findings["emails"].append(email)
            if findings["pages"]:
                break

    logger.info(
        "🌐 Scraped %s: %d pages, %d emails",
        domain, len(findings["pages"]), len(findings["emails"]),
    )
    return findings


def combine_pages(pages: dict[str, str], max_chars: int | None = None) -> str:
    """Concatenate page texts with URL headers, truncated for the AI prompt."""
    limit = max_chars or settings.scrape_max_chars
    parts = [f"=== {url} ===\n{text}" for url, text in pages.items()]
    return "\n\n".join(parts)[:limit]
