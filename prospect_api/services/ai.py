"""
Enrichment pipeline — AI API service.
Multi-provider: OpenAI-compatible (GitHub Models) and Anthropic (Claude).
Async with retry on transient errors; rate limits and exhausted credits are
surfaced as distinct exceptions instead of being retried away.
"""

import json
import re
import asyncio
import logging

import aiohttp

from prospect_api.config import settings
from prospect_api.errors import (
    ConfigurationError,
    ProviderError,
    ProviderQuotaExhausted,
    ProviderRateLimited,
)

logger = logging.getLogger("enrichment.ai")

TIMEOUT = aiohttp.ClientTimeout(total=90)

# Anthropic API version header
ANTHROPIC_VERSION = "2023-06-01"


def ensure_configured() -> None:
    """Raise ConfigurationError when no credentials are set for the provider."""
    if not settings.ai_auth_token:
        if settings.ai_provider == "anthropic":
            raise ConfigurationError("ANTHROPIC_API_KEY not set — cannot call Claude API")
        raise ConfigurationError("AI_TOKEN not set — cannot call AI API")


async def call_ai(
    messages: list[dict],
    temperature: float = 0.3,
    max_tokens: int = 2000,
    model: str | None = None,
    retries: int = 2,
) -> str:
    """Call AI chat completion API with retry logic.

    Transient failures (5xx, network) are retried ``retries`` times and then
    raised as ProviderError. 429 → ProviderRateLimited and 402 →
    ProviderQuotaExhausted are raised immediately.
    """
    ensure_configured()
    token = settings.ai_auth_token
    used_model = model or settings.ai_effective_model
    last_err: Exception | None = None

    for attempt in range(1, retries + 2):
        try:
            return await _request(messages, temperature, max_tokens, used_model, token)
        except (ProviderRateLimited, ProviderQuotaExhausted, ConfigurationError):
            raise
        except (ProviderError, aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as err:
            last_err = err
            if attempt <= retries:
                wait = attempt * 2
                logger.warning(f"AI retry {attempt}/{retries} — waiting {wait}s ({err})")
                await asyncio.sleep(wait)

    if isinstance(last_err, ProviderError):
        raise last_err
    raise ProviderError(f"AI request failed: {last_err}") from last_err


def _retry_after(header: str | None, body: str) -> float | None:
    """Seconds to wait, from the Retry-After header or a "wait N seconds" message."""
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass  # HTTP-date form
    wait_match = re.search(r"wait\s+(\d+)\s+second", body, re.I)
    if wait_match:
        return float(wait_match.group(1))
    return None


def _raise_for_status(
    status: int, body: str, provider: str, retry_after: str | None = None
) -> None:
    if status == 200:
        return
    snippet = body[:500]
    if status == 429:
        raise ProviderRateLimited(
            f"{provider} rate limited (HTTP 429): {snippet}",
            retry_after=_retry_after(retry_after, body),
        )
    if status == 402:
        raise ProviderQuotaExhausted(f"{provider} credits exhausted (HTTP 402): {snippet}")
    if status in (401, 403):
        raise ConfigurationError(f"{provider} rejected credentials (HTTP {status}): {snippet}")
    raise ProviderError(f"{provider} HTTP {status}: {snippet}")


async def _request(
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    model: str,
    token: str,
) -> str:
    """Dispatch to the correct provider."""
    if settings.ai_provider == "anthropic":
        return await _request_anthropic(messages, temperature, max_tokens, model, token)
    return await _request_openai(messages, temperature, max_tokens, model, token)


async def _request_openai(
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    model: str,
    token: str,
) -> str:
    """OpenAI-compatible chat completions endpoint."""
    payload = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
        async with session.post(
            settings.ai_effective_url, json=payload, headers=headers
        ) as resp:
            body = await resp.text()
            _raise_for_status(resp.status, body, "AI API", resp.headers.get("Retry-After"))
            data = json.loads(body)
            content = data.get("choices", [{}])[0].get("message", {}).get("content", "")
            return strip_fences(content)


async def _request_anthropic(
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    model: str,
    token: str,
) -> str:
    """Anthropic Messages API (Claude).

    - system prompt is a top-level field, not in messages
    - header uses x-api-key instead of Authorization Bearer
    - response is content[0].text instead of choices[0].message.content
    """
    system_parts: list[str] = []
    user_messages: list[dict] = []
    for msg in messages:
        if msg.get("role") == "system":
            system_parts.append(msg["content"])
        else:
            user_messages.append(msg)

    payload: dict = {
        "model": model,
        "messages": user_messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if system_parts:
        payload["system"] = "\n\n".join(system_parts)

    headers = {
        "x-api-key": token,
        "anthropic-version": ANTHROPIC_VERSION,
        "Content-Type": "application/json",
    }

    async with aiohttp.ClientSession(timeout=TIMEOUT) as session:
        async with session.post(
            settings.ai_effective_url, json=payload, headers=headers
        ) as resp:
            body = await resp.text()
            _raise_for_status(resp.status, body, "Anthropic API",
                              resp.headers.get("Retry-After"))
            data = json.loads(body)
            blocks = data.get("content", [])
            return strip_fences("\n".join(b["text"] for b in blocks if b.get("type") == "text"))


# ── Parsing helpers ─────────────────────────────────────────────


def strip_fences(text: str) -> str:
    """Remove markdown code fences."""
    text = re.sub(r"^```(?:json|text)?\s*\n?", "", text, flags=re.MULTILINE)
    text = re.sub(r"^```\s*$", "", text, flags=re.MULTILINE)
    return text.strip()


def extract_json(text: str) -> dict:
    """Extract JSON object from AI response."""
    cleaned = strip_fences(text)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Try outermost { ... }
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            pass

    raise ValueError(f"Could not extract JSON from AI response:\n{cleaned[:300]}…")
