"""
Prospect Enrichment Service — Exception taxonomy.

Expected/retryable:  LockContention, ProviderError, ProviderRateLimited
Fatal/config:        ProviderQuotaExhausted, ConfigurationError
"""


class EnrichmentError(Exception):
    """Base class for every pipeline error."""


class ProspectNotFound(EnrichmentError):
    def __init__(self, prospect_id: str):
        super().__init__(f"Prospect {prospect_id} not found")
        self.prospect_id = prospect_id


class JobNotFound(EnrichmentError):
    def __init__(self, job_id: str):
        super().__init__(f"Enrichment job {job_id} not found")
        self.job_id = job_id


class LockContention(EnrichmentError):
    """A live enrichment lock is held on the prospect."""

    def __init__(self, prospect_id: str, locked_by: str | None = None):
        msg = f"Prospect {prospect_id} is locked"
        if locked_by:
            msg += f" by {locked_by}"
        super().__init__(msg)
        self.prospect_id = prospect_id
        self.locked_by = locked_by


class InvalidTransition(EnrichmentError):
    def __init__(self, old_status: str, new_status: str):
        super().__init__(f"Illegal status transition {old_status} → {new_status}")
        self.old_status = old_status
        self.new_status = new_status


class ProviderError(EnrichmentError):
    """Transient lookup / AI / network failure. Counts against the retry budget."""


class ProviderRateLimited(ProviderError):
    """HTTP 429 from the provider. Halts dispatch, never counts against retries."""

    status_code = 429

    def __init__(self, message: str = "Provider rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderQuotaExhausted(ProviderError):
    """HTTP 402 (credits exhausted). Aborts the batch."""

    status_code = 402


class ConfigurationError(EnrichmentError):
    """Missing or rejected credentials. Aborts before any dispatch."""
