from prospect_api.models.prospect import Report, ProspectActivity, Contact  # noqa: F401
from prospect_api.models.enrichment_job import (  # noqa: F401
    EnrichmentJob,
    EnrichmentJobItem,
    EnrichmentSettings,
)
from prospect_api.models.audit_log import AuditLog  # noqa: F401
