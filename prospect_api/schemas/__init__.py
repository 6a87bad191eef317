"""
Prospect Enrichment Service — Pydantic request/response schemas.

Wire format is camelCase (aliases); Python attributes stay snake_case.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ProspectStatus(str, Enum):
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


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class _CamelModel(BaseModel):
    model_config = {"populate_by_name": True, "from_attributes": True}


# ── Prospects ───────────────────────────────────────────

class ProspectCreate(_CamelModel):
    domain: str = Field(..., min_length=4, max_length=255)
    company_name: str | None = Field(None, alias="companyName", max_length=255)
    source: str = Field("manual", pattern="^(manual|warm_inbound|bulk_import)$")


class ContactOut(_CamelModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    title: str | None = None
    is_primary: bool = Field(False, alias="isPrimary")


class ProspectOut(_CamelModel):
    id: str
    domain: str
    status: ProspectStatus
    source: str | None = None
    contact_count: int = Field(0, alias="contactCount")
    icebreaker_text: str | None = Field(None, alias="icebreakerText")
    enrichment_retry_count: int = Field(0, alias="enrichmentRetryCount")
    enrichment_attempts: int = Field(0, alias="enrichmentAttempts")
    last_enrichment_attempt: datetime | None = Field(None, alias="lastEnrichmentAttempt")
    enrichment_locked_at: datetime | None = Field(None, alias="enrichmentLockedAt")
    enrichment_locked_by: str | None = Field(None, alias="enrichmentLockedBy")
    created_at: datetime | None = Field(None, alias="createdAt")
    updated_at: datetime | None = Field(None, alias="updatedAt")
    contacts: list[ContactOut] = []


class StatusUpdateRequest(_CamelModel):
    # str (not ProspectStatus) so legacy values like "qualified" can be mapped
    status: str = Field(..., min_length=2, max_length=30)
    reason: str = Field("", max_length=500)
    changed_by: str = Field("admin", alias="changedBy", max_length=100)


# ── Enrichment ──────────────────────────────────────────

class BatchRequest(_CamelModel):
    max_items: int | None = Field(None, alias="maxItems", ge=1, le=100)
    source: str = Field("auto", pattern="^(auto|review)$")


class BatchResultEntry(_CamelModel):
    prospect_id: str = Field(..., alias="prospectId")
    domain: str | None = None
    status: str
    reason: str | None = None
    item_id: str | None = Field(None, alias="itemId")


class BatchResponse(_CamelModel):
    job_id: str = Field(..., alias="jobId")
    queued: int
    skipped: int
    results: list[BatchResultEntry] = []


class SingleEnrichResponse(_CamelModel):
    status: str | None
    contacts_found: int = Field(..., alias="contactsFound")
    has_emails: bool = Field(..., alias="hasEmails")


class StatsResponse(_CamelModel):
    queue_count: int = Field(..., alias="queueCount")
    needs_review_count: int = Field(..., alias="needsReviewCount")
    last24h_attempts: int = Field(..., alias="last24hAttempts")
    last24h_successful: int = Field(..., alias="last24hSuccessful")
    total_enriched: int = Field(..., alias="totalEnriched")
    failed_count: int = Field(0, alias="failedCount")
    last_run_at: str | None = Field(None, alias="lastRunAt")
    auto_enrichment_enabled: bool = Field(True, alias="autoEnrichmentEnabled")
    pending_dispatch: int = Field(0, alias="pendingDispatch")
    rate_limited_for_seconds: int = Field(0, alias="rateLimitedForSeconds")


class GracefulStopResponse(_CamelModel):
    enriched: int
    no_contacts: int = Field(..., alias="noContacts")
    failed: int
    stopped: int


class ReconcileResponse(_CamelModel):
    promoted: int
    moved_to_review: int = Field(..., alias="movedToReview")
    reset_to_enriching: int = Field(..., alias="resetToEnriching")
    already_correct: int = Field(..., alias="alreadyCorrect")
    contact_count_fixed: int = Field(0, alias="contactCountFixed")
    skipped_locked: int = Field(0, alias="skippedLocked")


class StuckLockSweepResponse(_CamelModel):
    released: int
    status_changed: int = Field(..., alias="statusChanged")
    items_failed: int = Field(0, alias="itemsFailed")


class StuckJobSweepResponse(_CamelModel):
    jobs_failed: int = Field(..., alias="jobsFailed")
    items_failed: int = Field(..., alias="itemsFailed")
    locks_released: int = Field(..., alias="locksReleased")


class JobItemOut(_CamelModel):
    id: str
    prospect_id: str = Field(..., alias="prospectId")
    domain: str | None = None
    status: str
    contacts_found: int = Field(0, alias="contactsFound")
    has_emails: bool = Field(False, alias="hasEmails")
    error_message: str | None = Field(None, alias="errorMessage")
    started_at: datetime | None = Field(None, alias="startedAt")
    completed_at: datetime | None = Field(None, alias="completedAt")


class JobOut(_CamelModel):
    id: str
    job_type: str = Field(..., alias="jobType")
    status: JobStatus
    total_count: int = Field(0, alias="totalCount")
    processed_count: int = Field(0, alias="processedCount")
    success_count: int = Field(0, alias="successCount")
    failed_count: int = Field(0, alias="failedCount")
    stopped_reason: str | None = Field(None, alias="stoppedReason")
    error_message: str | None = Field(None, alias="errorMessage")
    started_at: datetime | None = Field(None, alias="startedAt")
    completed_at: datetime | None = Field(None, alias="completedAt")


class JobDetailOut(JobOut):
    items: list[JobItemOut] = []


class JobListResponse(BaseModel):
    jobs: list[JobOut]
    total: int


class EnrichmentSettingsOut(_CamelModel):
    auto_enrichment_enabled: bool = Field(..., alias="autoEnrichmentEnabled")
    total_enriched: int = Field(0, alias="totalEnriched")
    total_failed: int = Field(0, alias="totalFailed")
    last_run_at: datetime | None = Field(None, alias="lastRunAt")


class EnrichmentSettingsUpdate(_CamelModel):
    auto_enrichment_enabled: bool = Field(..., alias="autoEnrichmentEnabled")


# ── Audit ───────────────────────────────────────────────

class AuditLogOut(_CamelModel):
    id: str
    table: str = Field(..., validation_alias="table_name", serialization_alias="table")
    record_id: str = Field(..., alias="recordId")
    action_type: str = Field(..., alias="actionType")
    field_name: str | None = Field(None, alias="fieldName")
    old_value: str | None = Field(None, alias="oldValue")
    new_value: str | None = Field(None, alias="newValue")
    business_context: str | None = Field(None, alias="businessContext")
    changed_by: str | None = Field(None, alias="changedBy")
    changed_at: datetime | None = Field(None, alias="changedAt")


# ── System ──────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    queue_pending: int = 0
    queue_running: bool = False
