"""
Enrichment pipeline — batch job tracking models.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from prospect_api.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


JOB_ITEM_TERMINAL = ("success", "failed", "rate_limited", "stopped")
JOB_ITEM_IN_FLIGHT = ("pending", "processing")


class EnrichmentJob(Base):
    """One batch run of the orchestrator."""

    __tablename__ = "enrichment_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = Column(String(10), nullable=False, default="manual")  # manual, auto
    status = Column(String(20), nullable=False, default="queued")  # queued, running, completed, failed
    worker_id = Column(String(100), nullable=False)  # lock owner for every item in the job

    total_count = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)

    stopped_reason = Column(String(50))
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    items = relationship(
        "EnrichmentJobItem",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="EnrichmentJobItem.created_at",
        lazy="selectin",
    )

    def recount(self) -> None:
        """Recompute counters from item statuses (the only place they are written)."""
        statuses = [item.status for item in self.items]
        self.processed_count = sum(1 for s in statuses if s in JOB_ITEM_TERMINAL)
        self.success_count = sum(1 for s in statuses if s == "success")
        self.failed_count = self.processed_count - self.success_count

    @property
    def all_items_terminal(self) -> bool:
        return all(item.status in JOB_ITEM_TERMINAL for item in self.items)

    def __repr__(self):
        return f"<EnrichmentJob {self.id} [{self.status}] {self.processed_count}/{self.total_count}>"


class EnrichmentJobItem(Base):
    """One prospect inside a batch run."""

    __tablename__ = "enrichment_job_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(
        String(36), ForeignKey("enrichment_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    prospect_id = Column(String(36), nullable=False, index=True)
    domain = Column(String(255))

    # pending, processing, success, failed, rate_limited, stopped
    status = Column(String(20), nullable=False, default="pending")
    contacts_found = Column(Integer, default=0)
    has_emails = Column(Boolean, default=False)
    error_message = Column(Text)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    job = relationship("EnrichmentJob", back_populates="items")

    def finish(self, status: str, error: str | None = None) -> None:
        self.status = status
        self.completed_at = _utcnow()
        if error:
            self.error_message = error[:1000]


class EnrichmentSettings(Base):
    """Singleton row — auto-enrichment toggle and running totals."""

    __tablename__ = "enrichment_settings"

    id = Column(Integer, primary_key=True, default=1)
    auto_enrichment_enabled = Column(Boolean, nullable=False, default=True)
    total_enriched = Column(Integer, nullable=False, default=0)
    total_failed = Column(Integer, nullable=False, default=0)
    last_run_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


async def sync_job_counters(db, job_id: str) -> EnrichmentJob | None:
    """Recount a job from its items and complete it once every item is terminal."""
    job = await db.get(EnrichmentJob, job_id)
    if job is None:
        return None
    job.recount()
    job.updated_at = _utcnow()
    if job.status == "running" and job.items and job.all_items_terminal:
        job.status = "completed"
        job.completed_at = _utcnow()
    return job


async def get_or_create_settings(db) -> EnrichmentSettings:
    """Load the singleton settings row, creating it on first use."""
    row = await db.get(EnrichmentSettings, 1)
    if row is None:
        row = EnrichmentSettings(
            id=1, auto_enrichment_enabled=True, total_enriched=0, total_failed=0, last_run_at=None
        )
        db.add(row)
        await db.flush()
    return row
