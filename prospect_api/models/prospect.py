"""
Enrichment pipeline — SQLAlchemy models for reports, prospects and contacts.

A Report is the domain under consideration; a ProspectActivity is the unit of
work moving through the enrichment/sales lifecycle; Contacts hang off the
prospect and die with it.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from prospect_api.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


def _uuid():
    return str(uuid.uuid4())


class Report(Base):
    """A domain selected for outreach."""

    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=_uuid)
    domain = Column(String(255), nullable=False, unique=True)
    company_name = Column(String(255))
    extracted_company_name = Column(String(255))  # written by the enrichment worker
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    prospect = relationship("ProspectActivity", back_populates="report", uselist=False)

    @property
    def known_company_name(self) -> str | None:
        return (self.company_name or self.extracted_company_name or "").strip() or None

    def __repr__(self):
        return f"<Report {self.domain}>"


class ProspectActivity(Base):
    """A prospect moving through new → enriching → enriched → contacted → closed."""

    __tablename__ = "prospect_activities"

    id = Column(String(36), primary_key=True, default=_uuid)
    report_id = Column(String(36), ForeignKey("reports.id", ondelete="CASCADE"), nullable=False)
    source = Column(String(30), default="manual")  # manual, warm_inbound, bulk_import

    # Status lifecycle (see services/status_machine.py)
    status = Column(String(20), nullable=False, default="new")

    # Enrichment results
    contact_count = Column(Integer, nullable=False, default=0)  # sales-acceptable emails only
    icebreaker_text = Column(Text)

    # Retry bookkeeping
    enrichment_retry_count = Column(Integer, nullable=False, default=0)
    enrichment_attempts = Column(Integer, nullable=False, default=0)
    last_enrichment_attempt = Column(DateTime(timezone=True))

    # Cooperative lock: both null ⇔ unlocked
    enrichment_locked_at = Column(DateTime(timezone=True))
    enrichment_locked_by = Column(String(100))

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    report = relationship("Report", back_populates="prospect", lazy="selectin")
    contacts = relationship(
        "Contact",
        back_populates="prospect",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_prospect_activities_status_updated", "status", "updated_at"),
    )

    @property
    def domain(self) -> str:
        return self.report.domain if self.report else ""

    def __repr__(self):
        return f"<ProspectActivity {self.id} [{self.status}]>"


class Contact(Base):
    """A person at the prospect's business."""

    __tablename__ = "contacts"

    id = Column(String(36), primary_key=True, default=_uuid)
    prospect_id = Column(
        String(36),
        ForeignKey("prospect_activities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255))
    email = Column(String(320))
    phone = Column(String(50))
    title = Column(String(255))
    is_primary = Column(Boolean, default=False)
    source = Column(String(30), default="enrichment")  # enrichment, manual
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    prospect = relationship("ProspectActivity", back_populates="contacts")

    def __repr__(self):
        return f"<Contact {self.name} <{self.email}>>"
