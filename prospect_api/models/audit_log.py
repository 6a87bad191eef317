"""
Enrichment pipeline — Audit Log model.
Every state mutation the pipeline performs lands here.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, String, Text

from prospect_api.database import Base


class AuditLog(Base):
    """Append-only audit trail of field changes."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # What record changed
    table_name = Column(String(50), nullable=False)     # "prospect_activities", "enrichment_jobs"
    record_id = Column(String(36), nullable=False)

    # What happened
    action_type = Column(String(30), nullable=False)    # STATUS_CHANGE, RECONCILE, LOCK_RELEASE, ...
    field_name = Column(String(50))
    old_value = Column(Text)
    new_value = Column(Text)
    business_context = Column(Text, default="")

    # Who did it
    changed_by = Column(String(100), default="system")  # "system", "batch:<job>", "admin"

    changed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_audit_logs_record", "table_name", "record_id"),
        Index("ix_audit_logs_action_changed", "action_type", "changed_at"),
    )

    def __repr__(self):
        return f"<AuditLog {self.table_name}/{self.record_id} — {self.action_type} {self.field_name}>"
