# mailla/db/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


# -------------------------
# Helpers
# -------------------------

def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


PHASE_GATHERING = "gathering_info"
PHASE_COMPLETED = "completed"


# -------------------------
# Base mixins
# -------------------------

class TimeStamped(SQLModel):
    """Common timestamps for auditing."""
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


# -------------------------
# Core entities
# -------------------------

class TriageConversationBase(SQLModel):
    org_id: str = Field(index=True, nullable=False, description="Multi-tenant isolation key")
    student_id: str = Field(index=True, nullable=False)
    initial_request: str = Field(nullable=False)

    # gathering_info -> completed, never backward
    current_phase: str = Field(default=PHASE_GATHERING, index=True)
    urgency_level: str = Field(default="normal")

    safety_flags: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    # [{role: student|mailla, message, timestamp, ...}]
    conversation_history: List[Dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    # Slot bag: building_name, room_number, issue_summary, timeline, severity,
    # student_email, student_phone, is_location_confirmed, property_id
    triage_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    smart_case_id: Optional[str] = Field(default=None, foreign_key="smart_case.id")
    is_complete: bool = Field(default=False)
    completed_at: Optional[datetime] = Field(default=None, nullable=True)


class TriageConversation(TriageConversationBase, TimeStamped, table=True):
    """One maintenance-triage chat; every turn lives in conversation_history."""
    __tablename__ = "triage_conversation"

    id: str = Field(default_factory=new_id, primary_key=True)


class SmartCaseBase(SQLModel):
    org_id: str = Field(index=True, nullable=False)
    case_number: str = Field(index=True, nullable=False)
    title: str
    description: str
    category: str = Field(default="general")
    priority: str = Field(default="Medium", description="Critical|High|Medium|Low")
    status: str = Field(default="New", index=True)
    reported_by: str = Field(index=True)
    building_name: Optional[str] = None
    room_number: Optional[str] = None
    property_id: Optional[str] = None
    student_email: Optional[str] = None
    student_phone: Optional[str] = None
    metadata_json: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON, nullable=True), description="Triage context snapshot"
    )
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)


class SmartCase(SmartCaseBase, table=True):
    """Maintenance case materialized once triage has enough information."""
    __tablename__ = "smart_case"

    id: str = Field(default_factory=new_id, primary_key=True)


class AuditLogBase(SQLModel):
    tenant_id: str = Field(index=True, nullable=False)
    action: str = Field(index=True, description="Action keyword (e.g., triage.turn, smart_case.create)")
    resource_type: str = Field(index=True, description="triage_conversation|smart_case|notification")
    resource_id: str = Field(index=True, description="ID of the target resource")
    meta_json: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON, nullable=True), description="Additional audit context"
    )
    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)


class AuditLog(AuditLogBase, table=True):
    """Immutable audit trail for compliance & debugging."""
    __tablename__ = "audit_log"

    id: str = Field(default_factory=new_id, primary_key=True)


# -------------------------
# Table indexes
# -------------------------

Index(
    "ix_conversation_org_student",
    TriageConversation.__table__.c.org_id,
    TriageConversation.__table__.c.student_id,
    TriageConversation.__table__.c.created_at,
)
Index(
    "ix_smart_case_org_created",
    SmartCase.__table__.c.org_id,
    SmartCase.__table__.c.created_at,
)
Index(
    "ix_audit_tenant_resource_time",
    AuditLog.__table__.c.tenant_id,
    AuditLog.__table__.c.resource_type,
    AuditLog.__table__.c.resource_id,
    AuditLog.__table__.c.created_at,
)
