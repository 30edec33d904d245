"""
Compliance Obligation & Review Engine
Obligation instance models.

Models:
    - ObligationInstance: one filing owed by one entity for one period
    - ObligationTransition: append-only status change log
    - ObligationDocument: document metadata kept by the built-in document store
    - Reminder: one computed nudge per (instance, fires_at, channel)

Status lifecycle:
    scheduled → in_progress → submitted_for_review
        → approved → closed
        → rejected / rework_required → in_progress (bounded) | escalated
    escalated → in_progress | closed   (manual intervention)
"""

from datetime import datetime, timezone

from compliance_engine.models import db
from compliance_engine.utils.helpers import as_utc


# ── Constants ────────────────────────────────────────────────────────────────

OBLIGATION_STATUSES = (
    "scheduled", "in_progress", "submitted_for_review",
    "approved", "rejected", "rework_required", "escalated", "closed",
)

OBLIGATION_TRANSITIONS = {
    "scheduled":            ["in_progress"],
    "in_progress":          ["submitted_for_review"],
    "submitted_for_review": ["approved", "rejected", "rework_required"],
    "approved":             ["closed"],
    "rejected":             ["in_progress", "escalated"],
    "rework_required":      ["in_progress", "escalated"],
    "escalated":            ["in_progress", "closed"],
    "closed":               [],
}

# SLA breach is not reported once the work has been accepted
SLA_SETTLED_STATUSES = frozenset({"approved", "closed"})

REMINDER_KINDS = ("t_minus", "fixed_day")
REMINDER_STATUSES = ("pending", "dispatched", "failed", "cancelled")

# Reminders still make sense only while the obligation waits on the assignee
REMINDABLE_STATUSES = frozenset({"scheduled", "in_progress", "rejected", "rework_required"})


def validate_obligation_transition(old_status, new_status):
    """Return True if ObligationInstance status transition is valid."""
    return new_status in OBLIGATION_TRANSITIONS.get(old_status, [])


class ObligationInstance(db.Model):
    """
    A concrete obligation for (service, entity, period).

    ``rule_id`` and ``template_id`` capture the rule and workflow version in
    force at creation; later configuration changes never touch existing rows.
    SLA breach is derived on read, never stored.
    """

    __tablename__ = "obligation_instances"
    __table_args__ = (
        db.UniqueConstraint("service_key", "entity_id", "period_key",
                            name="uq_obligation_service_entity_period"),
        db.Index("ix_obligation_status_due", "status", "due_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    service_key = db.Column(db.String(64), db.ForeignKey("service_definitions.service_key"),
                            nullable=False, index=True)
    entity_id = db.Column(db.Integer, db.ForeignKey("compliance_entities.id"),
                          nullable=False, index=True)
    period_key = db.Column(db.String(20), nullable=False,
                           comment="2025-03 | 2025-Q1 | 2025 | 2025-03-14")
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    periodicity = db.Column(db.String(20), nullable=False, comment="Copied from the governing rule")
    jurisdiction = db.Column(db.String(10), nullable=False)

    due_date = db.Column(db.Date, nullable=False)
    reminder_dates = db.Column(db.JSON, default=list, comment="ISO timestamps, sorted")
    sla_deadline = db.Column(db.DateTime(timezone=True), nullable=False)

    rule_id = db.Column(db.Integer, db.ForeignKey("due_date_rules.id"), nullable=False)
    template_id = db.Column(db.Integer, db.ForeignKey("workflow_templates.id"), nullable=False)

    current_step_key = db.Column(db.String(64), nullable=True)
    completed_steps = db.Column(db.JSON, default=list)
    status = db.Column(db.String(30), nullable=False, default="scheduled")

    rework_count = db.Column(db.Integer, nullable=False, default=0)
    rework_instructions = db.Column(db.Text, nullable=True)
    quality_score = db.Column(db.Integer, nullable=True)
    assignee_id = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    entity = db.relationship("ComplianceEntity", lazy="joined")
    template = db.relationship("WorkflowTemplate", lazy="select")
    rule = db.relationship("DueDateRule", lazy="select")
    transitions = db.relationship(
        "ObligationTransition", backref="instance", lazy="select",
        order_by="ObligationTransition.id",
    )
    reminders = db.relationship(
        "Reminder", backref="instance", lazy="select",
        order_by="Reminder.fires_at",
    )

    def is_sla_breached(self, now=None) -> bool:
        if self.status in SLA_SETTLED_STATUSES or self.sla_deadline is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now > as_utc(self.sla_deadline)

    @property
    def sla_breached(self) -> bool:
        return self.is_sla_breached()

    def to_dict(self, include_reminders=False):
        result = {
            "id": self.id,
            "service_key": self.service_key,
            "entity_id": self.entity_id,
            "period_key": self.period_key,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "periodicity": self.periodicity,
            "jurisdiction": self.jurisdiction,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "reminder_dates": self.reminder_dates or [],
            "sla_deadline": as_utc(self.sla_deadline).isoformat() if self.sla_deadline else None,
            "sla_breached": self.sla_breached,
            "rule_id": self.rule_id,
            "template_id": self.template_id,
            "current_step_key": self.current_step_key,
            "completed_steps": self.completed_steps or [],
            "status": self.status,
            "rework_count": self.rework_count,
            "rework_instructions": self.rework_instructions,
            "quality_score": self.quality_score,
            "assignee_id": self.assignee_id,
            "is_archived": self.archived_at is not None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }
        if include_reminders:
            result["reminders"] = [r.to_dict() for r in self.reminders]
        return result

    def __repr__(self):
        return f"<ObligationInstance {self.id}: {self.service_key}/{self.entity_id}/{self.period_key} [{self.status}]>"


class ObligationTransition(db.Model):
    """Append-only audit log of every status change on an obligation."""

    __tablename__ = "obligation_transitions"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("obligation_instances.id"),
                            nullable=False, index=True)
    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=False)
    actor_id = db.Column(db.String(150), nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "note": self.note,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ObligationTransition {self.instance_id}: {self.from_status} → {self.to_status}>"


class ObligationDocument(db.Model):
    """Metadata for a document uploaded against an obligation; the blob lives elsewhere."""

    __tablename__ = "obligation_documents"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "doctype", name="uq_document_instance_doctype"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("obligation_instances.id"),
                            nullable=False, index=True)
    doctype = db.Column(db.String(64), nullable=False)
    storage_ref = db.Column(db.String(500), nullable=False, comment="Opaque blob store reference")
    verified = db.Column(db.Boolean, nullable=False, default=False)
    uploaded_by = db.Column(db.String(150), nullable=True)
    uploaded_at = db.Column(db.DateTime(timezone=True),
                            default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "doctype": self.doctype,
            "storage_ref": self.storage_ref,
            "verified": self.verified,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }

    def __repr__(self):
        return f"<ObligationDocument {self.instance_id}:{self.doctype}>"


class Reminder(db.Model):
    """
    One nudge for an obligation.

    Dispatch is at-least-once: failed rows stay ``failed`` with the error and
    are picked up again by the next tick.
    """

    __tablename__ = "obligation_reminders"
    __table_args__ = (
        db.UniqueConstraint("instance_id", "fires_at", "channel",
                            name="uq_reminder_instance_fires_channel"),
        db.Index("ix_reminder_status_fires", "status", "fires_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("obligation_instances.id"),
                            nullable=False, index=True)
    fires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    channel = db.Column(db.String(20), nullable=False, default="email")
    kind = db.Column(db.String(20), nullable=False, comment="t_minus | fixed_day")
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending | dispatched | failed | cancelled")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "fires_at": as_utc(self.fires_at).isoformat() if self.fires_at else None,
            "channel": self.channel,
            "kind": self.kind,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
        }

    def __repr__(self):
        return f"<Reminder {self.instance_id}@{self.fires_at} [{self.status}]>"
