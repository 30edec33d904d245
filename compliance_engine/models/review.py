"""
Compliance Obligation & Review Engine
Quality review models.

Models:
    - QualityReview: weighted checklist review of one submitted obligation
    - QualityChecklistTemplate: per-service checklist used to seed reviews

A checklist item is stored as
``{"id", "category", "item", "status", "isMandatory", "weight"}`` with
``status`` in pending | passed | failed.
"""

from datetime import datetime, timezone

from compliance_engine.models import db
from compliance_engine.utils.helpers import as_utc


# ── Constants ────────────────────────────────────────────────────────────────

REVIEW_STATUSES = ("pending", "in_progress", "completed")
CHECKLIST_ITEM_STATUSES = ("pending", "passed", "failed")
DISPOSITIONS = ("approved", "rejected", "rework_required")

DEFAULT_APPROVAL_THRESHOLD = 80
DEFAULT_ESCALATION_THRESHOLD = 60

DEFAULT_CHECKLIST = [
    {"id": "doc_completeness", "category": "Documentation",
     "item": "All required documents are present and complete",
     "isMandatory": True, "weight": 20},
    {"id": "legal_compliance", "category": "Compliance",
     "item": "Filing meets all statutory and regulatory requirements",
     "isMandatory": True, "weight": 25},
    {"id": "data_accuracy", "category": "Quality",
     "item": "Figures reconcile with source registers and prior filings",
     "isMandatory": True, "weight": 20},
    {"id": "client_requirements", "category": "Requirements",
     "item": "Client-specific instructions have been followed",
     "isMandatory": True, "weight": 15},
    {"id": "formatting", "category": "Presentation",
     "item": "Deliverables follow the firm's formatting standards",
     "isMandatory": False, "weight": 10},
    {"id": "timeline_adherence", "category": "Process",
     "item": "Work was completed within the agreed timeline",
     "isMandatory": False, "weight": 10},
]


class QualityReview(db.Model):
    """
    Checklist review bound to one ObligationInstance.

    Invariant: disposition ``approved`` is never stored while a mandatory
    item has status ``failed``.
    """

    __tablename__ = "quality_reviews"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("obligation_instances.id"),
                            nullable=False, index=True)
    round = db.Column(db.Integer, nullable=False, default=1,
                      comment="1 for the first submission, +1 per rework loop")
    checklist = db.Column(db.JSON, nullable=False, default=list)
    quality_score = db.Column(db.Integer, nullable=True)
    approval_threshold = db.Column(db.Integer, nullable=False, default=DEFAULT_APPROVAL_THRESHOLD)
    reviewer_id = db.Column(db.String(150), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending | in_progress | completed")
    requested_disposition = db.Column(db.String(30), nullable=True)
    disposition = db.Column(db.String(30), nullable=True,
                            comment="approved | rejected | rework_required")
    review_notes = db.Column(db.Text, nullable=True)
    rework_instructions = db.Column(db.Text, nullable=True)

    review_started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sla_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    instance = db.relationship("ObligationInstance", backref=db.backref("reviews", lazy="select"))

    @property
    def review_minutes(self):
        if not (self.review_started_at and self.review_completed_at):
            return None
        delta = as_utc(self.review_completed_at) - as_utc(self.review_started_at)
        return delta.total_seconds() / 60

    @property
    def within_sla(self):
        if not (self.review_completed_at and self.sla_deadline):
            return None
        return as_utc(self.review_completed_at) <= as_utc(self.sla_deadline)

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "round": self.round,
            "checklist": self.checklist or [],
            "quality_score": self.quality_score,
            "approval_threshold": self.approval_threshold,
            "reviewer_id": self.reviewer_id,
            "status": self.status,
            "requested_disposition": self.requested_disposition,
            "disposition": self.disposition,
            "review_notes": self.review_notes,
            "rework_instructions": self.rework_instructions,
            "review_started_at": self.review_started_at.isoformat() if self.review_started_at else None,
            "review_completed_at": self.review_completed_at.isoformat() if self.review_completed_at else None,
            "sla_deadline": as_utc(self.sla_deadline).isoformat() if self.sla_deadline else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<QualityReview {self.id}: obligation={self.instance_id} [{self.status}]>"


class QualityChecklistTemplate(db.Model):
    """Per-service checklist seed; the built-in DEFAULT_CHECKLIST applies when none exists."""

    __tablename__ = "quality_checklist_templates"

    id = db.Column(db.Integer, primary_key=True)
    service_key = db.Column(db.String(64), db.ForeignKey("service_definitions.service_key"),
                            nullable=False, index=True)
    items = db.Column(db.JSON, nullable=False, default=list)
    approval_threshold = db.Column(db.Integer, nullable=False, default=DEFAULT_APPROVAL_THRESHOLD)
    # Display only; escalation is driven by MAX_REWORK_COUNT
    escalation_threshold = db.Column(db.Integer, nullable=False,
                                     default=DEFAULT_ESCALATION_THRESHOLD)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "service_key": self.service_key,
            "items": self.items or [],
            "approval_threshold": self.approval_threshold,
            "escalation_threshold": self.escalation_threshold,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<QualityChecklistTemplate {self.service_key}>"
