"""
Compliance Obligation & Review Engine
Workflow template models.

Models:
    - WorkflowTemplate: versioned step definitions per service
    - WorkflowPublication: single pointer to the published version per service
"""

from datetime import datetime, timezone

from compliance_engine.models import db


class WorkflowTemplate(db.Model):
    """
    One version of a service's workflow.

    Versions are numbered 1, 2, 3... per service and never auto-published.
    ``is_published`` mirrors ``WorkflowPublication.published_version`` and is
    rewritten in the same transaction as the pointer.
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (
        db.UniqueConstraint("service_key", "version", name="uq_template_service_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    service_key = db.Column(db.String(64), db.ForeignKey("service_definitions.service_key"),
                            nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False)
    steps_json = db.Column(db.JSON, nullable=False, default=list,
                           comment="[{stepKey, name, description, estimatedDays, assigneeRole, "
                                   "qaRequired, deliverables}]")
    sla_policy = db.Column(db.JSON, nullable=True,
                           comment="{totalDays, escalationRole, ...}")
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    author = db.Column(db.String(150), nullable=True)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    @property
    def step_keys(self) -> list[str]:
        return [s["stepKey"] for s in (self.steps_json or [])]

    def to_dict(self):
        return {
            "id": self.id,
            "service_key": self.service_key,
            "version": self.version,
            "steps": self.steps_json or [],
            "sla_policy": self.sla_policy,
            "is_published": self.is_published,
            "author": self.author,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        flag = " published" if self.is_published else ""
        return f"<WorkflowTemplate {self.service_key} v{self.version}{flag}>"


class WorkflowPublication(db.Model):
    """
    Compare-and-set pointer to the published template of a service.

    Every publish bumps ``revision`` with
    ``UPDATE ... WHERE revision = :seen``; a writer that loses the race sees
    zero affected rows and retries.
    """

    __tablename__ = "workflow_publications"

    service_key = db.Column(db.String(64), db.ForeignKey("service_definitions.service_key"),
                            primary_key=True)
    published_version = db.Column(db.Integer, nullable=True)
    revision = db.Column(db.Integer, nullable=False, default=0)
    published_by = db.Column(db.String(150), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "service_key": self.service_key,
            "published_version": self.published_version,
            "revision": self.revision,
            "published_by": self.published_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<WorkflowPublication {self.service_key} → v{self.published_version} (rev {self.revision})>"
