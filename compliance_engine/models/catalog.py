"""
Compliance Obligation & Review Engine
Service catalog models.

Models:
    - ServiceDefinition: a compliance service offered (GST returns, TDS, ROC...)
    - DocType: documents a service collects from the client or delivers back
    - ComplianceEntity: the business entity an obligation is owed by
    - EntityServiceBinding: subscribes an entity to a service
"""

from datetime import datetime, timezone

from compliance_engine.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PERIODICITIES = ("ONE_TIME", "MONTHLY", "QUARTERLY", "ANNUAL")


class ServiceDefinition(db.Model):
    """
    A compliance service the firm delivers.

    ``service_key`` is the immutable identity referenced by rules, templates
    and obligations. Services are never deleted, only deactivated.
    The ``periodicity`` here is descriptive; the governing due-date rule is
    the authority for timing.
    """

    __tablename__ = "service_definitions"

    id = db.Column(db.Integer, primary_key=True)
    service_key = db.Column(db.String(64), unique=True, nullable=False, index=True,
                            comment="Immutable key, e.g. gst_returns")
    name = db.Column(db.String(200), nullable=False)
    periodicity = db.Column(db.String(20), nullable=False, default="MONTHLY",
                            comment="ONE_TIME | MONTHLY | QUARTERLY | ANNUAL")
    category = db.Column(db.String(50), default="", comment="Tax, Payroll, Corporate, ...")
    description = db.Column(db.Text, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    doc_types = db.relationship(
        "DocType", backref="service", lazy="select",
        order_by="DocType.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "service_key": self.service_key,
            "name": self.name,
            "periodicity": self.periodicity,
            "category": self.category,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ServiceDefinition {self.service_key} [{self.periodicity}]>"


class DocType(db.Model):
    """
    A document kind tied to a service.

    ``mandatory`` documents gate submission for review; ``is_deliverable``
    documents are produced by the firm and gate the automatic close after
    approval. ``step_key`` binds the document to a workflow step.
    """

    __tablename__ = "service_doc_types"
    __table_args__ = (
        db.UniqueConstraint("service_key", "doctype", name="uq_doctype_service_code"),
    )

    id = db.Column(db.Integer, primary_key=True)
    service_key = db.Column(
        db.String(64), db.ForeignKey("service_definitions.service_key"),
        nullable=False, index=True,
    )
    doctype = db.Column(db.String(64), nullable=False, comment="Document code, e.g. sales_register")
    label = db.Column(db.String(200), nullable=False)
    client_uploads = db.Column(db.Boolean, nullable=False, default=True)
    is_deliverable = db.Column(db.Boolean, nullable=False, default=False)
    mandatory = db.Column(db.Boolean, nullable=False, default=False)
    step_key = db.Column(db.String(64), nullable=True,
                         comment="Workflow step this document belongs to")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "service_key": self.service_key,
            "doctype": self.doctype,
            "label": self.label,
            "client_uploads": self.client_uploads,
            "is_deliverable": self.is_deliverable,
            "mandatory": self.mandatory,
            "step_key": self.step_key,
        }

    def __repr__(self):
        return f"<DocType {self.service_key}:{self.doctype}>"


class ComplianceEntity(db.Model):
    """Client business entity that owes obligations."""

    __tablename__ = "compliance_entities"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    jurisdiction = db.Column(db.String(10), nullable=False, default="IN",
                             comment="Jurisdiction code used for rule resolution")
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    bindings = db.relationship("EntityServiceBinding", backref="entity", lazy="select")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "jurisdiction": self.jurisdiction,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ComplianceEntity {self.id}: {self.name}>"


class EntityServiceBinding(db.Model):
    """
    Subscription of an entity to a service.

    ``jurisdiction`` overrides the entity's own jurisdiction for this service;
    the scheduler tick enumerates active bindings.
    """

    __tablename__ = "entity_service_bindings"
    __table_args__ = (
        db.UniqueConstraint("entity_id", "service_key", name="uq_binding_entity_service"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_id = db.Column(db.Integer, db.ForeignKey("compliance_entities.id"),
                          nullable=False, index=True)
    service_key = db.Column(db.String(64), db.ForeignKey("service_definitions.service_key"),
                            nullable=False, index=True)
    jurisdiction = db.Column(db.String(10), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    @property
    def effective_jurisdiction(self):
        return self.jurisdiction or self.entity.jurisdiction

    def to_dict(self):
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "service_key": self.service_key,
            "jurisdiction": self.jurisdiction,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EntityServiceBinding entity={self.entity_id} service={self.service_key}>"
