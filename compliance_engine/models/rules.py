"""
Compliance Obligation & Review Engine
Due-date rule model.

A rule's ``rule_json`` is stored in the normalized shape produced by
``services.rule_schema.parse_rule_payload``; it is validated once, on the
way in, and read back with ``rule_schema.load_rule``.
"""

from datetime import datetime, timezone

from compliance_engine.models import db


class DueDateRule(db.Model):
    """
    Versioned due-date rule for one (service, jurisdiction).

    Invariant: ``effective_from`` strictly increases per (service, jurisdiction);
    the active rule with the latest ``effective_from`` on or before the
    evaluation date governs.
    """

    __tablename__ = "due_date_rules"
    __table_args__ = (
        db.UniqueConstraint("service_key", "jurisdiction", "effective_from",
                            name="uq_rule_service_jurisdiction_effective"),
        db.Index("ix_rule_lookup", "service_key", "jurisdiction", "effective_from"),
    )

    id = db.Column(db.Integer, primary_key=True)
    service_key = db.Column(db.String(64), db.ForeignKey("service_definitions.service_key"),
                            nullable=False)
    jurisdiction = db.Column(db.String(10), nullable=False, default="IN")
    effective_from = db.Column(db.Date, nullable=False)
    periodicity = db.Column(db.String(20), nullable=False,
                            comment="Copied from rule_json for filtering")
    rule_json = db.Column(db.JSON, nullable=False,
                          comment="{periodicity, dueDayOfMonth|dueInDays, nudges:{tMinus, fixedDays}}")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "service_key": self.service_key,
            "jurisdiction": self.jurisdiction,
            "effective_from": self.effective_from.isoformat() if self.effective_from else None,
            "periodicity": self.periodicity,
            "rule": self.rule_json,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<DueDateRule {self.service_key}/{self.jurisdiction} from {self.effective_from}>"
