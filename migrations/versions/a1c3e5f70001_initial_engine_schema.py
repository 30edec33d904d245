"""initial_engine_schema

Create catalog, due-date rule, workflow template, obligation, review and
scheduled job tables.

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f70001"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "service_definitions" not in existing_tables:
        op.create_table(
            "service_definitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("periodicity", sa.String(length=20), nullable=False, server_default="MONTHLY"),
            sa.Column("category", sa.String(length=50), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_service_definitions_service_key", "service_definitions",
                        ["service_key"], unique=True)

    if "service_doc_types" not in existing_tables:
        op.create_table(
            "service_doc_types",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("doctype", sa.String(length=64), nullable=False),
            sa.Column("label", sa.String(length=200), nullable=False),
            sa.Column("client_uploads", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_deliverable", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("step_key", sa.String(length=64), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("service_key", "doctype", name="uq_doctype_service_code"),
        )
        op.create_index("ix_service_doc_types_service_key", "service_doc_types", ["service_key"])

    if "compliance_entities" not in existing_tables:
        op.create_table(
            "compliance_entities",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("jurisdiction", sa.String(length=10), nullable=False, server_default="IN"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "entity_service_bindings" not in existing_tables:
        op.create_table(
            "entity_service_bindings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("jurisdiction", sa.String(length=10), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["entity_id"], ["compliance_entities.id"]),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_id", "service_key", name="uq_binding_entity_service"),
        )
        op.create_index("ix_entity_service_bindings_entity_id", "entity_service_bindings",
                        ["entity_id"])
        op.create_index("ix_entity_service_bindings_service_key", "entity_service_bindings",
                        ["service_key"])

    if "due_date_rules" not in existing_tables:
        op.create_table(
            "due_date_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("jurisdiction", sa.String(length=10), nullable=False, server_default="IN"),
            sa.Column("effective_from", sa.Date(), nullable=False),
            sa.Column("periodicity", sa.String(length=20), nullable=False),
            sa.Column("rule_json", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("service_key", "jurisdiction", "effective_from",
                                name="uq_rule_service_jurisdiction_effective"),
        )
        op.create_index("ix_rule_lookup", "due_date_rules",
                        ["service_key", "jurisdiction", "effective_from"])

    if "workflow_templates" not in existing_tables:
        op.create_table(
            "workflow_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("steps_json", sa.JSON(), nullable=False),
            sa.Column("sla_policy", sa.JSON(), nullable=True),
            sa.Column("is_published", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("author", sa.String(length=150), nullable=True),
            _ts("published_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("service_key", "version", name="uq_template_service_version"),
        )
        op.create_index("ix_workflow_templates_service_key", "workflow_templates", ["service_key"])

    if "workflow_publications" not in existing_tables:
        op.create_table(
            "workflow_publications",
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("published_version", sa.Integer(), nullable=True),
            sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("published_by", sa.String(length=150), nullable=True),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.PrimaryKeyConstraint("service_key"),
        )

    if "obligation_instances" not in existing_tables:
        op.create_table(
            "obligation_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("period_key", sa.String(length=20), nullable=False),
            sa.Column("period_start", sa.Date(), nullable=False),
            sa.Column("period_end", sa.Date(), nullable=False),
            sa.Column("periodicity", sa.String(length=20), nullable=False),
            sa.Column("jurisdiction", sa.String(length=10), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("reminder_dates", sa.JSON(), nullable=True),
            _ts("sla_deadline", nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("template_id", sa.Integer(), nullable=False),
            sa.Column("current_step_key", sa.String(length=64), nullable=True),
            sa.Column("completed_steps", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="scheduled"),
            sa.Column("rework_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rework_instructions", sa.Text(), nullable=True),
            sa.Column("quality_score", sa.Integer(), nullable=True),
            sa.Column("assignee_id", sa.String(length=150), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("started_at"),
            _ts("submitted_at"),
            _ts("approved_at"),
            _ts("closed_at"),
            _ts("escalated_at"),
            _ts("archived_at"),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.ForeignKeyConstraint(["entity_id"], ["compliance_entities.id"]),
            sa.ForeignKeyConstraint(["rule_id"], ["due_date_rules.id"]),
            sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("service_key", "entity_id", "period_key",
                                name="uq_obligation_service_entity_period"),
        )
        op.create_index("ix_obligation_instances_service_key", "obligation_instances",
                        ["service_key"])
        op.create_index("ix_obligation_instances_entity_id", "obligation_instances", ["entity_id"])
        op.create_index("ix_obligation_status_due", "obligation_instances", ["status", "due_date"])

    if "obligation_transitions" not in existing_tables:
        op.create_table(
            "obligation_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=30), nullable=True),
            sa.Column("to_status", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.String(length=150), nullable=True),
            sa.Column("note", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_obligation_transitions_instance_id", "obligation_transitions",
                        ["instance_id"])

    if "obligation_documents" not in existing_tables:
        op.create_table(
            "obligation_documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("doctype", sa.String(length=64), nullable=False),
            sa.Column("storage_ref", sa.String(length=500), nullable=False),
            sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("uploaded_by", sa.String(length=150), nullable=True),
            _ts("uploaded_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "doctype", name="uq_document_instance_doctype"),
        )
        op.create_index("ix_obligation_documents_instance_id", "obligation_documents",
                        ["instance_id"])

    if "obligation_reminders" not in existing_tables:
        op.create_table(
            "obligation_reminders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            _ts("fires_at", nullable=False),
            sa.Column("channel", sa.String(length=20), nullable=False, server_default="email"),
            sa.Column("kind", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("dispatched_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "fires_at", "channel",
                                name="uq_reminder_instance_fires_channel"),
        )
        op.create_index("ix_obligation_reminders_instance_id", "obligation_reminders",
                        ["instance_id"])
        op.create_index("ix_reminder_status_fires", "obligation_reminders", ["status", "fires_at"])

    if "quality_reviews" not in existing_tables:
        op.create_table(
            "quality_reviews",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("round", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("checklist", sa.JSON(), nullable=False),
            sa.Column("quality_score", sa.Integer(), nullable=True),
            sa.Column("approval_threshold", sa.Integer(), nullable=False, server_default="80"),
            sa.Column("reviewer_id", sa.String(length=150), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("requested_disposition", sa.String(length=30), nullable=True),
            sa.Column("disposition", sa.String(length=30), nullable=True),
            sa.Column("review_notes", sa.Text(), nullable=True),
            sa.Column("rework_instructions", sa.Text(), nullable=True),
            _ts("review_started_at"),
            _ts("review_completed_at"),
            _ts("sla_deadline"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_quality_reviews_instance_id", "quality_reviews", ["instance_id"])

    if "quality_checklist_templates" not in existing_tables:
        op.create_table(
            "quality_checklist_templates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("service_key", sa.String(length=64), nullable=False),
            sa.Column("items", sa.JSON(), nullable=False),
            sa.Column("approval_threshold", sa.Integer(), nullable=False, server_default="80"),
            sa.Column("escalation_threshold", sa.Integer(), nullable=False, server_default="60"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["service_key"], ["service_definitions.service_key"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_quality_checklist_templates_service_key",
                        "quality_checklist_templates", ["service_key"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_seconds", sa.Integer(), nullable=False, server_default="300"),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            _ts("last_run_at"),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    for table in (
        "scheduled_jobs",
        "quality_checklist_templates",
        "quality_reviews",
        "obligation_reminders",
        "obligation_documents",
        "obligation_transitions",
        "obligation_instances",
        "workflow_publications",
        "workflow_templates",
        "due_date_rules",
        "entity_service_bindings",
        "compliance_entities",
        "service_doc_types",
        "service_definitions",
    ):
        if table in existing_tables:
            op.drop_table(table)
