"""
Catalog Seed — representative Indian compliance services.

Seeds, for each service: the ServiceDefinition, its document types, a
due-date rule effective 2025-01-01 for jurisdiction IN and a published
version-1 workflow template.

Usage:
    flask seed-catalog

Idempotent — safe to run multiple times; existing rows are left untouched.
"""

import logging

from sqlalchemy import select

from compliance_engine.models import db
from compliance_engine.models.catalog import DocType, ServiceDefinition
from compliance_engine.models.rules import DueDateRule
from compliance_engine.services import rule_store, workflow_registry

logger = logging.getLogger(__name__)

SEED_EFFECTIVE_FROM = "2025-01-01"
SEED_JURISDICTION = "IN"
SEED_ACTOR = "system:seed"


# ═══════════════════════════════════════════════════════════════
# SERVICES
# ═══════════════════════════════════════════════════════════════
SERVICES = [
    {
        "service_key": "gst_returns",
        "name": "GST Returns (GSTR-1 & 3B)",
        "periodicity": "MONTHLY",
        "category": "Tax",
        "rule": {"periodicity": "MONTHLY", "dueDayOfMonth": 20,
                 "nudges": {"tMinus": [7, 3, 1], "fixedDays": [1, 2]}},
        "doc_types": [
            {"doctype": "sales_register", "label": "Sales Register (CSV)",
             "step_key": "data_collection", "mandatory": True},
            {"doctype": "purchase_register", "label": "Purchase Register (CSV)",
             "step_key": "data_collection", "mandatory": True},
            {"doctype": "bank_statements", "label": "Bank Statements",
             "step_key": "data_collection", "mandatory": False},
            {"doctype": "gstr3b_ack", "label": "GSTR-3B Acknowledgment", "step_key": "filing",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
            {"doctype": "gstr1_ack", "label": "GSTR-1 Acknowledgment", "step_key": "filing",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
        ],
        "steps": {
            "steps": [
                {"stepKey": "data_collection", "name": "Data Collection & Validation",
                 "description": "Collect and validate sales/purchase data",
                 "estimatedDays": 2, "assigneeRole": "ops_executive"},
                {"stepKey": "reconciliation", "name": "Data Reconciliation",
                 "description": "Reconcile data with GSTR-2B and prepare working papers",
                 "estimatedDays": 2, "assigneeRole": "ops_executive", "qaRequired": True,
                 "deliverables": ["reconciliation_report", "liability_computation"]},
                {"stepKey": "client_approval", "name": "Client Review & Approval",
                 "estimatedDays": 1, "assigneeRole": "client",
                 "deliverables": ["return_summary"]},
                {"stepKey": "filing", "name": "Return Filing",
                 "description": "File returns on GST portal",
                 "estimatedDays": 1, "assigneeRole": "ops_executive",
                 "deliverables": ["gstr3b_ack", "gstr1_ack"]},
            ],
            "slaPolicy": {"totalDays": 6, "escalationThresholds": [4, 5]},
        },
    },
    {
        "service_key": "accounting_monthly",
        "name": "Monthly Bookkeeping",
        "periodicity": "MONTHLY",
        "category": "Accounting",
        "rule": {"periodicity": "MONTHLY", "dueDayOfMonth": 10,
                 "nudges": {"tMinus": [3, 1], "fixedDays": [5]}},
        "doc_types": [
            {"doctype": "bank_statements", "label": "Bank Statements",
             "step_key": "data_import", "mandatory": True},
            {"doctype": "purchase_invoices", "label": "Purchase Invoices",
             "step_key": "data_import", "mandatory": False},
            {"doctype": "trial_balance", "label": "Trial Balance", "step_key": "reporting",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
            {"doctype": "monthly_pl", "label": "Monthly P&L Statement", "step_key": "reporting",
             "is_deliverable": True, "mandatory": False, "client_uploads": False},
        ],
        "steps": [
            {"stepKey": "data_import", "name": "Data Import", "estimatedDays": 2,
             "assigneeRole": "ops_executive"},
            {"stepKey": "bookkeeping", "name": "Bookkeeping & Reconciliation", "estimatedDays": 3,
             "assigneeRole": "ops_executive", "qaRequired": True},
            {"stepKey": "reporting", "name": "Monthly Reporting", "estimatedDays": 1,
             "assigneeRole": "ops_executive", "deliverables": ["trial_balance", "monthly_pl"]},
        ],
    },
    {
        "service_key": "pf_esi_monthly",
        "name": "PF & ESI Monthly Returns",
        "periodicity": "MONTHLY",
        "category": "Payroll",
        "rule": {"periodicity": "MONTHLY", "dueDayOfMonth": 15,
                 "nudges": {"tMinus": [5, 3, 1], "fixedDays": [1, 2]}},
        "doc_types": [
            {"doctype": "payroll_register", "label": "Payroll Register",
             "step_key": "data_collection", "mandatory": True},
            {"doctype": "ecr_receipt", "label": "ECR Filing Receipt", "step_key": "filing",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
        ],
        "steps": [
            {"stepKey": "data_collection", "name": "Payroll Data Collection", "estimatedDays": 2,
             "assigneeRole": "ops_executive"},
            {"stepKey": "filing", "name": "ECR Filing & Payment", "estimatedDays": 1,
             "assigneeRole": "ops_executive", "qaRequired": True,
             "deliverables": ["ecr_receipt"]},
        ],
    },
    {
        "service_key": "tds_quarterly",
        "name": "TDS Quarterly Returns",
        "periodicity": "QUARTERLY",
        "category": "Tax",
        "rule": {"periodicity": "QUARTERLY", "dueDayOfMonth": 28,
                 "nudges": {"tMinus": [10, 5, 1]}},
        "doc_types": [
            {"doctype": "payroll_register", "label": "Payroll Register",
             "step_key": "data_compilation", "mandatory": True},
            {"doctype": "vendor_payments", "label": "Vendor Payment Details",
             "step_key": "data_compilation", "mandatory": True},
            {"doctype": "form_16a", "label": "Form 16A (Other TDS)", "step_key": "certificates",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
        ],
        "steps": [
            {"stepKey": "data_compilation", "name": "Data Compilation", "estimatedDays": 3,
             "assigneeRole": "ops_executive"},
            {"stepKey": "return_filing", "name": "Return Preparation & Filing", "estimatedDays": 2,
             "assigneeRole": "ops_executive", "qaRequired": True},
            {"stepKey": "certificates", "name": "TDS Certificates", "estimatedDays": 2,
             "assigneeRole": "ops_executive", "deliverables": ["form_16a"]},
        ],
    },
    {
        "service_key": "annual_filings_roc",
        "name": "ROC Annual Filings (AOC-4 & MGT-7)",
        "periodicity": "ANNUAL",
        "category": "Corporate",
        "rule": {"periodicity": "ANNUAL", "dueDayOfMonth": 28,
                 "nudges": {"tMinus": [30, 7, 1]}},
        "doc_types": [
            {"doctype": "audited_financials", "label": "Audited Financial Statements",
             "step_key": "data_compilation", "mandatory": True},
            {"doctype": "board_resolutions", "label": "Board Resolutions",
             "step_key": "data_compilation", "mandatory": True},
            {"doctype": "aoc4_receipt", "label": "AOC-4 Filing Receipt", "step_key": "filing",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
            {"doctype": "mgt7_receipt", "label": "MGT-7 Filing Receipt", "step_key": "filing",
             "is_deliverable": True, "mandatory": True, "client_uploads": False},
        ],
        "steps": [
            {"stepKey": "data_compilation", "name": "Financials & Resolutions", "estimatedDays": 5,
             "assigneeRole": "ops_executive"},
            {"stepKey": "form_preparation", "name": "Form Preparation", "estimatedDays": 3,
             "assigneeRole": "ops_executive", "qaRequired": True},
            {"stepKey": "filing", "name": "MCA Filing", "estimatedDays": 2,
             "assigneeRole": "ops_executive", "deliverables": ["aoc4_receipt", "mgt7_receipt"]},
        ],
    },
]


def _seed_service(definition: dict) -> dict:
    created = {"services": 0, "doc_types": 0, "rules": 0, "templates": 0}
    key = definition["service_key"]

    if db.session.execute(
        select(ServiceDefinition.id).where(ServiceDefinition.service_key == key)
    ).scalar_one_or_none() is None:
        rule_store.create_service({
            "service_key": key,
            "name": definition["name"],
            "periodicity": definition["periodicity"],
            "category": definition["category"],
        })
        created["services"] += 1

    existing_docs = {
        code for (code,) in db.session.execute(
            select(DocType.doctype).where(DocType.service_key == key)
        )
    }
    for doc in definition["doc_types"]:
        if doc["doctype"] not in existing_docs:
            rule_store.add_doc_type(key, doc)
            created["doc_types"] += 1

    has_rule = db.session.execute(
        select(DueDateRule.id).where(DueDateRule.service_key == key,
                                     DueDateRule.jurisdiction == SEED_JURISDICTION).limit(1)
    ).first() is not None
    if not has_rule:
        rule_store.add_rule(key, SEED_JURISDICTION, definition["rule"], SEED_EFFECTIVE_FROM,
                            created_by=SEED_ACTOR)
        created["rules"] += 1

    if not workflow_registry.has_published(key):
        versions = workflow_registry.list_versions(key)
        template = versions[-1] if versions else workflow_registry.create_version(
            key, definition["steps"], author=SEED_ACTOR,
        )
        workflow_registry.publish(key, template.version, "admin", actor_id=SEED_ACTOR)
        created["templates"] += 1

    return created


def seed_catalog() -> dict:
    """Seed all services. Returns counts of rows created per kind."""
    totals = {"services": 0, "doc_types": 0, "rules": 0, "templates": 0}
    for definition in SERVICES:
        for kind, count in _seed_service(definition).items():
            totals[kind] += count
    logger.info("Catalog seed complete: %s", totals)
    return totals
