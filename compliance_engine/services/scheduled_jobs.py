"""
Compliance Obligation & Review Engine
Scheduled Jobs — the periodic engine tick.

Jobs:
    - obligation_materializer: materializes the current period for every
      active service × entity binding
    - reminder_dispatch: fires pending reminders whose time has come
    - sla_watch: reports obligations past their SLA deadline (once per day)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from compliance_engine.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Obligation Materializer
# ═══════════════════════════════════════════════════════════════════════════

@register_job("obligation_materializer")
def materialize_obligations(app) -> dict[str, Any]:
    """Materialize due obligations for active service bindings."""
    from compliance_engine.services.obligation_scheduler import materialize_due_obligations

    now = datetime.now(timezone.utc)
    summary = materialize_due_obligations(as_of=now.date(), now=now)
    return {
        "created": summary["created"],
        "existing": summary["existing"],
        "not_configured": len(summary["not_configured"]),
        "errors": len(summary["errors"]),
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Reminder Dispatch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("reminder_dispatch")
def dispatch_reminders(app) -> dict[str, Any]:
    """Fire pending reminders whose fires_at has passed."""
    from compliance_engine.services.notification_trigger import dispatch_due_reminders

    return dispatch_due_reminders()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: SLA Watch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_watch")
def watch_sla(app) -> dict[str, Any]:
    """Report obligations past their SLA deadline."""
    from compliance_engine.services.obligation_tracker import report_sla_breaches

    breached = report_sla_breaches()
    return {
        "breached": len(breached),
        "instance_ids": [i.id for i in breached[:50]],
    }
