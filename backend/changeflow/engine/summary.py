"""
Per-tenant execution counters.

One ExecutionSummary lives in each TenantWorker. It is exposed through
the /v1/stats endpoint and logged when the worker stops.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class ExecutionSummary:
    """Counters for one tenant worker.

    Attributes:
        tenant_code: Tenant the counters belong to
        messages: Queue messages handled
        processed: Notifications that ran a status handler
        skipped: Notifications whose work was already done
        discarded: Notifications dropped by the origin filter or event type
        test_events: Store test events acknowledged
        retryable_errors: Failures left for redelivery
        fatal_errors: Failures left for the dead-letter queue
        emails_sent: Individual email deliveries
        no_recipients: Notifications with nobody subscribed
        meetings_scheduled: meeting_scheduled entries written
        meetings_cancelled: meeting_cancelled entries written
        surveys_created: Surveys created on completion
        archive_conflicts: Archive writes that had to be re-applied
        trigger_delete_failures: Trigger deletions that failed after success
    """

    tenant_code: str
    messages: int = 0
    processed: int = 0
    skipped: int = 0
    discarded: int = 0
    test_events: int = 0
    retryable_errors: int = 0
    fatal_errors: int = 0
    emails_sent: int = 0
    no_recipients: int = 0
    meetings_scheduled: int = 0
    meetings_cancelled: int = 0
    surveys_created: int = 0
    archive_conflicts: int = 0
    trigger_delete_failures: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["uptime_seconds"] = round(time.time() - self.started_at, 1)
        del result["started_at"]
        return result
