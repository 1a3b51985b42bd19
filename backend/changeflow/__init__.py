"""
Changeflow - tenant-isolated workflow reconciliation engine.

Changes and announcements are written by a portal to a single archive
object per id. For every affected tenant the writer also drops an
ephemeral trigger object; the object store notifies that tenant's queue
and this service turns the notification into status-dependent side
effects (email, meeting scheduling and cancellation, surveys).

Architecture:
    ┌──────────┐   ┌──────────────┐   ┌──────────────────────────┐
    │  Writer  │──▶│ Object store │──▶│ Per-tenant queue (SQS)   │
    └──────────┘   └──────┬───────┘   └────────────┬─────────────┘
                          │                        │
                          │                        ▼
                          │            ┌───────────────────────┐
                          │            │ Origin filter         │
                          │            │ Trigger reconciler    │
                          │◀───────────│ Status dispatcher     │
                          │  archive   │ (meetings, email)     │
                          │  update,   └───────────────────────┘
                          │  trigger delete

Invariants:
    - The archive object is the only source of business content
    - A trigger object present means work is still owed to that tenant
    - The modification log is append-only
    - Events written by the engine itself never re-enter the pipeline

How to change safely:
    - Keep every side effect idempotent under redelivery
    - Never delete a trigger before the archive update is durable
    - New statuses need a dispatcher handler and tests

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
