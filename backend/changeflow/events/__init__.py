"""
Queue notification parsing and the event origin filter.

Invariants:
    - Everything in this package is pure and runs before any I/O
"""

from .notification import (
    ParsedMessage,
    RejectedRecord,
    TriggerNotification,
    WriterIdentity,
    build_s3_event,
    parse_message,
)
from .origin import EngineIdentity, EventOriginFilter, OriginAction, OriginDecision, parse_role_arn

__all__ = [
    "EngineIdentity",
    "EventOriginFilter",
    "OriginAction",
    "OriginDecision",
    "ParsedMessage",
    "RejectedRecord",
    "TriggerNotification",
    "WriterIdentity",
    "build_s3_event",
    "parse_message",
    "parse_role_arn",
]
