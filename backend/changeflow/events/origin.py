"""
Event origin filter: breaks engine write -> notify -> process loops.

The engine's own writes can produce notifications (for example when an
operator points a bucket notification at a broader prefix). Those events
must be dropped before any I/O. The filter compares the writer identity
carried by the event with the engine's identity.

Decision rules:
    - No engine identity configured, no writer identity, or a writer
      identity that cannot be parsed: process (fail open)
    - Writer ARN equal to the engine role ARN: discard
    - Writer is an STS session of the engine role (same account and
      role name): discard
    - Writer principal id is a known engine principal, or names the
      engine role as a segment: discard
    - Anything else: process

Invariants:
    - Pure: no network calls, no clock, no shared state
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .notification import WriterIdentity

logger = logging.getLogger(__name__)


class OriginAction(str, Enum):
    PROCESS = "process"
    DISCARD = "discard"


@dataclass(frozen=True)
class OriginDecision:
    action: OriginAction
    reason: str

    @property
    def discard(self) -> bool:
        return self.action == OriginAction.DISCARD


@dataclass(frozen=True)
class ParsedArn:
    """The parts of an IAM role or STS assumed-role ARN we compare."""

    service: str
    account: str
    role_name: str


def parse_role_arn(arn: str) -> ParsedArn | None:
    """Parse ``arn:aws:iam::ACCT:role/[path/]NAME`` or
    ``arn:aws:sts::ACCT:assumed-role/NAME/SESSION``.

    Returns None for anything else.
    """
    parts = arn.split(":", 5)
    if len(parts) != 6 or parts[0] != "arn":
        return None
    service, account, resource = parts[2], parts[4], parts[5]
    segments = resource.split("/")
    if service == "iam" and segments[0] == "role" and len(segments) >= 2:
        return ParsedArn(service, account, segments[-1])
    if service == "sts" and segments[0] == "assumed-role" and len(segments) >= 3:
        return ParsedArn(service, account, segments[-2])
    return None


@dataclass(frozen=True)
class EngineIdentity:
    """The identity the engine writes with.

    Attributes:
        role_arn: IAM role ARN of the engine
        principal_ids: Extra principal ids (``AROA...``) known to be the engine
    """

    role_arn: str | None = None
    principal_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def role(self) -> ParsedArn | None:
        return parse_role_arn(self.role_arn) if self.role_arn else None


class EventOriginFilter:
    """Decide whether an event was written by the engine itself."""

    def __init__(self, identity: EngineIdentity) -> None:
        self._identity = identity
        self._role = identity.role
        if identity.role_arn and self._role is None:
            logger.warning(
                "Engine role ARN is not a role ARN; only exact matches will be discarded",
                extra={"role_arn": identity.role_arn},
            )

    def decide(self, writer: WriterIdentity | None) -> OriginDecision:
        if not self._identity.role_arn and not self._identity.principal_ids:
            return OriginDecision(OriginAction.PROCESS, "engine identity not configured")
        if writer is None:
            return OriginDecision(OriginAction.PROCESS, "writer identity absent")

        if writer.arn:
            if writer.arn == self._identity.role_arn:
                return OriginDecision(OriginAction.DISCARD, "writer ARN equals engine role ARN")
            parsed = parse_role_arn(writer.arn)
            if parsed is not None and self._role is not None:
                if parsed.account == self._role.account and parsed.role_name == self._role.role_name:
                    return OriginDecision(OriginAction.DISCARD, "writer is a session of the engine role")

        if writer.principal_id:
            segments = writer.principal_id.split(":")
            for known in self._identity.principal_ids:
                if known in segments:
                    return OriginDecision(OriginAction.DISCARD, "writer principal is an engine principal")
            if self._role is not None and self._role.role_name in segments:
                return OriginDecision(OriginAction.DISCARD, "writer principal names the engine role")

        return OriginDecision(OriginAction.PROCESS, "writer is not the engine")
