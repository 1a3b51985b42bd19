"""
Unit tests for the event origin filter.

Tests cover:
- Role ARN parsing
- Discarding events written by the engine (exact ARN, role sessions,
  principal ids)
- Processing events written by anyone else
- Fail-open behaviour without identity information
"""

import pytest

from backend.changeflow.events import (
    EngineIdentity,
    EventOriginFilter,
    OriginAction,
    WriterIdentity,
    parse_role_arn,
)
from tests.factories import (
    ENGINE_PRINCIPAL_ID,
    ENGINE_ROLE_ARN,
    ENGINE_SESSION_ARN,
    PORTAL_PRINCIPAL_ID,
    PORTAL_SESSION_ARN,
)


class TestParseRoleArn:
    """Tests for parse_role_arn."""

    def test_iam_role(self):
        """IAM role ARNs yield the last path segment."""
        parsed = parse_role_arn("arn:aws:iam::111122223333:role/service/changeflow-engine")
        assert parsed.account == "111122223333"
        assert parsed.role_name == "changeflow-engine"

    def test_assumed_role(self):
        """STS assumed-role ARNs yield the role, not the session."""
        parsed = parse_role_arn(ENGINE_SESSION_ARN)
        assert parsed.service == "sts"
        assert parsed.role_name == "changeflow-engine"

    @pytest.mark.parametrize(
        "arn",
        ["", "not-an-arn", "arn:aws:iam::111122223333:user/alice", "arn:aws:s3:::bucket"],
    )
    def test_other_arns(self, arn):
        """Anything that is not a role is not parsed."""
        assert parse_role_arn(arn) is None


class TestEventOriginFilter:
    """Tests for EventOriginFilter.decide."""

    @pytest.fixture
    def origin_filter(self):
        return EventOriginFilter(EngineIdentity(role_arn=ENGINE_ROLE_ARN))

    def test_exact_role_arn(self, origin_filter):
        """A write by the role ARN itself is discarded."""
        decision = origin_filter.decide(WriterIdentity(arn=ENGINE_ROLE_ARN))
        assert decision.discard

    def test_engine_session(self, origin_filter):
        """A write by any session of the engine role is discarded."""
        decision = origin_filter.decide(WriterIdentity(arn=ENGINE_SESSION_ARN, principal_id=ENGINE_PRINCIPAL_ID))
        assert decision.action == OriginAction.DISCARD

    def test_same_role_name_other_account(self, origin_filter):
        """A role with the same name in another account is processed."""
        writer = WriterIdentity(arn="arn:aws:sts::999999999999:assumed-role/changeflow-engine/x")
        assert not origin_filter.decide(writer).discard

    def test_portal_write(self, origin_filter):
        """Writes by the portal are processed."""
        writer = WriterIdentity(arn=PORTAL_SESSION_ARN, principal_id=PORTAL_PRINCIPAL_ID)
        assert origin_filter.decide(writer).action == OriginAction.PROCESS

    def test_principal_names_role(self, origin_filter):
        """A principal id whose segment is the role name is discarded."""
        writer = WriterIdentity(principal_id="AWS:AROAXYZ:changeflow-engine")
        assert origin_filter.decide(writer).discard

    def test_known_principal_id(self):
        """Configured principal ids are recognised without an ARN."""
        origin_filter = EventOriginFilter(EngineIdentity(principal_ids=("AROAENGINEEXAMPLE",)))
        writer = WriterIdentity(principal_id="AWS:AROAENGINEEXAMPLE:worker-9")
        assert origin_filter.decide(writer).discard

    def test_principal_substring_is_not_a_match(self):
        """Principal ids are compared by segment, not substring."""
        origin_filter = EventOriginFilter(EngineIdentity(principal_ids=("AROAENGINE",)))
        writer = WriterIdentity(principal_id="AWS:AROAENGINEEXAMPLE:worker-9")
        assert not origin_filter.decide(writer).discard

    def test_missing_writer_fails_open(self, origin_filter):
        """Events without identity are processed."""
        decision = origin_filter.decide(None)
        assert decision.action == OriginAction.PROCESS
        assert decision.reason == "writer identity absent"

    def test_unconfigured_identity_fails_open(self):
        """Without an engine identity everything is processed."""
        origin_filter = EventOriginFilter(EngineIdentity())
        assert not origin_filter.decide(WriterIdentity(arn=ENGINE_ROLE_ARN)).discard

    def test_non_role_engine_arn(self):
        """A non-role engine ARN still discards exact matches."""
        arn = "arn:aws:iam::111122223333:user/deployer"
        origin_filter = EventOriginFilter(EngineIdentity(role_arn=arn))
        assert origin_filter.decide(WriterIdentity(arn=arn)).discard
        assert not origin_filter.decide(WriterIdentity(arn=PORTAL_SESSION_ARN)).discard
