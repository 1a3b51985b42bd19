"""
Integration tests for the inspection CLI.

Tests cover:
- history as text and JSON
- replay of a pending trigger and of a consumed one
- Configuration errors on the command line
"""

import json
import sys

import pytest

from backend.changeflow.engine import Outcome
from backend.changeflow.errors import UnknownTenantError
from backend.changeflow.model import load_object
from backend.changeflow.tools import InspectCLI
from backend.changeflow.tools.inspect_cli import format_history, main
from tests.factories import Pipeline, announcement_doc, change_doc, entry, meeting_dict


class TestFormatHistory:
    """Tests for format_history."""

    def test_change_history(self):
        doc = change_doc(
            status="approved",
            include_meeting=True,
            modifications=[
                entry("created", 0),
                entry("approved", 5),
                entry("meeting_scheduled", 6, actor_id="backend-system", tenant_code="acme", meeting_metadata=meeting_dict("evt-7")),
                entry("processed", 6, actor_id="backend-system", tenant_code="acme"),
            ],
        )

        lines = format_history(load_object(doc)).splitlines()

        assert lines[0] == "CHG-1001 (change): Core switch upgrade"
        assert lines[1] == "status: approved (prior: -)"
        assert lines[2] == "modifications (4):"
        assert "approved" in lines[4] and "portal-user-0001" in lines[4]
        assert lines[5].endswith("[acme]  meeting=evt-7")
        assert lines[6].endswith("[acme]")

    def test_meeting_and_survey_lines(self):
        doc = announcement_doc(
            status="completed",
            meeting_metadata=meeting_dict("evt-2", subject="Quarterly maintenance window"),
            survey_id="srv-1",
            survey_url="https://forms.example.com/srv-1",
        )

        text = format_history(load_object(doc))

        assert "meeting: evt-2 https://meet.example.com/evt-2" in text
        assert "survey: https://forms.example.com/srv-1" in text


class TestInspectCLI:
    """Tests for InspectCLI against an in-memory pipeline."""

    @pytest.fixture
    async def pipeline(self):
        return await Pipeline(tenant_codes=("acme", "globex")).open()

    @pytest.fixture
    def cli(self, pipeline):
        return InspectCLI(pipeline.server)

    @pytest.mark.asyncio
    async def test_history_text(self, pipeline, cli):
        await pipeline.write(change_doc(status="submitted"))
        await pipeline.drain()

        text = await cli.history("CHG-1001")

        assert "modifications (3):" in text
        assert "processed" in text

    @pytest.mark.asyncio
    async def test_history_json(self, pipeline, cli):
        await pipeline.write(change_doc(status="submitted"))

        entries = json.loads(await cli.history("CHG-1001", as_json=True))

        assert [e["modification_type"] for e in entries] == ["created", "submitted"]

    @pytest.mark.asyncio
    async def test_replay_pending_trigger(self, pipeline, cli):
        """Replay processes a trigger without its queue message."""
        await pipeline.write(change_doc(status="submitted", customers=("globex",)))

        result = await cli.replay("globex", "CHG-1001")

        assert result.outcome == Outcome.PROCESSED
        assert not pipeline.trigger_exists("globex", "CHG-1001")
        assert len(pipeline.notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_replay_consumed_trigger(self, pipeline, cli):
        """Replay of a consumed trigger is a no-op."""
        await pipeline.write(change_doc(status="submitted"))
        await pipeline.drain()

        result = await cli.replay("acme", "CHG-1001")

        assert result.outcome == Outcome.SKIPPED
        assert result.acknowledge
        assert len(pipeline.notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_tenant(self, cli):
        with pytest.raises(UnknownTenantError):
            await cli.replay("initech", "CHG-1001")


class TestMain:
    """Tests for the command-line entry point."""

    def test_configuration_error_exits_2(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["changeflow-inspect", "history", "CHG-1001"])
        monkeypatch.delenv("S3_BUCKET", raising=False)
        monkeypatch.delenv("TENANTS_FILE", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 2
        assert "Configuration error" in capsys.readouterr().err

    def test_requires_command(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["changeflow-inspect"])

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 2
