"""
Inspection CLI for changeflow.

Commands:
- history: Print the modification log of an archived object
- replay: Run the reconcile/dispatch pipeline once for a tenant trigger,
  without a queue message

Usage:
    python -m backend.changeflow.tools.inspect_cli history CHG-1001
    python -m backend.changeflow.tools.inspect_cli history CHG-1001 --json
    python -m backend.changeflow.tools.inspect_cli replay acme CHG-1001

Invariants:
    - history is read-only
    - replay is safe to run repeatedly; an absent trigger is a no-op

How to change safely:
    - Keep output format stable for scripts that parse it
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from ..config import ServerConfig
from ..engine.processor import ProcessResult
from ..main import Server, setup_logging
from ..model.objects import DomainObject
from ..model.types import format_timestamp


class InspectCLI:
    """Operator commands over the archive and the engine pipeline.

    Example:
        >>> cli = InspectCLI(server)
        >>> print(await cli.history("CHG-1001"))
        >>> result = await cli.replay("acme", "CHG-1001")
    """

    def __init__(self, server: Server) -> None:
        self.server = server

    async def history(self, object_id: str, as_json: bool = False) -> str:
        await self.server.open()
        if self.server.archive is None:
            raise RuntimeError("Archive not available")
        snapshot = await self.server.archive.load(object_id)
        if as_json:
            return json.dumps(snapshot.obj.modifications.to_list(), indent=2)
        return format_history(snapshot.obj)

    async def replay(self, tenant_code: str, object_id: str) -> ProcessResult:
        await self.server.open()
        if self.server.registry is None:
            raise RuntimeError("Tenant registry not loaded")
        tenant = self.server.registry.get(tenant_code)
        processor = self.server.build_processor(tenant)
        return await processor.replay(object_id)


def format_history(obj: DomainObject) -> str:
    """Render an object's status and modification log as text."""
    lines = [
        f"{obj.object_id} ({obj.object_type}): {obj.title}",
        f"status: {obj.status_value} (prior: {obj.prior_status or '-'})",
    ]
    if obj.meeting_metadata is not None:
        lines.append(f"meeting: {obj.meeting_metadata.meeting_id} {obj.meeting_metadata.join_url}")
    if obj.survey_url:
        lines.append(f"survey: {obj.survey_url}")
    lines.append(f"modifications ({len(obj.modifications)}):")
    for entry in obj.modifications:
        line = f"  {format_timestamp(entry.timestamp)}  {entry.modification_type.value:<18} {entry.actor_id}"
        if entry.tenant_code:
            line += f"  [{entry.tenant_code}]"
        if entry.meeting_metadata is not None:
            line += f"  meeting={entry.meeting_metadata.meeting_id}"
        lines.append(line)
    return "\n".join(lines)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Changeflow inspection tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    history_parser = subparsers.add_parser("history", help="Print an object's modification log")
    history_parser.add_argument("object_id", help="Change or announcement id")
    history_parser.add_argument("--json", action="store_true", help="Print raw JSON entries")

    replay_parser = subparsers.add_parser("replay", help="Process a tenant trigger once")
    replay_parser.add_argument("tenant_code", help="Tenant code")
    replay_parser.add_argument("object_id", help="Change or announcement id")

    args = parser.parse_args()

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging(config)

    server = Server(config)
    cli = InspectCLI(server)

    async def run() -> int:
        try:
            if args.command == "history":
                print(await cli.history(args.object_id, as_json=args.json))
                return 0
            result = await cli.replay(args.tenant_code, args.object_id)
            print(f"{result.outcome.value}: {result.reason}")
            return 0 if result.acknowledge else 1
        finally:
            await server.close()

    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
