"""Run a roster CSV through the enrollment pipeline from the command line.

Rosters are headerless CSV files:

    faculty:  external_id, email, name, department
    student:  external_id, name, email, department   (plus --batch)

Usage:
    python ingest_roster.py faculty staff.csv
    python ingest_roster.py student cohort.csv --batch 2024A
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from portal.config import settings
from portal.db import AsyncSessionMaker, engine
from portal.logging_config import setup_logging
from portal.notifications import WelcomeNotifier, build_transport
from portal.parsers import MalformedInputError, decode_roster
from portal.pipelines.enrollment import EnrollmentCommitter
from portal.pipelines.normalization import Role, describe_layout
from portal.pipelines.orchestrator import BatchOrchestrator


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Enroll a faculty or student roster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "headerless CSV columns:\n"
            f"  faculty: {describe_layout(Role.FACULTY)}\n"
            f"  student: {describe_layout(Role.STUDENT)}"
        ),
    )
    parser.add_argument("role", choices=[r.value for r in Role])
    parser.add_argument("csv_path", type=Path)
    parser.add_argument("--batch", dest="batch_name", help="Batch name (student rosters)")
    return parser.parse_args(argv)


async def ingest(role: Role, csv_path: Path, batch_name: str | None) -> dict:
    """Decode, enroll, and wait for welcome emails."""
    orchestrator = BatchOrchestrator(
        AsyncSessionMaker,
        EnrollmentCommitter(AsyncSessionMaker),
        WelcomeNotifier(build_transport(settings.mail), settings.mail),
        settings.ingest,
    )
    try:
        rows = decode_roster(csv_path.read_bytes())
        report = await orchestrator.run(rows, role, batch_name=batch_name)
        await orchestrator.drain_notifications()
    finally:
        await engine.dispose()
    return report.to_response()


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)
    setup_logging()

    if args.role == Role.STUDENT.value and not args.batch_name:
        print("--batch is required for student rosters", file=sys.stderr)
        sys.exit(2)

    try:
        response = asyncio.run(ingest(Role(args.role), args.csv_path, args.batch_name))
    except (MalformedInputError, OSError) as e:
        print(f"❌ Could not read roster: {e}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(response, indent=2))
    sys.exit(0 if not response["error"] else 3)


if __name__ == "__main__":
    main()
