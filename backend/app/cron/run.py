"""Guest checkout maintenance jobs.

This module provides the entry point for scheduled guest-session jobs.
It can be run as:

    python -m backend.app.cron.run
    python -m backend.app.cron.run cleanup-guest-sessions
    python -m backend.app.cron.run pending-guest-sessions --limit 20

The cleanup job deletes expired guest sessions in batches and records the
sweep timestamp for monitoring. The pending job prints unconsumed,
unexpired guest sessions as JSON lines so support can follow up on
checkouts that were never linked to an account.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Optional

from backend.app.config import get_settings
from backend.app.container import ServiceContainer, build_container

logger = logging.getLogger(__name__)


async def cleanup_guest_sessions(container: ServiceContainer) -> dict:
    """Run one cleanup sweep.

    Returns:
        Dictionary with ``deleted_count``, ``errors`` and ``duration_seconds``.
    """
    logger.info("guest_cleanup_job_started")
    start_time = time.time()

    result = await container.guest_sessions.cleanup_expired_sessions()
    summary = {
        "deleted_count": result.deleted_count,
        "errors": [] if result.success else [result.error or "cleanup failed"],
        "duration_seconds": time.time() - start_time,
    }

    logger.info(
        "guest_cleanup_job_completed",
        extra={
            "deleted_count": summary["deleted_count"],
            "duration_seconds": summary["duration_seconds"],
            "errors": len(summary["errors"]),
        },
    )
    return summary


async def list_pending_guest_sessions(container: ServiceContainer, limit: int = 50) -> dict:
    result = await container.guest_sessions.get_pending_guest_sessions(limit=limit)
    return {
        "sessions": [session.to_dict() for session in result.sessions],
        "errors": [] if result.success else [result.error or "lookup failed"],
    }


async def main_async(args: argparse.Namespace, container: Optional[ServiceContainer] = None) -> int:
    """Async main entry point."""
    owned = container is None
    if container is None:
        settings = get_settings()
        logging.basicConfig(
            level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        container = build_container(settings)

    try:
        if args.command == "pending-guest-sessions":
            result = await list_pending_guest_sessions(container, limit=args.limit)
            for session in result["sessions"]:
                print(json.dumps(session, default=str))
        else:
            # Default: cleanup sweep
            result = await cleanup_guest_sessions(container)

        for error in result["errors"]:
            logger.error("guest_job_error", extra={"command": args.command, "error": error})
        return 1 if result["errors"] else 0
    finally:
        if owned:
            await container.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Guest checkout maintenance jobs"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser(
        "cleanup-guest-sessions",
        help="Delete expired guest checkout sessions",
    )

    pending_parser = subparsers.add_parser(
        "pending-guest-sessions",
        help="Print guest sessions awaiting reconciliation",
    )
    pending_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum number of sessions to print",
    )
    return parser


def main() -> None:
    """Main entry point for the cron module."""
    args = build_parser().parse_args()
    exit_code = asyncio.run(main_async(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
