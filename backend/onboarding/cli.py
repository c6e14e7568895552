"""Management CLI for onboarding sessions.

Usage:
    python -m onboarding.cli cleanup               # Run all sweep policies
    python -m onboarding.cli cleanup --dry-run     # Count only
    python -m onboarding.cli cleanup --emergency   # 24h max age, batches of 500
    python -m onboarding.cli stats                 # Session and cleanup counts

Meant for cron.  Exit status is 1 when any cleanup policy failed.
"""

import asyncio
import logging
import sys

from onboarding.config import settings
from onboarding.database import engine
from onboarding.dependencies import ServiceContainer
from onboarding.services.cleanup import CleanupOptions, recommendations


async def run_cleanup(dry_run: bool = False, emergency: bool = False) -> int:
    services = ServiceContainer.build(settings)
    try:
        if emergency:
            result = await services.cleanup.emergency_cleanup()
        else:
            result = await services.cleanup.run_cleanup(CleanupOptions(dry_run=dry_run))
    finally:
        await engine.dispose()

    label = "Would clean" if result.dry_run else "Cleaned"
    for policy, count in result.by_policy.items():
        print(f"  {policy:<9} {count}")
    print(f"\n{label} {result.cleaned_sessions} session(s) in {result.duration_ms}ms")
    for error in result.errors:
        print(f"  FAILED: {error}")
    return 0 if result.success else 1


async def show_stats() -> int:
    services = ServiceContainer.build(settings)
    try:
        sessions = await services.store.get_stats()
        cleanup = await services.cleanup.get_cleanup_stats()
    finally:
        await engine.dispose()

    print(f"  total      {sessions.total}")
    print(f"  active     {sessions.active}")
    print(f"  completed  {sessions.completed}")
    print(f"  expired    {sessions.expired}")
    print(f"  orphaned   {cleanup.orphaned}")
    print(f"  stuck      {cleanup.stuck}")
    print(f"  old        {cleanup.old}")
    hints = recommendations(cleanup)
    print(
        f"\nPriority {hints['priority']}, "
        f"~{hints['estimatedCleanupCount']} session(s) to clean"
    )
    return 0


def main(argv: list[str]) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    cmd = argv[0] if argv else ""
    flags = set(argv[1:])
    if cmd == "cleanup":
        return asyncio.run(
            run_cleanup(dry_run="--dry-run" in flags, emergency="--emergency" in flags)
        )
    if cmd == "stats":
        return asyncio.run(show_stats())
    print(__doc__)
    return 2


def entrypoint() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    entrypoint()
