#!/usr/bin/env python3
"""End every session a user holds, for account lockouts and admin intervention.

Usage:
    python scripts/force_logout.py --user-id 42

    # Resolve the owner from a session id seen in a support ticket:
    python scripts/force_logout.py --session-id 3f9c...

    # Report what would be removed without touching the store:
    python scripts/force_logout.py --user-id 42 --dry-run

Environment Variables:
    REDIS_URL: Session store to operate on
    ALLOW_REDIS_FALLBACK_DEV: Permit running against an in-memory store (useful only for smoke tests)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sessiongate.logging import mask_id  # noqa: E402
from sessiongate.service.sessions import SessionService  # noqa: E402


async def force_logout(
    sessions: SessionService,
    *,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Remove all session keys for the target user.

    Returns:
        dict with user_id, the active session id (masked) and status
        ('removed', 'not_found', 'failed' or 'dry_run')
    """
    if not user_id and session_id:
        user_id = await sessions.get_session_owner(session_id)
        if not user_id:
            print(f"No user owns session {mask_id(session_id)}")
            return {"user_id": None, "session_id": mask_id(session_id), "status": "not_found"}
    if not user_id:
        raise ValueError("user_id or session_id is required")

    active = await sessions.get_active_session(user_id)
    active_id = mask_id(active.session_id) if active else None

    if dry_run:
        print(f"[DRY RUN] Would remove all sessions for user {user_id} (active: {active_id})")
        return {"user_id": user_id, "session_id": active_id, "status": "dry_run"}

    ok = await sessions.remove_all_sessions_for_user(user_id)
    status = "removed" if ok else "failed"
    print(f"{status.capitalize()} sessions for user {user_id} (active was: {active_id})")
    return {"user_id": user_id, "session_id": active_id, "status": status}


async def _run(args: argparse.Namespace) -> dict:
    # Import here so settings are read after argument parsing
    from sessiongate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await force_logout(
            runtime.sessions,
            user_id=args.user_id,
            session_id=args.session_id,
            dry_run=args.dry_run,
        )
    finally:
        await runtime.store.close()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Force-logout a user from every device",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="User whose sessions should be removed")
    target.add_argument(
        "--session-id", help="Any session id of the user; resolved to its owner"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    try:
        result = asyncio.run(_run(args))
    except Exception as e:
        print(f"Error: {e}")
        return 1
    return 0 if result["status"] in {"removed", "dry_run"} else 1


if __name__ == "__main__":
    sys.exit(main())
