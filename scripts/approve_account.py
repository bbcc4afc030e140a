#!/usr/bin/env python3
"""Approve (or revoke approval of) an account in the persisted store.

New accounts cannot log in while REQUIRE_APPROVAL is on until they are
approved here.

Usage:
    # Approve by username or email:
    SHARED_FS_ROOT=/srv/bankcore python scripts/approve_account.py alice

    # List accounts waiting for approval:
    SHARED_FS_ROOT=/srv/bankcore python scripts/approve_account.py --pending

    # Revoke approval:
    SHARED_FS_ROOT=/srv/bankcore python scripts/approve_account.py alice --revoke

Environment Variables:
    SHARED_FS_ROOT: Directory holding the store snapshot (required)
    MFA_SECRET_KEY: Key used by the server to encrypt MFA secrets
"""
from __future__ import annotations

import argparse
import os
import sys


def approve_account(identifier: str, *, revoke: bool = False, dry_run: bool = False) -> dict:
    """Set the approval flag for the account matching ``identifier``.

    Returns:
        dict with user_id, username and status ('approved', 'revoked',
        'unchanged' or 'dry_run')
    """
    # Import here so the environment is in place before settings load
    from bankcore.service.runtime import get_runtime

    runtime = get_runtime()
    user = runtime.store.get_user_by_username(identifier) or runtime.store.get_user_by_email(
        identifier
    )
    if not user:
        raise LookupError(f"no account matches {identifier!r}")

    target = not revoke
    if user.approved == target:
        return {"user_id": user.id, "username": user.username, "status": "unchanged"}
    if dry_run:
        return {"user_id": user.id, "username": user.username, "status": "dry_run"}

    runtime.auth.approve_user(user.id, approved=target)
    return {
        "user_id": user.id,
        "username": user.username,
        "status": "approved" if target else "revoked",
    }


def list_pending() -> list[dict]:
    from bankcore.service.runtime import get_runtime

    runtime = get_runtime()
    return [
        {"user_id": u.id, "username": u.username, "created_at": u.created_at.isoformat()}
        for u in runtime.store.list_users(limit=1000)
        if not u.approved
    ]


def main():
    parser = argparse.ArgumentParser(
        description="Approve BankCore accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("identifier", nargs="?", help="Username or email of the account")
    parser.add_argument("--revoke", action="store_true", help="Clear the approval flag")
    parser.add_argument("--pending", action="store_true", help="List unapproved accounts")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("SHARED_FS_ROOT"):
        print("Error: SHARED_FS_ROOT must point at the server's store directory")
        sys.exit(1)

    if args.pending:
        pending = list_pending()
        if not pending:
            print("No accounts waiting for approval.")
        for entry in pending:
            print(f"  {entry['username']}  (id: {entry['user_id']}, created {entry['created_at']})")
        return

    if not args.identifier:
        parser.error("identifier is required unless --pending is given")

    try:
        result = approve_account(args.identifier, revoke=args.revoke, dry_run=args.dry_run)
    except LookupError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        action = "revoke approval for" if args.revoke else "approve"
        print(f"[DRY RUN] Would {action} {result['username']} (id: {result['user_id']})")
    elif result["status"] == "unchanged":
        print(f"No changes needed for {result['username']}.")
    else:
        print(f"Account {result['username']} {result['status']} (id: {result['user_id']})")


if __name__ == "__main__":
    main()
