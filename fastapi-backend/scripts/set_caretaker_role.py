#!/usr/bin/env python3
"""
Promote a user to caretaker in the configured document store and print a bearer token.

Usage:
    python scripts/set_caretaker_role.py USER_ID [EMAIL]

The profile is created (as pending) first when the user has never signed in.
This script uses the same app code (importing hostel_issues) so profiles and
tokens are created consistently with the running backend.
"""
import asyncio
import sys

from hostel_issues.auth import create_access_token
from hostel_issues.config import get_settings, get_tracker_config
from hostel_issues.main import build_store
from hostel_issues.models import ROLE_CARETAKER
from hostel_issues.profiles import ProfileService


async def set_caretaker_role(user_id: str, email: str = None) -> None:
    settings = get_settings()
    store = await build_store(settings)
    try:
        profiles = ProfileService(store, get_tracker_config(settings))
        await profiles.ensure_profile(user_id, email)
        await profiles.assign_role(user_id, ROLE_CARETAKER)
    finally:
        await store.close()

    print(f"Caretaker role added to user: {user_id}")
    print(f"access_token: {create_access_token(subject=user_id, email=email)}")


def main():
    if len(sys.argv) < 2:
        print(__doc__, file=sys.stderr)
        sys.exit(2)
    asyncio.run(set_caretaker_role(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None))


if __name__ == "__main__":
    main()
