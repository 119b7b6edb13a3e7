#!/usr/bin/env python3
"""CLI script to create an application user.

Usage:
    uv run python scripts/create_user.py --email ana@example.com --password changeme
    uv run python scripts/create_user.py --email ana@example.com --password changeme --name "Ana" --pipedrive-key <token>

Connects directly to the database using DATABASE_URL from environment or .env file.
Creates missing tables, then inserts the user with a bcrypt password hash.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.crmsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def create(email: str, password: str, name: str | None, pipedrive_key: str | None) -> None:
    """Create the user through the repository used by the application."""
    from src.crmsync.core.database import close_db, get_session, init_db
    from src.crmsync.core.security import hash_password
    from src.crmsync.crm.repository import CRMRepository

    await init_db()
    repo = CRMRepository(session_factory=get_session)

    if await repo.get_user_by_email(email) is not None:
        print(f"User already exists: {email}")
        await close_db()
        sys.exit(1)

    user = await repo.create_user(
        email=email,
        name=name,
        hashed_password=hash_password(password),
        pipedrive_api_key=pipedrive_key,
    )
    print("User created successfully:")
    print(f"  ID:       {user.id}")
    print(f"  Email:    {user.email}")
    print(f"  Pipedrive key: {'set' if user.pipedrive_api_key else 'not set'}")

    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an application user")
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--password", required=True, help="Login password")
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--pipedrive-key", default=None, help="Pipedrive API token for this user")
    args = parser.parse_args()

    asyncio.run(create(args.email, args.password, args.name, args.pipedrive_key))


if __name__ == "__main__":
    main()
