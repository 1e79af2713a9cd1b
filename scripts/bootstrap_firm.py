#!/usr/bin/env python3
"""Bootstrap a firm and its owner account.

Firm owners are the only accounts that can send invites, so a fresh
deployment needs one created out of band.

Usage:
    # Using environment variables:
    FIRM_OWNER_EMAIL=owner@example.com FIRM_OWNER_PASSWORD=SecurePassword123! \\
        FIRM_NAME="Acme Accounting" python scripts/bootstrap_firm.py

    # Or with command line args:
    python scripts/bootstrap_firm.py --email owner@example.com \\
        --password SecurePassword123! --firm-name "Acme Accounting"

Environment Variables:
    FIRM_OWNER_EMAIL: Email for the firm owner
    FIRM_OWNER_PASSWORD: Password for the firm owner (same length rule as the API)
    FIRM_OWNER_NAME: Display name for the firm owner (optional)
    FIRM_NAME: Name of the firm
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

from docuflow.storage.errors import ConstraintViolation


def password_problem(password: str) -> str | None:
    """Apply the API's password rule so owners can log in through it."""
    from pydantic import TypeAdapter, ValidationError

    from docuflow.api.schemas import NewPassword

    try:
        TypeAdapter(NewPassword).validate_python(password)
    except ValidationError as exc:
        return exc.errors()[0]["msg"]
    return None


async def bootstrap_firm(
    email: str,
    password: str,
    firm_name: str,
    owner_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the owner account and its firm, or report the existing pair.

    Returns:
        dict with user_id, firm_id, email and status
    """
    # Import here to avoid loading config before env vars are set
    from docuflow.service.runtime import get_runtime

    runtime = get_runtime()
    email = email.strip().lower()

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        if existing_user.role != "firm":
            raise ValueError(
                f"{email} already exists with role '{existing_user.role}' and cannot own a firm"
            )
        firm = runtime.store.get_firm_by_owner(existing_user.id)
        if firm:
            print(f"Firm '{firm.name}' already exists (id: {firm.id})")
            return {
                "user_id": existing_user.id,
                "firm_id": firm.id,
                "email": email,
                "status": "already_exists",
            }
        if dry_run:
            print(f"[DRY RUN] Would create firm '{firm_name}' for existing owner {email}")
            return {"user_id": existing_user.id, "firm_id": None, "email": email, "status": "dry_run"}
        firm = runtime.store.create_firm(firm_name, existing_user.id)
        print(f"Created firm '{firm.name}' for existing owner {email}")
        return {
            "user_id": existing_user.id,
            "firm_id": firm.id,
            "email": email,
            "status": "firm_created",
        }

    if dry_run:
        print(f"[DRY RUN] Would create firm owner {email} and firm '{firm_name}'")
        return {"user_id": None, "firm_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, owner_name, role="firm")
    runtime.auth.save_password(user.id, password)
    firm = runtime.store.create_firm(firm_name, user.id)

    print(f"Created firm owner: {email} (id: {user.id})")
    return {
        "user_id": user.id,
        "firm_id": firm.id,
        "email": email,
        "status": "created",
    }


def _env_arg(parser: argparse.ArgumentParser, flag: str, env: str, help_text: str) -> None:
    parser.add_argument(flag, default=os.environ.get(env), help=f"{help_text} (or set {env})")


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a firm and its owner account for DocuFlow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    _env_arg(parser, "--email", "FIRM_OWNER_EMAIL", "Owner email")
    _env_arg(parser, "--password", "FIRM_OWNER_PASSWORD", "Owner password")
    _env_arg(parser, "--owner-name", "FIRM_OWNER_NAME", "Owner display name")
    _env_arg(parser, "--firm-name", "FIRM_NAME", "Firm name")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change and stop")
    args = parser.parse_args()

    for flag in ("email", "password", "firm_name"):
        if not (getattr(args, flag) or "").strip():
            parser.error(f"--{flag.replace('_', '-')} is required")
    problem = password_problem(args.password)
    if problem:
        parser.error(f"weak password: {problem}")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/docuflow-bootstrap")
        print("Note: no DATABASE_URL; writing to the file-backed memory store")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_firm(
                args.email,
                args.password,
                args.firm_name.strip(),
                owner_name=args.owner_name,
                dry_run=args.dry_run,
            )
        )
    except (ValueError, RuntimeError, ConstraintViolation) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if result["status"] != "dry_run":
        print(f"status={result['status']} user_id={result['user_id']} firm_id={result['firm_id']}")


if __name__ == "__main__":
    main()
