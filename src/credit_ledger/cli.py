"""
Admin tooling for the credit ledger.

    credit-ledger grant --email=test@example.com --credits=50
    credit-ledger grant-all --credits=50
    credit-ledger check [--user-id=...]
    credit-ledger sweep [--every=3600]
    credit-ledger schema --backend=sql
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Sequence

from .bootstrap import LedgerStack, build_stack
from .config import get_settings
from .exceptions import CreditError
from .models.base import utcnow
from .models.transaction import CreditStatus, GrantOptions, TransactionScene
from .models.user import UserAccount
from .schema_generator import render
from .services.balance import is_spendable


logger = logging.getLogger(__name__)


async def _resolve_user(stack: LedgerStack, user_id: Optional[str], email: Optional[str]) -> UserAccount:
    user = None
    if user_id:
        user = await stack.db.get_user(user_id)
    elif email:
        user = await stack.db.get_user_by_email(email)
    if user is None:
        raise SystemExit(f"User not found: {user_id or email}")
    return user


async def grant_to_user(stack: LedgerStack, args: argparse.Namespace) -> int:
    user = await _resolve_user(stack, args.user_id, args.email)
    existing = await stack.credit_service.get_credit_history(user.id or "")
    if existing:
        print(f"User already has {len(existing)} credit record(s); adding a new grant")

    tx = await stack.credit_service.grant(
        user_id=user.id or "",
        amount=args.credits,
        scene=args.scene,
        options=GrantOptions(expires_in_days=args.days, description=args.description),
    )
    print(f"Granted {args.credits} credits to {user.email or user.id}")
    print(f"   Expires: {tx.expires_at.isoformat() if tx.expires_at else 'never'}")
    print(f"   Credit ID: {tx.id}")
    return 0


async def grant_to_all(stack: LedgerStack, args: argparse.Namespace) -> int:
    users = list(await stack.db.get_users())
    if not users:
        print("No users found.")
        return 0

    success = skipped = errors = 0
    for user in users:
        existing = await stack.credit_service.get_credit_history(user.id or "")
        if existing:
            print(f"Skipping {user.email or user.id}: already has {len(existing)} credit record(s)")
            skipped += 1
            continue
        try:
            await stack.credit_service.grant(
                user_id=user.id or "",
                amount=args.credits,
                scene=TransactionScene.GIFT,
                options=GrantOptions(expires_in_days=args.days, description=args.description),
            )
        except CreditError as exc:
            logger.error("Granting to %s failed: %s", user.id, exc.message)
            errors += 1
            continue
        print(f"Granted {args.credits} credits to {user.email or user.id}")
        success += 1

    print(f"Success: {success}  Skipped: {skipped}  Errors: {errors}  Total: {len(users)}")
    return 1 if errors else 0


async def check_credits(stack: LedgerStack, args: argparse.Namespace) -> int:
    if args.user_id:
        users: List[UserAccount] = [await _resolve_user(stack, args.user_id, None)]
    else:
        users = list(await stack.db.get_users())

    now = utcnow()
    for user in users:
        rows = await stack.credit_service.get_credit_history(user.id or "")
        print(f"\nUser: {user.email or '-'} ({user.id})")
        if not rows:
            print("   No credit records found")
            continue
        for idx, row in enumerate(rows, start=1):
            lapsed = row.status is CreditStatus.ACTIVE and not is_spendable(row, now)
            print(
                f"   {idx}. {row.transaction_type.value:<7} {row.transaction_scene.value:<15} "
                f"credits={row.credits} remaining={row.remaining_credits} "
                f"status={row.status.value}{' (lapsed)' if lapsed else ''} "
                f"expires={row.expires_at.isoformat() if row.expires_at else 'N/A'}"
            )
        balance = await stack.credit_service.remaining_balance(user.id or "")
        print(f"   Total active remaining credits: {balance}")
    return 0


async def sweep(stack: LedgerStack, args: argparse.Namespace) -> int:
    if args.every:
        await stack.expiration_service.run_periodic_sweep(args.every)
        return 0
    count = await stack.expiration_service.check_credit_expiration()
    print(f"Expired {count} credit record(s)")
    return 0


COMMANDS = {
    "grant": grant_to_user,
    "grant-all": grant_to_all,
    "check": check_credits,
    "sweep": sweep,
}


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="credit-ledger", description="Credit ledger admin tooling.")
    sub = parser.add_subparsers(dest="command", required=True)

    grant = sub.add_parser("grant", help="Grant credits to one user.")
    who = grant.add_mutually_exclusive_group(required=True)
    who.add_argument("--user-id")
    who.add_argument("--email")
    grant.add_argument("--credits", type=int, default=settings.initial_credits_amount)
    grant.add_argument("--days", type=int, default=settings.initial_credits_valid_days)
    grant.add_argument(
        "--scene",
        choices=[s.value for s in TransactionScene],
        default=TransactionScene.GIFT.value,
    )
    grant.add_argument("--description", default=settings.initial_credits_description)

    grant_all = sub.add_parser("grant-all", help="Grant credits to every user without any.")
    grant_all.add_argument("--credits", type=int, default=settings.initial_credits_amount)
    grant_all.add_argument("--days", type=int, default=settings.initial_credits_valid_days)
    grant_all.add_argument("--description", default=settings.initial_credits_description)

    check = sub.add_parser("check", help="Print credit records and balances.")
    check.add_argument("--user-id")

    sweep_cmd = sub.add_parser("sweep", help="Mark lapsed credits expired.")
    sweep_cmd.add_argument("--every", type=float, help="Keep running, sweeping every N seconds.")

    schema = sub.add_parser("schema", help="Print the DB schema.")
    schema.add_argument("--backend", choices=["sql", "nosql"], required=True)
    schema.add_argument("--dialect", default="postgres")
    return parser


async def _run(args: argparse.Namespace) -> int:
    stack = build_stack(get_settings())
    await stack.db.init_schema()
    try:
        return await COMMANDS[args.command](stack, args)
    except CreditError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await stack.db.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=get_settings().log_level)
    if args.command == "schema":
        print(render(args.backend, dialect=args.dialect))
        return 0
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
