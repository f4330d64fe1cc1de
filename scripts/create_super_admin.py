from __future__ import annotations

import argparse
import asyncio
import sys

from orgguard.core.logging import configure_logging
from orgguard.domain.permissions import PERMISSION_GROUPS
from orgguard.persistence.db import SessionLocal
from orgguard.services.super_admins import create_super_admin


def _build_parser() -> argparse.ArgumentParser:
    # Super admins are only ever created out of band by an operator.
    parser = argparse.ArgumentParser(description="Create a super admin for an existing user")
    parser.add_argument("--user-id", required=True, help="Identity-layer user id")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--email", default=None, help="Optional contact email")
    parser.add_argument(
        "--group",
        choices=sorted(PERMISSION_GROUPS),
        default=None,
        help="Permission preset to grant",
    )
    parser.add_argument(
        "--permission",
        action="append",
        default=[],
        help="Individual permission token; may be repeated",
    )
    parser.add_argument("--created-by", default=None, help="Operator recorded as creator")
    return parser


def _resolve_permissions(args: argparse.Namespace) -> list[str]:
    tokens: list[str] = []
    if args.group:
        tokens.extend(permission.value for permission in PERMISSION_GROUPS[args.group])
    for token in args.permission:
        if token not in tokens:
            tokens.append(token)
    return tokens


async def _create(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        result = await create_super_admin(
            session,
            user_id=args.user_id,
            name=args.name,
            email=args.email,
            permissions=_resolve_permissions(args),
            created_by=args.created_by,
        )
    if result.error is not None:
        print(f"create_super_admin failed: {result.error.message}", file=sys.stderr)
        return 1
    view = result.data
    print("Super admin created:")
    print(f"  id: {view.admin.id}")
    print(f"  user_id: {view.admin.user_id}")
    print(f"  permissions: {', '.join(view.permissions) or '(none)'}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_super_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
