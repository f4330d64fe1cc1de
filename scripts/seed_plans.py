from __future__ import annotations

import argparse
import asyncio
import sys

from orgguard.core.logging import configure_logging
from orgguard.persistence.db import SessionLocal
from orgguard.services.plan_catalog import DEFAULT_PLANS, seed_plan_catalog


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Insert the default subscription plans that are missing")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the catalog slugs without writing anything",
    )
    return parser


async def _seed(args: argparse.Namespace) -> int:
    if args.dry_run:
        for plan in DEFAULT_PLANS:
            print(f"  {plan['slug']}: {plan['name']}")
        return 0
    # Published plans are never updated; only missing slugs are inserted.
    async with SessionLocal() as session:
        created = await seed_plan_catalog(session)
    if created:
        print(f"Seeded plans: {', '.join(created)}")
    else:
        print("Plan catalog already up to date")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_seed(args))
    except Exception as exc:  # noqa: BLE001 - surface seeding failures clearly
        print(f"seed_plans failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
