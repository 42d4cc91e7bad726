#!/usr/bin/env python3
"""
Register or update a tenant's cycle configuration.

Creates the tables if needed and writes one ``cycle_configurations`` row.
Values are validated with the same bounds the engine applies when loading.

Usage:
    # Weekly cycles anchored on a Sunday
    python -m cycle_engine.commands.seed --tenant-id 98000001 --anchor 2025-01-05

    # Custom length and categories, disabled for now
    python -m cycle_engine.commands.seed --tenant-id 98000002 --anchor 2025-01-01 \\
        --length 14 --categories corporation_info members --disabled
"""

import argparse
import asyncio
import logging
import sys
from datetime import date
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select

from ..database.models import CycleConfiguration, utcnow
from ..models import CycleConfig
from ..services.database_service import DatabaseService

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("cycle_engine.seed")


async def seed_tenant(
    tenant_id: str,
    anchor: date,
    length: Optional[int] = None,
    categories: Optional[List[str]] = None,
    enabled: bool = True,
    database_url: Optional[str] = None,
) -> bool:
    """
    Insert or update one tenant configuration.

    Returns:
        True if a new row was created, False if an existing one was updated
    """
    values = {
        "tenant_id": tenant_id,
        "enabled": enabled,
        "cycle_anchor_date": anchor,
    }
    if length is not None:
        values["cycle_length_days"] = length
    if categories:
        values["categories"] = categories
    # Raises ValidationError on out-of-range values
    CycleConfig.model_validate(values)

    database = DatabaseService(database_url)
    await database.open()
    try:
        await database.init_db()
        async with database.get_session() as session:
            result = await session.execute(
                select(CycleConfiguration).where(CycleConfiguration.tenant_id == tenant_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                session.add(
                    CycleConfiguration(
                        tenant_id=tenant_id,
                        enabled=enabled,
                        cycle_anchor_date=anchor,
                        cycle_length_days=length,
                        categories=categories or None,
                    )
                )
                logger.info(f"✅ Registered tenant {tenant_id} (anchor {anchor.isoformat()})")
                return True

            row.enabled = enabled
            row.cycle_anchor_date = anchor
            row.cycle_length_days = length
            row.categories = categories or None
            row.updated_at = utcnow()
            logger.info(f"✅ Updated tenant {tenant_id} (anchor {anchor.isoformat()})")
            return False
    finally:
        await database.close()


def main():
    parser = argparse.ArgumentParser(description="Register or update a tenant cycle configuration")
    parser.add_argument("--tenant-id", required=True, help="Tenant (corporation) identifier")
    parser.add_argument("--anchor", required=True, type=date.fromisoformat, help="Start of cycle 0 (YYYY-MM-DD, UTC)")
    parser.add_argument("--length", type=int, help="Cycle length in days (defaults to config)")
    parser.add_argument("--categories", nargs="+", help="Telemetry categories (defaults to config)")
    parser.add_argument("--disabled", action="store_true", help="Store the tenant as disabled")
    args = parser.parse_args()

    try:
        asyncio.run(
            seed_tenant(
                args.tenant_id,
                args.anchor,
                length=args.length,
                categories=args.categories,
                enabled=not args.disabled,
            )
        )
    except ValidationError as e:
        logger.error(f"❌ Invalid configuration: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
