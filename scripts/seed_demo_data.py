#!/usr/bin/env python3
"""Seed demo data for local development.

Creates a vendor with a partner secret and an API key, a registered user and
a handful of coupons, then prints the identifiers needed to try the widget
and partner flows. Uses DATABASE_URL from the environment.

Usage:
    python scripts/seed_demo_data.py [--coupons N] [--create-schema]
"""

import argparse
import sys
import uuid
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from coupon_claim.config import settings
from coupon_claim.domain.claims import utcnow
from coupon_claim.domain.credentials import generate_api_key, generate_partner_secret
from coupon_claim.infrastructure.database import (
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from coupon_claim.infrastructure.models import Coupon, User, Vendor


def seed(num_coupons: int, create_schema: bool) -> dict[str, str]:
    engine = create_db_engine(settings.database_url)
    if create_schema:
        init_db(engine)

    vendor_id = str(uuid.uuid4())
    user_id = str(uuid.uuid4())
    partner_secret = generate_partner_secret()
    api_key = generate_api_key()
    now = utcnow()

    try:
        with session_scope(create_session_factory(engine)) as session:
            session.add(
                Vendor(
                    id=vendor_id,
                    name="Demo Coffee Roasters",
                    description="Seeded demo vendor",
                    website="https://example.com",
                    partner_secret=partner_secret,
                    api_key=api_key,
                )
            )
            session.add(User(id=user_id, email=f"demo+{user_id[:8]}@example.com", name="Demo User"))
            session.flush()
            for i in range(num_coupons):
                session.add(
                    Coupon(
                        id=str(uuid.uuid4()),
                        vendor_id=vendor_id,
                        code=f"DEMO-{i + 1:04d}-{uuid.uuid4().hex[:6].upper()}",
                        description=f"Demo coupon #{i + 1}",
                        discount_value="10%",
                        expiry_date=now + timedelta(days=90),
                    )
                )
    finally:
        engine.dispose()

    return {
        "vendor_id": vendor_id,
        "user_id": user_id,
        "partner_secret": partner_secret,
        "api_key": api_key,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo data for the coupon claim service")
    parser.add_argument("--coupons", type=int, default=10, help="Number of coupons to create")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables from the ORM models first (local SQLite only; use Alembic otherwise)",
    )
    args = parser.parse_args()

    try:
        seeded = seed(args.coupons, args.create_schema)
    except SQLAlchemyError as e:
        print(f"Error seeding data: {e}", file=sys.stderr)
        sys.exit(1)

    print("✓ Demo data seeded")
    for key, value in seeded.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    main()
