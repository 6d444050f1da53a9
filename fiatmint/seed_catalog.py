"""
Database seeding script for the initial catalog.

Creates token bundles, a few perks and a sample governance vote for
development. Run this script after the database is set up but before first use.
"""

import asyncio
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fiatmint.app.db.session import AsyncSessionLocal, engine, Base, utcnow
from fiatmint.app.domain.governance.vote_service import VoteService
from fiatmint.app.domain.perks.perk_service import PerkService
from fiatmint.app.models.perk_enums import PerkType
from fiatmint.app.models.product import Product
from fiatmint.app.schemas.perk import PerkCreate
from fiatmint.app.schemas.vote import VoteCreate
from sqlalchemy import select

SEED_ACTOR = "seed-script"

PRODUCTS = [
    ("Starter Pack", Decimal("100"), Decimal("10.00")),
    ("Fan Pack", Decimal("550"), Decimal("50.00")),
    ("Supporter Pack", Decimal("1200"), Decimal("100.00")),
]

PERKS = [
    PerkCreate(name="Signed Poster", token_cost=Decimal("150"), perk_type=PerkType.PHYSICAL,
               metadata={"shipping": "EU only"}),
    PerkCreate(name="Exclusive Wallpaper", token_cost=Decimal("25"), perk_type=PerkType.DIGITAL),
    PerkCreate(name="Backstage Tour", token_cost=Decimal("1000"), perk_type=PerkType.EXPERIENCE,
               description="Guided tour before the season opener"),
]


async def seed_catalog():
    """
    Seed products, perks and one open vote.

    Skips everything when products already exist.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting catalog seeding...")

        existing = (await db.execute(select(Product).limit(1))).scalar_one_or_none()
        if existing:
            print("ℹ️  Catalog already seeded, skipping")
            return

        for name, tokens, price in PRODUCTS:
            db.add(Product(name=name, token_amount=tokens, price_eur=price))
            print(f"✅ Created product {name} ({tokens} tokens for €{price})")
        await db.commit()

        for perk_data in PERKS:
            perk = await PerkService.create_perk(db, perk_data, actor_id=SEED_ACTOR)
            print(f"✅ Created perk {perk.name} ({perk.token_cost} tokens)")

        now = utcnow()
        vote = await VoteService.create_vote(
            db,
            VoteCreate(
                title="Next away-day destination",
                description="Where should the next fan trip go?",
                start_at=now,
                end_at=now + timedelta(days=14),
                options=["Lisbon", "Berlin", "Porto"],
            ),
            actor_id=SEED_ACTOR,
        )
        print(f"✅ Created vote '{vote.title}' with {len(vote.options)} options")

        print("\n🎉 Catalog seeding completed successfully!")
        print("\nNote: users are created on their first authenticated request")


if __name__ == "__main__":
    asyncio.run(seed_catalog())
