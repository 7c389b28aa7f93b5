"""
Seed script for the Scholarship Lifecycle Engine.

Creates:
- Indexes for all engine collections
- Default policy settings (global_settings key 'policies')
- Budget buckets for the current school year
- An admin access token for local testing
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import timedelta
import os
from pathlib import Path
from dotenv import load_dotenv
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

from auth import create_access_token
from engine.application_lifecycle import current_school_year
from engine.policy_service import DEFAULT_POLICIES
from services import ScholarshipEngine

# Load environment
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'scholarship_management')

DEFAULT_BUCKETS = [
    ("scholarship_benefits", 5000000.00, "General scholarship grants"),
    ("merit_scholarship", 2000000.00, "Merit-based scholarship grants"),
    ("need_based_scholarship", 3000000.00, "Need-based scholarship grants"),
]


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]
    engine = ScholarshipEngine(db)
    school_year = current_school_year()

    print("🌱 Starting database seeding...")

    try:
        await engine.create_indexes()
        print("✅ Indexes created")

        for key, value in DEFAULT_POLICIES.items():
            await engine.policy_service.update_policy(key, value)
        print(f"✅ Policies: {DEFAULT_POLICIES}")

        for budget_type, total, description in DEFAULT_BUCKETS:
            bucket = await engine.ledger.upsert_budget(budget_type, school_year, total, description, "seed")
            print(f"💰 {budget_type}/{school_year}: total={bucket['total_budget']} remaining={bucket['remaining_budget']}")

        token = create_access_token(
            {"user_id": "seed-admin", "role": "admin", "name": "Seed Admin"},
            expires_delta=timedelta(days=1)
        )

        print("\n" + "="*60)
        print("🎉 Seeding complete")
        print(f"📅 School year: {school_year}")
        print(f"🔑 Admin token (24h): {token}")
        print("\n📖 API Documentation: http://localhost:8001/docs")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
