from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so stored UTC datetimes compare with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes. The unique indexes back the natural-key
        idempotency of owners, intents and sessions."""
        try:
            # Owners - case-insensitive email uniqueness drives DuplicateOwner
            await self.db.owners.create_index("owner_id", unique=True)
            await self.db.owners.create_index("email_normalized", unique=True)

            # Businesses
            await self.db.businesses.create_index("business_id", unique=True)
            await self.db.businesses.create_index("owner_id")
            await self.db.businesses.create_index("owner_email")
            await self.db.businesses.create_index("registration_status")
            await self.db.businesses.create_index("subscription.stripe_subscription_id", sparse=True)
            await self.db.businesses.create_index(
                [("registration_status", 1), ("deletion_scheduled_at", 1)]
            )

            # Plan catalog
            await self.db.subscription_plans.create_index("key", unique=True)
            await self.db.subscription_plans.create_index([("active", 1), ("recurring_price", 1)])

            # Payment intents - active_key is only present while PENDING/OPEN,
            # so at most one live intent exists per (business_id, plan_key)
            await self.db.payment_intents.create_index("intent_ref_id", unique=True)
            await self.db.payment_intents.create_index("active_key", unique=True, sparse=True)
            await self.db.payment_intents.create_index([("business_id", 1), ("external_intent_id", 1)])
            await self.db.payment_intents.create_index([("business_id", 1), ("status", 1)])

            # Onboarding sessions
            await self.db.onboarding_sessions.create_index("session_id", unique=True)
            await self.db.onboarding_sessions.create_index("updated_at")

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("business_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.businesses.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
