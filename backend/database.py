from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
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
        """Create MongoDB indexes for efficient queries."""
        try:
            # One subscription row per user (webhook upserts on user_id)
            await self.db.subscriptions.create_index("user_id", unique=True)
            await self.db.subscriptions.create_index("stripe_customer_id", sparse=True)
            await self.db.subscriptions.create_index("stripe_subscription_id", sparse=True)
            await self.db.subscriptions.create_index("stripe_payment_intent_id", sparse=True)
            await self.db.subscriptions.create_index("status")

            await self.db.checkout_sessions.create_index("session_id", unique=True)
            await self.db.checkout_sessions.create_index([("status", 1), ("created_at", 1)])
            await self.db.checkout_sessions.create_index("user_id")

            await self.db.payment_history.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.payment_history.create_index("stripe_payment_intent_id", sparse=True)
            await self.db.payment_history.create_index("stripe_charge_id", sparse=True)

            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except Exception:
                pass

            await self.db.cards.create_index("card_id", unique=True)
            await self.db.cards.create_index("user_id")
            try:
                await self.db.cards.create_index("slug", unique=True)
            except Exception:
                pass

            await self.db.leads.create_index([("card_id", 1), ("created_at", -1)])
            await self.db.analytics_events.create_index([("user_id", 1), ("event_type", 1), ("created_at", -1)])

            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
