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
            # Stored datetimes come back as aware UTC
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
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
        """Create MongoDB indexes for entitlement lookups and idempotency guards."""
        try:
            # Accounts
            await self.db.accounts.create_index("account_id", unique=True)
            try:
                await self.db.accounts.create_index("email", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.accounts.create_index("external_subscription_id", sparse=True)
            await self.db.accounts.create_index("paypal_transaction_id", sparse=True)
            await self.db.accounts.create_index("paypal_order_id", sparse=True)
            await self.db.accounts.create_index("credits_reset_date", sparse=True)

            # Site settings singleton
            await self.db.site_settings.create_index("settings_id", unique=True)

            # Webhook ledger
            try:
                await self.db.billing_events.create_index("event_key", unique=True)
            except Exception:
                pass
            await self.db.billing_events.create_index([("subject_id", 1), ("status", 1), ("received_at", 1)])

            # Audit log indexes
            await self.db.audit_logs.create_index("log_id", unique=True)
            await self.db.audit_logs.create_index([("account_id", 1), ("created_at", -1)])
            await self.db.audit_logs.create_index("action")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
