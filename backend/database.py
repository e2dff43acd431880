from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
import logging

from config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Process-wide Motor client. Created once in the app lifespan and shared."""

    client: AsyncIOMotorClient = None
    db = None

    def __init__(self, settings: Settings):
        self.settings = settings

    async def connect(self):
        try:
            self.client = _make_client(self.settings)
            self.db = self.client[self.settings.db_name]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {self.settings.db_name}")

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
        """Create the unique indexes every insert-if-absent relies on."""
        # Trials - one per email
        await self.db.trials.create_index("email", unique=True)

        # Stripe webhook idempotency - duplicate event id must not process twice
        await self.db.processed_events.create_index("processor_event_id", unique=True)

        # Purchases
        await self.db.purchases.create_index("purchase_id", unique=True)
        await self.db.purchases.create_index([("email", 1), ("status", 1)])
        await self.db.purchases.create_index("processor_session_id", unique=True, sparse=True)
        await self.db.purchases.create_index("processor_payment_intent_id", sparse=True)
        try:
            # At most one paid purchase per email
            await self.db.purchases.create_index(
                "email",
                name="email_paid_unique",
                unique=True,
                partialFilterExpression={"status": "paid"},
            )
        except OperationFailure as e:
            # Existing duplicate paid rows must be resolved by an operator first
            logger.error(f"Could not create paid-purchase uniqueness index: {e}")

        # Stripe customer links
        await self.db.customer_links.create_index("email", unique=True)

        # Audit log indexes - for timeline queries
        await self.db.audit_logs.create_index([("email_hash", 1), ("timestamp", -1)])
        await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
        logger.info("MongoDB indexes created/verified")


def _make_client(settings: Settings) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(
        settings.mongo_url,
        tz_aware=True,
        serverSelectionTimeoutMS=settings.mongo_timeout_ms,
        connectTimeoutMS=settings.mongo_timeout_ms,
        socketTimeoutMS=settings.mongo_timeout_ms,
    )

