from motor.motor_asyncio import AsyncIOMotorClient
from bson.codec_options import TypeCodec, TypeRegistry
from bson.decimal128 import Decimal128
from dotenv import load_dotenv
from decimal import Decimal
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

from unit_of_work import build_unit_of_work

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)


class DecimalCodec(TypeCodec):
    """Money is Decimal in Python and Decimal128 in MongoDB, so $inc and $gte stay exact."""
    python_type = Decimal
    bson_type = Decimal128

    def transform_python(self, value):
        return Decimal128(value)

    def transform_bson(self, value):
        return value.to_decimal()


def _create_client(mongo_url: str) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(
        mongo_url,
        tz_aware=True,
        type_registry=TypeRegistry([DecimalCodec()]),
    )

class Database:
    client: AsyncIOMotorClient = None
    db = None
    unit_of_work = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = _create_client(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            supports_transactions = await self._supports_transactions()
            self.unit_of_work = build_unit_of_work(
                os.getenv("TRANSACTION_MODE", "auto"),
                self.client,
                supports_transactions,
            )

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

    def get_unit_of_work(self):
        return self.unit_of_work

    async def _supports_transactions(self) -> bool:
        """Replica set members and mongos routers support multi-document transactions."""
        try:
            hello = await self.client.admin.command("hello")
        except Exception as e:
            logger.warning(f"Could not probe MongoDB topology: {e}")
            return False
        return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"

    async def _create_indexes(self):
        """Create MongoDB indexes for ledger lookups and uniqueness guarantees."""
        try:
            # One wallet per account; concurrent first-touch resolves on this index
            await self.db.wallets.create_index("account_id", unique=True)
            await self.db.wallet_transactions.create_index("transaction_id", unique=True)
            await self.db.wallet_transactions.create_index([("account_id", 1), ("created_at", -1)])
            await self.db.wallet_transactions.create_index("reference_id", sparse=True)
            await self.db.receipts.create_index("receipt_id", unique=True)
            await self.db.receipts.create_index([("account_id", 1), ("issued_at", -1)])

            await self.db.subscriptions.create_index("subscription_id", unique=True)
            await self.db.subscriptions.create_index("account_id", unique=True)
            await self.db.subscriptions.create_index([("status", 1), ("expires_at", 1)])
            await self.db.subscriptions.create_index([("status", 1), ("grace_period_end", 1)])

            await self.db.plans.create_index("plan_id", unique=True)
            await self.db.plans.create_index("name", unique=True)

            await self.db.billing_profiles.create_index("account_id", unique=True)
            await self.db.accounts.create_index("account_id", unique=True)
            await self.db.accounts.create_index("email", unique=True)

            await self.db.stores.create_index("store_id", unique=True)
            await self.db.stores.create_index("owner_id")
            await self.db.products.create_index("product_id", unique=True)
            await self.db.products.create_index("store_id")
            await self.db.orders.create_index("order_id", unique=True)
            await self.db.orders.create_index([("store_id", 1), ("created_at", -1)])
            await self.db.orders.create_index("fee_status", sparse=True)

            # Gateway webhook idempotency - duplicate event_id must not apply twice
            await self.db.payment_events.create_index("event_id", unique=True)

            await self.db.audit_logs.create_index([("account_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("action")
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.plans.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = _create_client(mongo_url)
        db = client[db_name]
        # Verify connection
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
