import asyncio
import logging
import sys
import os

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tortoise import Tortoise, connections
from payout_engine.accounts import create_vendor_account
from payout_engine.config import DB_URL
from payout_engine.db import MODELS_MODULES
from payout_engine.models import PaymentMode, VendorAccount

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = [
    "vendor_accounts", "settled_line_items", "commission_transactions", "payout_requests",
    "payout_allocations", "vendor_ledgers", "ledger_entries", "vendor_subscriptions",
    "subscription_payments", "refund_adjustments", "clawbacks", "metrics",
]


async def init_db(seed_demo_vendors=False):
    try:
        # Connect to the database
        logger.info(f"Initializing database connection to {DB_URL}")
        await Tortoise.init(db_url=DB_URL, modules=MODELS_MODULES, use_tz=True, timezone="UTC")

        # Generate the schema
        logger.info("Creating database schema")
        await Tortoise.generate_schemas(safe=True)

        # Check each table
        conn = Tortoise.get_connection("default")
        for table in EXPECTED_TABLES:
            await conn.execute_query(f"SELECT COUNT(*) FROM {table}")
            logger.info(f"Table '{table}' exists and is accessible")

        if seed_demo_vendors and not await VendorAccount.exists():
            await create_vendor_account("Demo Commission Vendor", commission_rate="10")
            await create_vendor_account(
                "Demo Subscription Vendor", payment_mode=PaymentMode.SUBSCRIPTION, subscription_fee="299.00"
            )
            logger.info("Seeded demo vendors")

        logger.info("Database initialization completed successfully")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    finally:
        # Close connection
        await connections.close_all()

if __name__ == "__main__":
    try:
        asyncio.run(init_db(seed_demo_vendors="--seed" in sys.argv))
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)
