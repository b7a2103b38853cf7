import asyncio
import logging
import os
import subprocess
import sys

from tortoise import Tortoise, connections

from .config import DB_URL

# Configure logging
logger = logging.getLogger(__name__)

MODELS_MODULES = {"models": ["payout_engine.models"]}


async def run_migrations():
    """Run database migrations using aerich"""
    try:
        logger.info("Running database migrations...")

        # Check if migrations directory exists
        if not os.path.exists("migrations"):
            logger.info("Initializing aerich...")
            result = subprocess.run([
                sys.executable, "-m", "aerich", "init",
                "-t", "payout_engine.config.TORTOISE_ORM"
            ], capture_output=True, text=True)
            if result.returncode != 0:
                logger.error(f"Failed to initialize aerich: {result.stderr}")
                return False

        # Apply pending migrations
        logger.info("Applying migrations...")
        result = subprocess.run([
            sys.executable, "-m", "aerich", "upgrade"
        ], capture_output=True, text=True)

        if result.returncode == 0:
            logger.info("Migrations completed successfully")
            return True
        else:
            logger.error(f"Migration failed: {result.stderr}")
            return False

    except OSError as e:
        logger.error(f"Error running migrations: {e}")
        return False


async def init_db_with_retry(db_url=None, max_retries=5, retry_delay=5):
    """Initialize database connection with retry logic"""
    db_url = db_url or DB_URL
    for attempt in range(max_retries):
        try:
            logger.info(f"Initializing database (attempt {attempt + 1}/{max_retries})")

            await Tortoise.init(
                db_url=db_url,
                modules=MODELS_MODULES,
                use_tz=True,
                timezone="UTC",
            )

            if "sqlite" in db_url:  # For SQLite in-memory testing
                await Tortoise.generate_schemas()

            logger.info("Database connection initialized successfully.")
            return True

        except Exception as e:
            logger.warning(f"Database connection attempt {attempt + 1} failed: {e}")
            if attempt < max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("All database connection attempts failed")
                raise


async def init_db(db_url=None):
    """Initialize database connection and run migrations."""
    db_url = db_url or DB_URL
    await init_db_with_retry(db_url)

    # Schema for real databases is owned by aerich
    if "sqlite" not in db_url:
        migration_success = await run_migrations()
        if not migration_success:
            logger.warning("Migrations failed, but continuing with startup")


async def close_db():
    """Close database connection."""
    await connections.close_all()
    logger.info("Database connection closed.")
