"""
Credit Gate Database Initialization

Rules:
1. Environment guard - production runs need CREDIT_GATE_INIT_CONFIRM=YES
2. Idempotent - reruns never duplicate collections, indexes or validators
3. Non-destructive - nothing is dropped, deleted or truncated
4. Accounts are opened by the application, not here
5. The accounts validator rejects any write that would make a balance negative
6. --dry-run prints what would be done

Usage:
    CLI one-off:   python -m credit_gate.db_init
    With dry-run:  python -m credit_gate.db_init --dry-run
    In production: ENVIRONMENT=production CREDIT_GATE_INIT_CONFIRM=YES python -m credit_gate.db_init

The server calls ensure_schema() on startup as well.
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.1.0"

REQUIRED_COLLECTIONS = [
    "accounts",
    "credit_transactions",
    "refresh_tokens",
    "credit_gate_meta"
]

# Enforced by the server on every write to accounts
ACCOUNTS_VALIDATOR = {
    "$jsonSchema": {
        "bsonType": "object",
        "required": ["account_id", "balance"],
        "properties": {
            "account_id": {"bsonType": "string"},
            "balance": {"bsonType": ["int", "long"], "minimum": 0},
            "lifetime_earned": {"bsonType": ["int", "long"], "minimum": 0},
            "txn_seq": {"bsonType": ["int", "long"], "minimum": 0},
            "active": {"bsonType": "bool"},
            "pending_txns": {"bsonType": "array"},
        },
    }
}

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    ("accounts", [("account_id", 1)], {"unique": True, "name": "idx_account_id_unique"}),
    ("accounts", [("pending_txns.created_at", 1)], {"sparse": True, "name": "idx_pending_created"}),

    ("credit_transactions", [("account_id", 1), ("sequence", -1)], {"name": "idx_account_sequence"}),
    ("credit_transactions", [("account_id", 1), ("created_at", -1)], {"name": "idx_account_created"}),
    ("credit_transactions", [("reference_id", 1)], {"sparse": True, "name": "idx_reference_id"}),

    ("refresh_tokens", [("id", 1)], {"unique": True, "name": "idx_token_id_unique"}),
    ("refresh_tokens", [("account_id", 1)], {"name": "idx_token_account"}),
    ("refresh_tokens", [("expires_at", 1)], {"name": "idx_token_expires"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("ENVIRONMENT", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("CREDIT_GATE_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: CREDIT_GATE_INIT_CONFIRM=YES\n"
                f"Current value: CREDIT_GATE_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    """Create a collection if it doesn't exist. accounts gets its validator on creation."""
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    options = {"validator": ACCOUNTS_VALIDATOR} if collection_name == "accounts" else {}
    try:
        await db.create_collection(collection_name, **options)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def apply_accounts_validator(db, dry_run: bool = False) -> str:
    """(Re)apply the non-negative balance validator to an existing accounts collection."""
    if dry_run:
        return "  [DRY-RUN] Would apply validator to 'accounts'"

    await db.command({
        "collMod": "accounts",
        "validator": ACCOUNTS_VALIDATOR,
        "validationLevel": "strict",
        "validationAction": "error",
    })
    return "  [UPDATE] Validator applied to 'accounts'"


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    """Create an index if it doesn't exist."""
    collection = db[collection_name]
    index_name = options.get("name", str(index_spec))

    existing_indexes = await collection.index_information()

    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    """Update or create version stamp document."""
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.credit_gate_meta.update_one(
        {"_id": "credit_gate_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def ensure_schema(db, dry_run: bool = False) -> List[str]:
    """Collections, validator, indexes and version stamp. Returns one line per step."""
    results = []

    for collection_name in REQUIRED_COLLECTIONS:
        results.append(await create_collection_if_not_exists(db, collection_name, dry_run))

    results.append(await apply_accounts_validator(db, dry_run))

    for collection_name, index_spec, options in REQUIRED_INDEXES:
        results.append(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    results.append(await update_version_stamp(db, dry_run))
    return results


async def run_init(dry_run: bool = False):
    """Run the database initialization from the command line."""
    from dotenv import load_dotenv
    from motor.motor_asyncio import AsyncIOMotorClient

    env_path = Path(__file__).parent.parent / '.env'
    load_dotenv(env_path)

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        logger.error(env_message)
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=5000)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    try:
        for line in await ensure_schema(db, dry_run):
            logger.info(line)
    finally:
        client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Credit gate DB init completed")
    logger.info("=" * 50)


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Credit Gate Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m credit_gate.db_init

    # Dry run (no changes)
    python -m credit_gate.db_init --dry-run

    # Production
    ENVIRONMENT=production CREDIT_GATE_INIT_CONFIRM=YES python -m credit_gate.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
