#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Ledger Engine Indexes

Creates:
1. unique (project_id, kind) on counters
2. unique (project_id, number) on purchase_orders and invoices
3. lookup indexes on sub_accounts, ledger_movements, project_members,
   approval_configs and payment_forecasts

Run: python migrations/001_ledger_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

from approval_ledger.sequence_allocator import SequenceAllocator

load_dotenv()


async def run_migration():
    """Execute the ledger index migration."""

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
    db_name = os.environ.get('DB_NAME', 'approval_ledger')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        # =====================================================
        # 1-2. Counters and document numbers
        # =====================================================
        await SequenceAllocator(db).create_unique_constraints()
        print("✓ Created counter and document number constraints")

        # =====================================================
        # 3. Lookup indexes
        # =====================================================
        await db.sub_accounts.create_index(
            [("project_id", 1), ("account_id", 1)],
            name="idx_sub_account_project_account"
        )
        await db.ledger_movements.create_index(
            [("sub_account_id", 1), ("created_at", 1)],
            name="idx_movement_sub_account"
        )
        await db.project_members.create_index(
            [("project_id", 1), ("user_id", 1)],
            unique=True,
            name="idx_member_project_user_unique"
        )
        await db.approval_configs.create_index(
            [("project_id", 1)],
            unique=True,
            name="idx_approval_config_project_unique"
        )
        await db.payment_forecasts.create_index(
            [("project_id", 1), ("items.invoice_id", 1)],
            name="idx_forecast_invoice"
        )
        for collection in ("purchase_orders", "invoices"):
            await db[collection].create_index(
                [("project_id", 1), ("status", 1)],
                name=f"idx_{collection}_status"
            )
        print("✓ Created lookup indexes")

        await db.migrations.update_one(
            {"migration_id": "001_ledger_indexes"},
            {"$set": {
                "migration_id": "001_ledger_indexes",
                "executed_at": datetime.utcnow(),
                "status": "success"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        return {"status": "success"}

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
