"""
Idempotent seed: default plan catalogue, plus wallets for accounts that have none.
Optional SEED_WALLET_BALANCE credits newly created wallets (local testing only);
the credit goes through the ledger like any recharge.
"""
import asyncio
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

SEED_WALLET_BALANCE = float(os.environ.get("SEED_WALLET_BALANCE", "0"))


async def seed_database():
    from database import database, get_db_context
    from models import TransactionReason
    from services.plan_catalogue import plan_catalogue
    from services.wallet_service import wallet_service

    async with get_db_context() as db:
        database.db = db
        print("Seeding database (idempotent)...")

        created = await plan_catalogue.seed_default_plans(db)
        print(f"  Plans: {created} created")

        wallets_created = 0
        async for account in db.accounts.find({}, {"_id": 0, "account_id": 1}):
            account_id = account["account_id"]
            if await wallet_service.get_wallet(account_id):
                continue
            await wallet_service.ensure_wallet(account_id)
            if SEED_WALLET_BALANCE > 0:
                await wallet_service.credit(
                    account_id, SEED_WALLET_BALANCE, TransactionReason.RECHARGE, reference_id="SEED"
                )
            wallets_created += 1
        print(f"  Wallets: {wallets_created} created for existing accounts")

        print("Seeding complete.")


if __name__ == "__main__":
    asyncio.run(seed_database())
