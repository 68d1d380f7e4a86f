# core/db.py
import logging

from motor.motor_asyncio import AsyncIOMotorClient
from core.config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient | None = None
db = None


async def connect_db():
    global client, db

    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        uuidRepresentation="standard",
        serverSelectionTimeoutMS=5000,
    )

    await client.admin.command("ping")

    db = client[settings.MONGO_DB]

    logger.info("MongoDB connected (%s)", settings.MONGO_DB)


async def ensure_indexes(database) -> None:
    trades = database["trades"]
    await trades.create_index([("journal_id", 1), ("datetime", 1)])
    await trades.create_index([("journal_id", 1), ("buy_fill_id", 1)])
    await trades.create_index([("journal_id", 1), ("sell_fill_id", 1)])
    await trades.create_index("session_id")

    await database["trade_sessions"].create_index("journal_id")
    await database["journals"].create_index("user_id")
    await database["custom_field_options"].create_index(
        [("user_id", 1), ("field_name", 1), ("option_value", 1)],
        unique=True,
    )


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


def get_db():
    if db is None:
        raise RuntimeError("Database not initialized")
    return db
