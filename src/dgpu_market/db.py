"""MongoDB database operations for the dGPU market."""

from typing import Optional, Any
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
import structlog

from .config import get_settings

logger = structlog.get_logger()

# Global client
_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _strip_id(doc: Optional[dict]) -> Optional[dict]:
    """Drop Mongo's _id so the document validates into a model."""
    if doc is None:
        return None
    doc.pop("_id", None)
    return doc


async def get_db() -> AsyncIOMotorDatabase:
    """Get database connection."""
    global _client, _db

    if _db is None:
        settings = get_settings()
        # tz_aware so rental windows come back as UTC-aware datetimes
        _client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
        _db = _client[settings.mongodb_database]
        logger.info("mongodb_connected", database=settings.mongodb_database)

    return _db


async def get_collection(name: str) -> AsyncIOMotorCollection:
    """Get a collection by name."""
    db = await get_db()
    return db[name]


async def close_db():
    """Close database connection."""
    global _client, _db
    if _client:
        _client.close()
        _client = None
        _db = None
        logger.info("mongodb_disconnected")


# ============================================================
# Collection Names
# ============================================================

AGENTS_COLLECTION = "market_agents"
RENTALS_COLLECTION = "market_rentals"
CHAT_MESSAGES_COLLECTION = "market_chat_messages"
USAGE_LOGS_COLLECTION = "market_usage_logs"


# ============================================================
# Agent Operations
# ============================================================

async def create_agent(agent_data: dict) -> str:
    """Create a new agent. Returns slug."""
    collection = await get_collection(AGENTS_COLLECTION)
    await collection.insert_one(agent_data)
    logger.info("agent_created", agent_id=agent_data["agent_id"], slug=agent_data["slug"])
    return agent_data["slug"]


async def get_agent_by_slug(slug: str) -> Optional[dict]:
    """Get agent by slug."""
    collection = await get_collection(AGENTS_COLLECTION)
    return _strip_id(await collection.find_one({"slug": slug}))


async def list_agents(
    category: Optional[str] = None,
    status: Optional[str] = "active",
    limit: int = 100,
) -> list[dict]:
    """List agents, best rated first."""
    collection = await get_collection(AGENTS_COLLECTION)

    query: dict[str, Any] = {}
    if category:
        query["category"] = category
    if status:
        query["status"] = status

    cursor = collection.find(query).sort([
        ("rating", -1),
        ("deployments", -1),
    ]).limit(limit)

    agents = []
    async for doc in cursor:
        agents.append(_strip_id(doc))
    return agents


async def update_agent(slug: str, updates: dict) -> bool:
    """Update agent fields."""
    collection = await get_collection(AGENTS_COLLECTION)
    result = await collection.update_one({"slug": slug}, {"$set": updates})
    return result.modified_count > 0


async def increment_agent(slug: str, field: str, amount: int = 1) -> bool:
    """Atomically increment a counter on an agent."""
    collection = await get_collection(AGENTS_COLLECTION)
    result = await collection.update_one({"slug": slug}, {"$inc": {field: amount}})
    return result.modified_count > 0


# ============================================================
# Rental Operations
# ============================================================

async def create_rental(rental_data: dict) -> dict:
    """Insert a rental record. Returns the stored fields."""
    collection = await get_collection(RENTALS_COLLECTION)
    await collection.insert_one(dict(rental_data))
    logger.info(
        "rental_inserted",
        agent_slug=rental_data["agent_slug"],
        end_time=rental_data["end_time"].isoformat(),
    )
    return rental_data


async def get_latest_rental(user_wallet: str, agent_slug: str) -> Optional[dict]:
    """Most recent rental (by end_time) for a wallet and agent."""
    collection = await get_collection(RENTALS_COLLECTION)
    doc = await collection.find_one(
        {"user_wallet": user_wallet, "agent_slug": agent_slug},
        sort=[("end_time", -1)],
    )
    return _strip_id(doc)


# ============================================================
# Chat Operations
# ============================================================

async def insert_chat_message(message_data: dict) -> str:
    """Append a chat message. Returns message_id."""
    collection = await get_collection(CHAT_MESSAGES_COLLECTION)
    await collection.insert_one(dict(message_data))
    return message_data["message_id"]


async def get_chat_messages(
    user_wallet: str,
    agent_slug: Optional[str] = None,
    limit: int = 500,
) -> list[dict]:
    """Conversation history, oldest first."""
    collection = await get_collection(CHAT_MESSAGES_COLLECTION)
    query: dict[str, Any] = {"user_wallet": user_wallet}
    if agent_slug:
        query["agent_slug"] = agent_slug

    cursor = collection.find(query).sort("created_at", 1).limit(limit)

    messages = []
    async for doc in cursor:
        messages.append(_strip_id(doc))
    return messages


async def delete_chat_messages(user_wallet: str) -> int:
    """Delete a user's whole conversation history."""
    collection = await get_collection(CHAT_MESSAGES_COLLECTION)
    result = await collection.delete_many({"user_wallet": user_wallet})
    logger.info("chat_messages_deleted", count=result.deleted_count)
    return result.deleted_count


# ============================================================
# Usage Log Operations
# ============================================================

async def insert_usage_log(log_data: dict) -> None:
    """Append a usage log row."""
    collection = await get_collection(USAGE_LOGS_COLLECTION)
    await collection.insert_one(dict(log_data))


async def get_tool_daily_usage(
    tool_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> list[dict]:
    """Per-day call counts, error counts and average duration for a tool."""
    collection = await get_collection(USAGE_LOGS_COLLECTION)

    match: dict[str, Any] = {"tool_id": tool_id}
    window: dict[str, Any] = {}
    if start:
        window["$gte"] = start
    if end:
        window["$lte"] = end
    if window:
        match["invoked_at"] = window

    pipeline = [
        {"$match": match},
        {
            "$group": {
                "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$invoked_at"}},
                "calls": {"$sum": 1},
                "errors": {"$sum": {"$cond": [{"$eq": ["$status", "error"]}, 1, 0]}},
                "avg_duration_ms": {"$avg": "$duration_ms"},
            }
        },
        {"$sort": {"_id": 1}},
    ]

    days = []
    async for doc in collection.aggregate(pipeline):
        days.append({
            "day": doc["_id"],
            "calls": doc["calls"],
            "errors": doc["errors"],
            "avg_duration_ms": doc["avg_duration_ms"],
        })
    return days


# ============================================================
# Index Setup
# ============================================================

async def init_db():
    """Initialize database connection and create indexes."""
    try:
        await setup_indexes()
        logger.info("database_initialized")
    except Exception as e:
        # Indexes likely already exist; keep serving without them
        logger.warning("index_setup_failed", error=str(e), note="continuing without index creation")


async def setup_indexes():
    """Create indexes for all collections."""
    db = await get_db()

    agents = db[AGENTS_COLLECTION]
    await agents.create_index([("slug", 1)], unique=True)
    await agents.create_index([("agent_id", 1)], unique=True)
    await agents.create_index([("status", 1), ("rating", -1)])
    await agents.create_index([("category", 1)])

    rentals = db[RENTALS_COLLECTION]
    await rentals.create_index([("user_wallet", 1), ("agent_slug", 1), ("end_time", -1)])
    await rentals.create_index([("tx_signature", 1)], unique=True)

    messages = db[CHAT_MESSAGES_COLLECTION]
    await messages.create_index([("message_id", 1)], unique=True)
    await messages.create_index([("user_wallet", 1), ("created_at", 1)])

    usage = db[USAGE_LOGS_COLLECTION]
    await usage.create_index([("tool_id", 1), ("invoked_at", -1)])

    logger.info("indexes_created")
