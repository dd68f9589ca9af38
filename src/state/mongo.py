import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


def _get_db_name_from_uri(uri: str) -> str:
    # path like "/quotagate" or possibly empty
    parsed = urlparse(uri)
    if parsed.path and len(parsed.path) > 1:
        return parsed.path.lstrip("/")
    return os.getenv("MONGODB_DB", "quotagate")


def get_db() -> AsyncIOMotorDatabase:
    if _db is None:
        raise RuntimeError("Mongo DB not initialized. Call init_mongo() first.")
    return _db


async def init_mongo() -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """Initialize the Mongo connection used for the usage ledger.

    Reads MONGODB_URI and optional pool tuning from environment. A failed ping
    is only logged: the ledger retries its own load and stays fail-closed.
    """
    global _client, _db

    uri = os.getenv("MONGODB_URI", "mongodb://localhost:27017/quotagate")
    max_pool = int(os.getenv("MONGODB_MAX_POOL_SIZE", "10"))
    connect_timeout_ms = int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "10000"))
    socket_timeout_ms = int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "20000"))

    try:
        _client = AsyncIOMotorClient(
            uri,
            maxPoolSize=max_pool,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        db_name = _get_db_name_from_uri(uri)
        _db = _client[db_name]

        try:
            await _db.command("ping")
            logger.info("Connected to MongoDB database '%s'", db_name)
        except Exception as e:
            logger.warning("MongoDB ping failed: %s", e)

        return _client, _db
    except Exception as e:
        logger.exception("Failed to initialize MongoDB: %s", e)
        raise


async def close_mongo() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None
