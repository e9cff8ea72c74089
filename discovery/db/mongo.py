# discovery/db/mongo.py
import logging
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from discovery.core.config import get_settings
import certifi

logger = logging.getLogger(__name__)

_client: AsyncIOMotorClient | None = None
_db: AsyncIOMotorDatabase | None = None


def get_client() -> AsyncIOMotorClient:
    assert _client is not None, "Mongo client not initialized"
    return _client


def get_db() -> AsyncIOMotorDatabase:
    assert _db is not None, "Mongo DB not initialized"
    return _db


async def connect():
    """
    Create the Motor client. A failed startup ping does not abort the app:
    the client stays lazy and the first real query retries the connection.
    Pool sizing lives here; the product adapter only borrows the database handle.
    """
    global _client, _db
    settings = get_settings()

    def _new_client() -> AsyncIOMotorClient:
        tls = settings.MONGO_URI.startswith("mongodb+srv://")
        kwargs = dict(
            uuidRepresentation="standard",
            serverSelectionTimeoutMS=6000,
            connectTimeoutMS=6000,
            maxPoolSize=100,
            retryReads=False,       # the adapter owns its single retry
        )
        if tls:
            kwargs.update(tls=True, tlsCAFile=certifi.where())
        return AsyncIOMotorClient(settings.MONGO_URI, **kwargs)

    try:
        _client = _new_client()
        _db = _client[settings.MONGO_DB]
        await _client.admin.command("ping")
        logger.info("mongo connected db=%s (ping ok)", settings.MONGO_DB)
    except Exception as e:
        logger.warning("mongo ping at startup failed: %s; will connect lazily", e)
        try:
            _client = _new_client()
            _db = _client[settings.MONGO_DB]
        except Exception as e2:
            _client = None
            _db = None
            logger.error("mongo client init failed: %s", e2)


async def disconnect():
    global _client, _db
    if _client:
        _client.close()
    _client = None
    _db = None
