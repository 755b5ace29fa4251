import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from starlette.requests import HTTPConnection

from chatserver.core.config import Settings
from chatserver.repositories.conversation_repository import ConversationRepository
from chatserver.repositories.message_repository import MessageRepository


logger = logging.getLogger(__name__)


async def connect_to_mongo(settings: Settings) -> AsyncIOMotorClient:
    client: AsyncIOMotorClient = AsyncIOMotorClient(settings.mongodb_url)
    logger.info("Connected to MongoDB database %s", settings.mongodb_db)
    return client


async def close_mongo_connection(client: Optional[AsyncIOMotorClient]) -> None:
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()


def get_database(connection: HTTPConnection) -> AsyncIOMotorDatabase:
    return connection.app.state.db


def mongo_db_dependency(request: HTTPConnection) -> AsyncIOMotorDatabase:
    # HTTPConnection covers both Request and WebSocket routes
    return get_database(request)
