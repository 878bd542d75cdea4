import logging

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from chatsync.config import Settings


logger = logging.getLogger(__name__)


def connect_to_mongo(settings: Settings) -> AsyncIOMotorClient:
    client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=True)
    logger.info("Connected to MongoDB database %s", settings.mongodb_db)
    return client


def close_mongo_connection(client: AsyncIOMotorClient) -> None:
    client.close()
    logger.info("MongoDB connection closed")


def get_database(client: AsyncIOMotorClient, settings: Settings) -> AsyncIOMotorDatabase:
    return client[settings.mongodb_db]


def mongo_db_dependency(request: Request) -> AsyncIOMotorDatabase:
    return request.app.state.db
