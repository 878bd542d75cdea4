from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI

from chatsync.config import Settings, configure_logging
from chatsync.database.connection import close_mongo_connection, connect_to_mongo, get_database, mongo_db_dependency
from chatsync.routers.session import Authenticator, reject_all
from chatsync.routers.session import router as session_router
from chatsync.services.gateway import MongoPersistenceGateway, PersistenceGateway, RetryingGateway
from chatsync.utils.change_feed import ChangeFeed, InMemoryChangeFeed
from chatsync.utils.realtime_bus import RedisChangeFeed


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PersistenceGateway] = None,
    feed: Optional[ChangeFeed] = None,
    authenticate: Authenticator = reject_all,
) -> FastAPI:
    """Build the app.

    ``authenticate`` resolves the ``token`` query parameter of a session socket
    to a user id; sessions are owned by the identity service, so the default
    rejects every connection. When ``gateway`` is omitted the lifespan
    connects to MongoDB and, if ``REDIS_URL`` is set, to Redis.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        app.state.db = None
        app.state.feed = feed
        app.state.gateway = gateway
        if app.state.feed is None:
            app.state.feed = RedisChangeFeed.from_url(settings.redis_url) if settings.redis_url else InMemoryChangeFeed()
        if app.state.gateway is None:
            client = connect_to_mongo(settings)
            app.state.db = get_database(client, settings)
            mongo = MongoPersistenceGateway(app.state.db, app.state.feed)
            await mongo.ensure_indexes()
            app.state.gateway = RetryingGateway(
                mongo,
                attempts=settings.retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            )
        try:
            yield
        finally:
            if feed is None:
                await app.state.feed.aclose()
            if client is not None:
                close_mongo_connection(client)

    app = FastAPI(title="chatsync", lifespan=lifespan)
    app.state.settings = settings
    app.state.authenticate = authenticate
    app.include_router(session_router)

    @app.get("/")
    async def root(db=Depends(mongo_db_dependency)):
        collections = await db.list_collection_names() if db is not None else []
        return {"message": "chatsync running", "collections": collections}

    return app
