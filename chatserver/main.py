from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from chatserver.core.config import Settings, get_settings
from chatserver.core.exceptions import DomainException, domain_exception_handler, store_failure_handler
from chatserver.core.log_config import configure_logging
from chatserver.database.connection import close_mongo_connection, connect_to_mongo, ensure_indexes
from chatserver.routers.chat import router as chat_router
from chatserver.routers.message import router as message_router
from chatserver.routers.socket import router as socket_router
from chatserver.utils.realtime_bus import RoomBroadcaster, create_bus
from chatserver.utils.security import TokenVerifier
from chatserver.utils.websocket_manager import ConnectionRegistry


def create_app(settings: Optional[Settings] = None, database: Optional[AsyncIOMotorDatabase] = None) -> FastAPI:
    """
    Composition root. Every app instance owns its own registry, bus and
    broadcaster on `app.state`; pass `database` to skip connecting to MongoDB.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if database is None:
            client = await connect_to_mongo(settings)
            app.state.db = client[settings.mongodb_db]
            await ensure_indexes(app.state.db)
        await app.state.broadcaster.start()
        try:
            yield
        finally:
            await app.state.broadcaster.stop()
            await app.state.registry.close()
            await app.state.bus.close()
            await close_mongo_connection(client)

    app = FastAPI(title="Chat server", lifespan=lifespan)

    verifier = TokenVerifier(settings)
    registry = ConnectionRegistry(
        verifier,
        auth_timeout=settings.ws_auth_timeout_seconds,
        send_queue_size=settings.ws_send_queue_size,
    )
    bus = create_bus(settings)
    app.state.settings = settings
    app.state.verifier = verifier
    app.state.registry = registry
    app.state.bus = bus
    app.state.broadcaster = RoomBroadcaster(registry, bus, settings.redis_channel)
    app.state.db = database

    app.add_exception_handler(DomainException, domain_exception_handler)
    app.add_exception_handler(PyMongoError, store_failure_handler)

    app.include_router(chat_router)
    app.include_router(message_router)
    app.include_router(socket_router)

    @app.get("/")
    async def root():
        return {"status": "ok", "redis_fanout": bus.enabled}

    return app


app = create_app()
