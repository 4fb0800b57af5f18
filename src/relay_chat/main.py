import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from .api.routes import chat_error_handler, router
from .bot.completion import CompletionClient
from .bot.orchestrator import ReplyOrchestrator
from .channel import ChannelRegistry
from .config import PORT, ROOT_PATH, SQLITE_PATH
from .data.sqlite_store import SQLiteStore
from .errors import ChatError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)

    logger.info("Initializing SQLite store...")
    store = SQLiteStore(str(SQLITE_PATH))
    await store.initialize()

    logger.info("Initializing completion client...")
    completion_client = CompletionClient()

    app.state.store = store
    app.state.orchestrator = ReplyOrchestrator(store, completion_client)
    app.state.channels = ChannelRegistry()

    logger.info("Startup complete, ready to serve")
    yield

    # Shutdown
    logger.info("Shutting down...")
    await app.state.orchestrator.wait_idle()
    await completion_client.close()
    await store.close()


app = FastAPI(title="Relay Chat", root_path=ROOT_PATH, lifespan=lifespan)
app.include_router(router)
app.add_exception_handler(ChatError, chat_error_handler)


def run() -> None:
    uvicorn.run(app, host="127.0.0.1", port=PORT)
