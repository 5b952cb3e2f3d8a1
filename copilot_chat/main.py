"""Copilot chat entry point.

Initializes all components and starts the server:
  Settings -> Database -> Store -> CopilotClient -> Resolver -> Orchestrator -> Coordinator -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from copilot_chat.api.copilot import CopilotClient
from copilot_chat.api.rest import create_app
from copilot_chat.api.web_tools import BraveSearchClient, ToolInvoker
from copilot_chat.catalog import ModelCatalogResolver
from copilot_chat.chat.orchestrator import ChatOrchestrator
from copilot_chat.chat.session import SessionCoordinator
from copilot_chat.chat.store import ConversationStore
from copilot_chat.config import Settings
from copilot_chat.storage.conversations import ConversationRepository
from copilot_chat.storage.database import Database

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Construct every component. Nothing touches the network or disk yet."""
    database = Database(settings)
    repository = ConversationRepository(database, settings.max_stored_conversations)
    store = ConversationStore()

    client = CopilotClient(settings)
    web_http = httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=settings.api_timeout_connect))
    invoker = ToolInvoker(BraveSearchClient(settings, web_http), settings)
    resolver = ModelCatalogResolver(client.fetch_models, ttl_seconds=settings.catalog_ttl_seconds)

    orchestrator = ChatOrchestrator(client, invoker, store, settings, resolver=resolver)
    coordinator = SessionCoordinator(orchestrator, store, repository)

    return {
        "settings": settings,
        "database": database,
        "repository": repository,
        "store": store,
        "client": client,
        "web_http": web_http,
        "invoker": invoker,
        "resolver": resolver,
        "orchestrator": orchestrator,
        "coordinator": coordinator,
    }


async def start_components(components: dict) -> None:
    """Connect storage, hydrate conversations, open the API client."""
    await components["database"].connect()

    try:
        conversations = await components["repository"].load_all()
    except Exception as e:
        logger.warning("Could not load stored conversations: %s", e)
    else:
        components["store"].hydrate(conversations)

    await components["client"].start()


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down copilot-chat...")

    # Turns finalize and save before their clients and storage go away
    coordinator = components.get("coordinator")
    if coordinator:
        await coordinator.stop()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    client = components.get("client")
    if client:
        await client.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("copilot-chat shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components start and stop with its lifespan."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await start_components(components)

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "copilot-chat started: api=%s, max_round_trips=%d, catalog_ttl=%ds",
            settings.api_base_url,
            settings.max_round_trips,
            settings.catalog_ttl_seconds,
        )
        yield

        await shutdown_components(components)

    return create_app(
        coordinator=components["coordinator"],
        resolver=components["resolver"],
        database=components["database"],
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting copilot-chat on %s:%d", settings.host, settings.port)
    logger.info("Database: %s", settings.db_url)

    if not settings.brave_search_api_key:
        logger.warning("BRAVE_SEARCH_API_KEY not set -- web search only with a per-request key")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
