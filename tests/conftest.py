"""Shared fixtures: real Settings and a throwaway SQLite database per test."""

import pytest
import pytest_asyncio

from copilot_chat.config import Settings
from copilot_chat.storage.conversations import ConversationRepository
from copilot_chat.storage.database import Database


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        BRAVE_SEARCH_API_KEY="",
        max_stored_conversations=3,
    )


@pytest_asyncio.fixture
async def database(settings):
    """Connected database backed by a temporary SQLite file."""
    async with Database(settings) as db:
        yield db


@pytest_asyncio.fixture
async def repository(database, settings):
    return ConversationRepository(database, settings.max_stored_conversations)
