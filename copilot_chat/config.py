"""Settings via pydantic-settings with COPILOT_CHAT_ env prefix.

The Brave key reads from the unprefixed BRAVE_SEARCH_API_KEY as well, so the
same .env used by the search proxy drives the Python app.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COPILOT_CHAT_", env_file=".env")

    # Copilot API
    api_base_url: str = "https://api.githubcopilot.com"
    integration_id: str = "vscode-chat"
    editor_version: str = "CopilotApp/1.0"
    api_timeout_connect: float = 10.0  # seconds; reads never time out

    # Model catalog
    catalog_ttl_seconds: int = 3600

    # Chat defaults
    system_prompt: str = "You are a helpful assistant."
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(4096, gt=0)
    max_round_trips: int = 5  # request/response cycles per user turn

    # Web search tool
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    brave_search_url: str = "https://api.search.brave.com/res/v1/web/search"
    search_result_count: int = 5

    # Conversation persistence
    db_url: str = "sqlite+aiosqlite:///copilot_chat.db"
    max_stored_conversations: int = 20

    # Runtime
    log_level: str = "info"
    host: str = "127.0.0.1"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_round_trips < 1:
            raise ValueError("max_round_trips must be >= 1")
        if self.catalog_ttl_seconds < 0:
            raise ValueError("catalog_ttl_seconds must be >= 0")
        if not 1 <= self.search_result_count <= 20:
            raise ValueError(
                f"search_result_count ({self.search_result_count}) must be between 1 and 20"
            )
        if self.max_stored_conversations < 1:
            raise ValueError("max_stored_conversations must be >= 1")
        return self
