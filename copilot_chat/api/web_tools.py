"""Web search tool exposed to the model: brave_search.

Uses a separate httpx client from CopilotClient (no Copilot credentials on
it). A failed search still yields text for the tool message: the model
gets the failure as its tool result and the turn carries on.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from copilot_chat.config import Settings
from copilot_chat.errors import ToolError

logger = logging.getLogger(__name__)

SEARCH_TOOL_NAME = "brave_search"

MAX_SEARCH_RESULTS = 20

BRAVE_SEARCH_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": (
            "Search the web for current information. "
            "Returns titles, URLs and snippets of the top results."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query string"},
            },
            "required": ["query"],
        },
    },
}


@dataclass(frozen=True)
class ToolCredentials:
    """Secrets a tool call may need."""

    brave_api_key: str = ""


def parse_arguments(args_json: str | None) -> dict[str, Any]:
    """Parse a tool call's argument JSON; anything unusable becomes {}."""
    if not args_json:
        return {}
    try:
        args = json.loads(args_json)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments, using empty set: %r", args_json[:200])
        return {}
    return args if isinstance(args, dict) else {}


def progress_label(name: str, args_json: str | None) -> str:
    """Visible progress line shown while a tool runs."""
    if name == SEARCH_TOOL_NAME:
        query = parse_arguments(args_json).get("query") or ""
        return f"Searching: {query}"
    return f"Running tool: {name}"


def format_results(results: list[dict[str, Any]]) -> str:
    """Render search results as plain text for the model."""
    if not results:
        return "No results found."
    return "\n\n".join(
        f"{i}. **{r.get('title', '')}**\n{r.get('url', '')}\n{r.get('description') or ''}"
        for i, r in enumerate(results, 1)
    )


class BraveSearchClient:
    """The search collaborator: Brave Search web results over httpx."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    async def search(self, api_key: str, query: str, count: int | None = None) -> str:
        """Run a search and return formatted text. Raises ToolError on failure."""
        if not api_key:
            raise ToolError("Brave Search API key is not configured")
        if not query.strip():
            raise ToolError("No search query provided")

        count = min(count or self._settings.search_result_count, MAX_SEARCH_RESULTS)
        try:
            response = await self._http.get(
                self._settings.brave_search_url,
                params={"q": query, "count": count},
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": api_key,
                },
            )
        except httpx.TimeoutException as e:
            raise ToolError("Brave Search timed out") from e
        except httpx.HTTPError as e:
            raise ToolError(f"Could not connect to Brave Search: {e}") from e

        if response.status_code != 200:
            detail = response.text[:200] if response.text else ""
            raise ToolError(
                f"Brave Search error: HTTP {response.status_code}" + (f" - {detail}" if detail else "")
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ToolError("Brave Search returned invalid JSON") from e

        if not isinstance(data, dict):
            raise ToolError("Brave Search returned an unexpected payload")
        web = data.get("web") or {}
        results = (web.get("results") or []) if isinstance(web, dict) else None
        if not isinstance(results, list):
            raise ToolError("Brave Search returned an unexpected payload")
        # Entries that are not objects are skipped
        results = [r for r in results if isinstance(r, dict)]
        return format_results(results[:count])


class ToolInvoker:
    """Executes tool calls requested by the model. Stateless between calls."""

    def __init__(self, search: BraveSearchClient, settings: Settings) -> None:
        self._search = search
        self._settings = settings

    def credentials(self, brave_api_key: str | None = None) -> ToolCredentials:
        """Per-request key when given, else the configured one."""
        return ToolCredentials(brave_api_key=brave_api_key or self._settings.brave_search_api_key)

    def tool_definitions(self, credentials: ToolCredentials) -> list[dict[str, Any]]:
        """Tools offered to the model; none without a search key."""
        if not credentials.brave_api_key:
            return []
        return [BRAVE_SEARCH_TOOL]

    async def invoke(self, name: str, args_json: str | None, credentials: ToolCredentials) -> str:
        """Run one tool call and return its result text. Never raises ToolError."""
        args = parse_arguments(args_json)
        if name != SEARCH_TOOL_NAME:
            logger.warning("Model requested unknown tool %s", name)
            return f"Unknown tool: {name}"

        query = str(args.get("query") or "")
        try:
            return await self._search.search(credentials.brave_api_key, query)
        except ToolError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return f"Search failed: {e}"
