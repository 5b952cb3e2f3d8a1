"""REST API for the chat engine.

Endpoints:
  GET    /models               - Model catalog (?refresh=1, ?grouped=1)
  POST   /chat                 - Send a message, wait for the final turn(s)
  POST   /chat/stream          - SSE stream of turn state transitions
  POST   /chat/stop            - Stop every running turn
  GET    /conversations        - List conversations
  GET    /conversations/{id}   - Conversation detail
  DELETE /conversations/{id}   - Delete a conversation
  POST   /quota                - Premium quota from token/subscription payloads
  GET    /health               - Health check (DB connectivity)

The Copilot credential is taken from the Authorization: Bearer header.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from copilot_chat.catalog import ModelCatalogResolver, ModelDescriptor, display_name, group_models, sort_models
from copilot_chat.chat.session import SessionCoordinator
from copilot_chat.chat.state import TurnState
from copilot_chat.errors import ChatError, ConversationBusy
from copilot_chat.quota import extract_quota, has_unlimited_tier
from copilot_chat.storage.database import Database

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes"}


def bearer_credential(request: Request) -> str | None:
    scheme, _, value = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _flag(request: Request, name: str) -> bool:
    return request.query_params.get(name, "").lower() in _TRUE_VALUES


def _model_dict(model: ModelDescriptor) -> dict[str, Any]:
    data = model.model_dump(mode="json")
    data["label"] = display_name(model)
    return data


def _chat_args(body: Any) -> dict[str, Any] | JSONResponse:
    """Validate a chat request body into SessionCoordinator.submit() kwargs."""
    if not isinstance(body, dict):
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

    message = body.get("message")
    if not isinstance(message, str) or not message.strip():
        return JSONResponse({"error": "Missing required field: message"}, status_code=400)
    model = body.get("model")
    if not isinstance(model, str) or not model:
        return JSONResponse({"error": "Missing required field: model"}, status_code=400)

    temperature = body.get("temperature")
    if temperature is not None and (
        isinstance(temperature, bool) or not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2
    ):
        return JSONResponse({"error": "temperature must be a number between 0 and 2"}, status_code=400)
    max_tokens = body.get("max_tokens")
    if max_tokens is not None and (isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0):
        return JSONResponse({"error": "max_tokens must be a positive integer"}, status_code=400)

    return {
        "prompt": message,
        "model": model,
        "conversation_id": body.get("conversation_id") or None,
        "compare_model": body.get("compare_model") or None,
        "system_prompt": body.get("system_prompt"),
        "temperature": temperature,
        "max_tokens": max_tokens,
        "brave_api_key": body.get("brave_api_key") or None,
    }


def create_app(
    coordinator: SessionCoordinator,
    resolver: ModelCatalogResolver,
    database: Database | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def unauthorized() -> JSONResponse:
        return JSONResponse({"error": "Missing bearer credential"}, status_code=401)

    async def read_chat_body(request: Request) -> dict[str, Any] | JSONResponse:
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        return _chat_args(body)

    def submit(credential: str, args: dict[str, Any], listener=None) -> asyncio.Task | JSONResponse:
        try:
            return coordinator.submit(credential, listener=listener, **args)
        except ConversationBusy as e:
            return JSONResponse({"error": str(e), "conversation_id": e.conversation_id}, status_code=409)
        except KeyError:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

    async def list_models(request: Request) -> JSONResponse:
        """GET /models - Catalog for the caller's credential."""
        credential = bearer_credential(request)
        if credential is None:
            return unauthorized()
        try:
            models = await resolver.resolve(credential, force_refresh=_flag(request, "refresh"))
        except ChatError as e:
            logger.warning("Model catalog fetch failed: %s", e)
            return JSONResponse({"error": str(e), "retryable": True}, status_code=502)

        if _flag(request, "grouped"):
            groups = [
                {"provider": group["provider"], "models": [_model_dict(m) for m in group["models"]]}
                for group in group_models(models)
            ]
            return JSONResponse({"groups": groups})
        return JSONResponse({"models": [_model_dict(m) for m in sort_models(models)]})

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get the final turn(s)."""
        credential = bearer_credential(request)
        if credential is None:
            return unauthorized()
        args = await read_chat_body(request)
        if isinstance(args, JSONResponse):
            return args

        task = submit(credential, args)
        if isinstance(task, JSONResponse):
            return task
        try:
            outcomes = await task
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(
            {
                "conversation_id": outcomes[0].conversation_id,
                "outcomes": [outcome.to_dict() for outcome in outcomes],
            }
        )

    async def chat_stream(request: Request) -> StreamingResponse | JSONResponse:
        """POST /chat/stream - SSE stream of turn states."""
        credential = bearer_credential(request)
        if credential is None:
            return unauthorized()
        args = await read_chat_body(request)
        if isinstance(args, JSONResponse):
            return args

        queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        def listener(conversation_id: str, state: TurnState) -> None:
            queue.put_nowait({"type": "state", "conversation_id": conversation_id, **state.to_dict()})

        task = submit(credential, args, listener)
        if isinstance(task, JSONResponse):
            return task
        task.add_done_callback(lambda _: queue.put_nowait(None))

        async def event_generator():
            try:
                while True:
                    event = await queue.get()
                    if event is None:
                        break
                    yield f"data: {json.dumps(event)}\n\n"
                if task.cancelled():
                    data = {"type": "done", "outcomes": []}
                else:
                    data = {"type": "done", "outcomes": [o.to_dict() for o in task.result()]}
                yield f"data: {json.dumps(data)}\n\n"
            except Exception as e:
                logger.error("Stream error: %s", e)
                error_data = json.dumps({"type": "error", "text": str(e)})
                yield f"data: {error_data}\n\n"

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def stop(request: Request) -> JSONResponse:
        """POST /chat/stop - Cancel every running turn."""
        return JSONResponse({"status": "stopped", "cancelled": coordinator.stop_all()})

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Newest first."""
        conversations = coordinator.store.list_conversations()
        return JSONResponse(
            {
                "conversations": [
                    {
                        "id": c.id,
                        "title": c.title,
                        "model": c.model,
                        "created_at_ms": c.created_at_ms,
                        "turns": len(c.turns),
                        "active": coordinator.is_active(c.id),
                    }
                    for c in conversations
                ]
            }
        )

    async def get_conversation(request: Request) -> JSONResponse:
        conversation_id = request.path_params["id"]
        conversation = coordinator.store.get(conversation_id)
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        data = conversation.model_dump(mode="json")
        data["active"] = coordinator.is_active(conversation_id)
        return JSONResponse(data)

    async def delete_conversation(request: Request) -> JSONResponse:
        conversation_id = request.path_params["id"]
        try:
            deleted = await coordinator.delete_conversation(conversation_id)
        except ConversationBusy as e:
            return JSONResponse({"error": str(e)}, status_code=409)
        if not deleted:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "conversation_id": conversation_id})

    async def quota(request: Request) -> JSONResponse:
        """POST /quota - Reconcile premium quota from the token and subscription payloads."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        token_payload = body.get("token_payload")
        subscription = body.get("subscription")
        token_fields = token_payload if isinstance(token_payload, dict) else {}
        record = extract_quota(token_fields.get("limited_user_quotas"), token_payload, subscription)

        result: dict[str, Any] = {
            "quota": None,
            "unlimited": has_unlimited_tier(token_fields.get("unlimited_user_quotas")),
        }
        if record is not None:
            result["quota"] = {
                **record.model_dump(),
                "remaining": record.remaining,
                "percent_used": record.percent_used,
            }
        return JSONResponse(result)

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if database is None:
            return JSONResponse({"status": "healthy", "storage": "disabled"})
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/models", list_models),
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stream", chat_stream, methods=["POST"]),
        Route("/chat/stop", stop, methods=["POST"]),
        Route("/conversations", list_conversations),
        Route("/conversations/{id}", get_conversation),
        Route("/conversations/{id}", delete_conversation, methods=["DELETE"]),
        Route("/quota", quota, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
