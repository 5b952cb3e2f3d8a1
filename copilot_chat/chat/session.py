"""Session coordinator -- fans a send out to one or two orchestrations.

Single mode runs one turn. Compare mode sends the same prompt to a second
model in a freshly created conversation, and both turns run concurrently.
A send is rejected while any turn for the same conversation is running;
different conversations never block each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from copilot_chat.cancellation import CancellationRegistry, CancellationToken
from copilot_chat.chat.orchestrator import ChatOrchestrator, TurnListener, TurnRequest
from copilot_chat.chat.schemas import new_conversation_id
from copilot_chat.chat.state import TurnPhase, TurnState
from copilot_chat.chat.store import ConversationStore
from copilot_chat.errors import ConversationBusy, TurnCancelled

if TYPE_CHECKING:
    # storage imports chat.schemas, so a runtime import here is circular
    from copilot_chat.storage.conversations import ConversationRepository

logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    """Final result of one orchestration."""

    conversation_id: str
    model: str
    phase: TurnPhase
    content: str = ""
    round_trips: int = 0
    loop_exceeded: bool = False
    usage: dict[str, Any] | None = None

    @property
    def error(self) -> bool:
        return self.phase is TurnPhase.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "model": self.model,
            "phase": self.phase.value,
            "content": self.content,
            "error": self.error,
            "round_trips": self.round_trips,
            "loop_exceeded": self.loop_exceeded,
            "usage": self.usage,
        }


class SessionCoordinator:
    """Owns the cancellation registry and the set of busy conversations."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        store: ConversationStore,
        repository: ConversationRepository | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._repository = repository
        self._registry = CancellationRegistry()
        self._active: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def store(self) -> ConversationStore:
        return self._store

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    @property
    def active_turns(self) -> int:
        return len(self._registry)

    async def send(
        self,
        credential: str,
        prompt: str,
        model: str,
        *,
        conversation_id: str | None = None,
        compare_model: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        brave_api_key: str | None = None,
        listener: TurnListener | None = None,
    ) -> list[TurnOutcome]:
        """Run one turn (or a compare pair) and return the outcomes in order."""
        return await self.submit(
            credential,
            prompt,
            model,
            conversation_id=conversation_id,
            compare_model=compare_model,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            brave_api_key=brave_api_key,
            listener=listener,
        )

    def submit(
        self,
        credential: str,
        prompt: str,
        model: str,
        *,
        conversation_id: str | None = None,
        compare_model: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        brave_api_key: str | None = None,
        listener: TurnListener | None = None,
    ) -> asyncio.Task:
        """Start the turn(s) and return a task resolving to the outcomes.

        Validation happens before this returns: ValueError for a bad request,
        KeyError for an unknown conversation, ConversationBusy if the target
        conversation has a running turn.
        """
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Message must not be empty")
        if compare_model is not None and compare_model == model:
            raise ValueError("Compare mode needs two different models")

        if conversation_id is None:
            conversation_id = self._store.create(model=model).id
        elif self._store.get(conversation_id) is None:
            raise KeyError(conversation_id)
        if conversation_id in self._active:
            raise ConversationBusy(conversation_id)

        targets = [(conversation_id, model)]
        if compare_model:
            compare = self._store.create(
                model=compare_model,
                title="Compare",
                conversation_id=new_conversation_id("compare"),
            )
            targets.append((compare.id, compare_model))

        # No await between the busy check and registration
        tasks: list[asyncio.Task] = []
        for target_id, target_model in targets:
            request = TurnRequest(
                conversation_id=target_id,
                model=target_model,
                prompt=prompt,
                system_prompt=system_prompt,
                temperature=temperature,
                max_tokens=max_tokens,
                brave_api_key=brave_api_key,
            )
            tasks.append(self._start(credential, request, listener))

        return asyncio.create_task(self._collect(targets, tasks), name=f"send-{conversation_id}")

    async def _collect(
        self,
        targets: list[tuple[str, str]],
        tasks: list[asyncio.Task],
    ) -> list[TurnOutcome]:
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: list[TurnOutcome] = []
        for (target_id, target_model), result in zip(targets, results):
            if isinstance(result, asyncio.CancelledError):
                # Stopped before the turn began
                outcomes.append(TurnOutcome(target_id, target_model, TurnPhase.CANCELLED))
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes.append(result)
        return outcomes

    def stop_all(self) -> int:
        """Cancel every running turn, whichever conversation it belongs to."""
        count = self._registry.cancel_all()
        if count:
            logger.info("Stopped %d running turn(s)", count)
        return count

    async def stop(self) -> None:
        """Cancel every running turn and wait until each has finalized and saved."""
        tasks = list(self._tasks)
        self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def delete_conversation(self, conversation_id: str) -> bool:
        if conversation_id in self._active:
            raise ConversationBusy(conversation_id)
        deleted = self._store.delete(conversation_id)
        if deleted and self._repository is not None:
            try:
                await self._repository.delete(conversation_id)
            except Exception as e:
                logger.warning("Conversation delete not persisted for %s: %s", conversation_id, e)
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(
        self,
        credential: str,
        request: TurnRequest,
        listener: TurnListener | None,
    ) -> asyncio.Task:
        conversation_id = request.conversation_id
        token = CancellationToken(label=conversation_id)
        self._active.add(conversation_id)
        self._registry.register(token)

        task = asyncio.create_task(
            self._run(credential, request, token, listener),
            name=f"turn-{conversation_id}",
        )
        token.attach(task)

        def _release(_: asyncio.Task) -> None:
            # Runs even if the task was cancelled before its first step
            self._registry.discard(token)
            self._active.discard(conversation_id)

        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_release)
        self._tasks.add(task)
        return task

    async def _run(
        self,
        credential: str,
        request: TurnRequest,
        token: CancellationToken,
        listener: TurnListener | None,
    ) -> TurnOutcome:
        last: list[TurnState] = []

        def track(conversation_id: str, state: TurnState) -> None:
            last[:] = [state]
            if listener is not None:
                listener(conversation_id, state)

        try:
            state = await self._orchestrator.run_turn(credential, request, token, track)
            outcome = self._outcome(request, state)
        except TurnCancelled:
            if last:
                outcome = self._outcome(request, last[0])
            else:
                outcome = TurnOutcome(request.conversation_id, request.model, TurnPhase.CANCELLED)
        finally:
            # The turn is final; a later stop must not touch the save below
            self._registry.discard(token)
            await self._save(request.conversation_id)
        return outcome

    async def _save(self, conversation_id: str) -> None:
        """Persist, finishing the write even if this task is cancelled meanwhile."""
        write = asyncio.ensure_future(self._persist(conversation_id))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            raise

    @staticmethod
    def _outcome(request: TurnRequest, state: TurnState) -> TurnOutcome:
        return TurnOutcome(
            conversation_id=request.conversation_id,
            model=request.model,
            phase=state.phase,
            content=state.content,
            round_trips=state.round_trips,
            loop_exceeded=state.loop_exceeded,
            usage=state.usage,
        )

    async def _persist(self, conversation_id: str) -> None:
        """Best-effort write of the conversation record."""
        if self._repository is None:
            return
        conversation = self._store.get(conversation_id)
        if conversation is None:
            return
        try:
            await self._repository.save(conversation)
        except Exception as e:
            logger.warning("Conversation persist failed for %s: %s", conversation_id, e)
