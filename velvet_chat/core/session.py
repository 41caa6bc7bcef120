"""
Conversation session orchestration.

Drives one user turn through admission, the retrying remote call,
stream assembly and history persistence:

    IDLE -> ADMITTED -> SENDING -> STREAMING -> DELIVERED | FAILED -> IDLE

Every turn appends exactly one model-role message, either the reply or
a fixed template describing the failure.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, AsyncIterable, Callable, List, Optional, Protocol

from velvet_chat.storage.models import Message, Role
from velvet_chat.storage.repository import HistoryStore

from .errors import (
    AdmissionDenied,
    ConversationError,
    ErrorKind,
    FatalError,
    TurnInProgress,
)
from .retry import RetryingRequestExecutor
from .stream import Mood, StreamAssembler, fragment_text
from .usage_guard import UsageGuard

logger = logging.getLogger(__name__)

COOLDOWN_TEMPLATE = "(I'm a bit overwhelmed right now. Let me rest for {seconds} seconds. 🌙)"
QUOTA_TEMPLATE = "(I'm feeling really drained right now... let's take a break and talk later. 🌙)"
EMPTY_TEMPLATE = "(I don't know how to respond to that...)"
DISTRACTED_TEMPLATE = "(I got distracted... say again?)"


class TurnState(Enum):
    """Lifecycle of a single user turn."""
    IDLE = auto()
    ADMITTED = auto()
    SENDING = auto()
    STREAMING = auto()
    DELIVERED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one turn and the model-role message it appended."""
    state: TurnState
    message: Message
    error_kind: Optional[ErrorKind] = None
    mood: Optional[Mood] = None

    @property
    def delivered(self) -> bool:
        return self.state == TurnState.DELIVERED


class ChatProvider(Protocol):
    """Remote streaming chat call."""

    async def send_streaming_message(self, prompt: str) -> AsyncIterable[Any]:
        ...


def failure_text(error: ConversationError) -> str:
    """Map a classified error to its user-facing template."""
    if isinstance(error, AdmissionDenied):
        return COOLDOWN_TEMPLATE.format(seconds=error.retry_after)
    if error.kind == ErrorKind.QUOTA_EXHAUSTED:
        return QUOTA_TEMPLATE
    if error.kind == ErrorKind.EMPTY_RESPONSE:
        return EMPTY_TEMPLATE
    return DISTRACTED_TEMPLATE


class ConversationSession:
    """One conversation with one character profile.

    Only one turn may be in flight at a time. The session keeps a
    working copy of the history; the HistoryStore owns the durable one.
    """

    def __init__(
        self,
        profile_id: str,
        provider: ChatProvider,
        guard: UsageGuard,
        history_store: HistoryStore,
        executor: Optional[RetryingRequestExecutor] = None,
        initial_messages: Optional[List[Message]] = None
    ):
        """Initialize the session.

        Args:
            profile_id: Conversation key in the history store
            provider: Remote streaming chat collaborator
            guard: Process-wide usage guard
            history_store: Durable history collaborator
            executor: Retrying executor (built from ``guard`` if omitted)
            initial_messages: Working history (loaded from the store if omitted)
        """
        if not profile_id or not profile_id.strip():
            raise ValueError("profile_id is required and cannot be empty")

        self.profile_id = profile_id
        self.provider = provider
        self.guard = guard
        self.history_store = history_store
        self.executor = executor or RetryingRequestExecutor(guard)
        if initial_messages is None:
            initial_messages = history_store.get(profile_id)
        self._messages: List[Message] = list(initial_messages)[-history_store.limit:]
        self._state = TurnState.IDLE
        self.current_mood = Mood.NEUTRAL

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def messages(self) -> List[Message]:
        """Snapshot of the working history, oldest first."""
        return list(self._messages)

    def _persist(self) -> None:
        # In-memory state is authoritative for this session
        try:
            self.history_store.put(self.profile_id, self._messages)
        except Exception as e:
            logger.warning(f"Failed to save chat history for {self.profile_id}: {e}")

    def _append(self, message: Message) -> None:
        # Working copy is capped like the durable one
        self._messages.append(message)
        del self._messages[:-self.history_store.limit]

    def _fail(self, error: ConversationError) -> TurnResult:
        self._state = TurnState.FAILED
        logger.info(f"Turn failed for {self.profile_id}: {error.kind.name} ({error})")
        message = Message(role=Role.MODEL, content=failure_text(error))
        self._append(message)
        self._persist()
        return TurnResult(state=TurnState.FAILED, message=message, error_kind=error.kind)

    async def send(
        self,
        text: str,
        on_update: Optional[Callable[[Message], None]] = None,
        on_retract: Optional[Callable[[Message], None]] = None
    ) -> TurnResult:
        """Run one user turn.

        If the stream breaks after ``on_update`` has shown a partial
        reply, that message is removed from the history and passed to
        ``on_retract``; the failure template is then appended instead.

        Args:
            text: User message
            on_update: Called with the model message each time its
                visible content changes, in arrival order
            on_retract: Called with a partial reply that was dropped

        Returns:
            TurnResult in DELIVERED or FAILED state

        Raises:
            TurnInProgress: A previous turn has not finished
            ValueError: If text is empty
        """
        if self._state != TurnState.IDLE:
            raise TurnInProgress(f"A turn is already in flight for {self.profile_id}")
        if not text or not text.strip():
            raise ValueError("text is required and cannot be empty")

        try:
            return await self._run_turn(text, on_update, on_retract)
        finally:
            self._state = TurnState.IDLE

    async def _run_turn(
        self,
        text: str,
        on_update: Optional[Callable[[Message], None]],
        on_retract: Optional[Callable[[Message], None]]
    ) -> TurnResult:
        status = self.guard.get_status()
        if status.is_blocked:
            return self._fail(AdmissionDenied(status.retry_after_seconds))

        self._state = TurnState.ADMITTED
        self._append(Message(role=Role.USER, content=text))
        self._persist()

        prompt = f"(Mood:{self.current_mood.value}) {text}"
        assembler = StreamAssembler()
        reply: Optional[Message] = None

        self._state = TurnState.SENDING
        try:
            stream = await self.executor.execute(
                lambda: self.provider.send_streaming_message(prompt)
            )
            async for chunk in stream:
                self._state = TurnState.STREAMING
                update = assembler.feed(fragment_text(chunk))
                if update is None:
                    continue
                if update.mood is not None:
                    self.current_mood = update.mood
                if reply is None:
                    reply = Message(role=Role.MODEL, content=update.text)
                    self._append(reply)
                else:
                    reply.content = update.text
                if on_update is not None:
                    on_update(reply)
            assembler.finish()
        except ConversationError as e:
            self._discard(reply, on_retract)
            return self._fail(e)
        except Exception as e:
            logger.error(f"Stream interrupted for {self.profile_id}: {e}")
            self._discard(reply, on_retract)
            return self._fail(FatalError("Stream interrupted", e))

        self._state = TurnState.DELIVERED
        self._persist()
        return TurnResult(state=TurnState.DELIVERED, message=reply, mood=assembler.mood)

    def _discard(
        self,
        reply: Optional[Message],
        on_retract: Optional[Callable[[Message], None]]
    ) -> None:
        """Drop a partially streamed reply so the turn appends one message."""
        if reply is None:
            return
        self._messages = [m for m in self._messages if m is not reply]
        if on_retract is not None:
            on_retract(reply)

    def toggle_reaction(self, message_id: str, emoji: str) -> Message:
        """Add or remove a reaction on a message and persist the change.

        Raises:
            KeyError: If no message has that id
        """
        for message in self._messages:
            if message.id == message_id:
                message.toggle_reaction(emoji)
                self._persist()
                return message
        raise KeyError(f"Unknown message id: {message_id}")

    def clear(self) -> None:
        """Forget this conversation (profile deletion)."""
        if self._state != TurnState.IDLE:
            raise TurnInProgress(f"A turn is already in flight for {self.profile_id}")
        self._messages = []
        self.current_mood = Mood.NEUTRAL
        self.history_store.delete(self.profile_id)
