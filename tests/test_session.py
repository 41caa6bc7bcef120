"""
Tests for conversation turn orchestration.
"""
import asyncio
from unittest.mock import Mock

import pytest

from velvet_chat.core.errors import ErrorKind, TurnInProgress
from velvet_chat.core.retry import RetryingRequestExecutor
from velvet_chat.core.session import (
    DISTRACTED_TEMPLATE,
    EMPTY_TEMPLATE,
    QUOTA_TEMPLATE,
    ConversationSession,
    TurnState,
)
from velvet_chat.core.stream import Mood
from velvet_chat.storage.models import Message, Role
from velvet_chat.storage.repository import HistoryStore


class ProviderError(Exception):
    pass


async def _stream(fragments):
    for fragment in fragments:
        if isinstance(fragment, BaseException):
            raise fragment
        yield fragment


class FakeProvider:
    """Replays one script entry per call: a fragment list or an error."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.prompts = []

    async def send_streaming_message(self, prompt):
        self.prompts.append(prompt)
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        return _stream(script)


class GatedProvider:
    """Blocks inside the remote call until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send_streaming_message(self, prompt):
        self.started.set()
        await self.release.wait()
        return _stream(["[MOOD: Happy] done"])


class TestConversationSession:
    """Test the per-turn state machine."""

    def create_session(self, provider, guard, history_store, sleeper, **kwargs):
        executor = RetryingRequestExecutor(guard, sleep=sleeper)
        return ConversationSession(
            "profile-1", provider, guard, history_store, executor=executor, **kwargs
        )

    def test_delivered_turn(self, guard, history_store, sleeper):
        """A streamed reply is appended, persisted and its mood applied."""
        provider = FakeProvider(["[MOOD:", " Flirty] Hey", " there"])
        session = self.create_session(provider, guard, history_store, sleeper)
        seen = []

        result = asyncio.run(session.send("hi", on_update=lambda m: seen.append(m.content)))

        assert result.state == TurnState.DELIVERED
        assert result.delivered is True
        assert result.mood == Mood.FLIRTY
        assert result.message.content == "Hey there"
        assert seen == ["Hey", "Hey there"]
        assert session.current_mood == Mood.FLIRTY
        assert session.state == TurnState.IDLE
        assert provider.prompts == ["(Mood:Neutral) hi"]

        stored = history_store.get("profile-1")
        assert [(m.role, m.content) for m in stored] == [
            (Role.USER, "hi"),
            (Role.MODEL, "Hey there"),
        ]

    def test_mood_carried_into_next_prompt(self, guard, history_store, sleeper):
        """The last extracted mood prefixes the next prompt."""
        provider = FakeProvider(["[MOOD: Sad] oh"], ["ok"])
        session = self.create_session(provider, guard, history_store, sleeper)

        asyncio.run(session.send("first"))
        asyncio.run(session.send("second"))

        assert provider.prompts[1] == "(Mood:Sad) second"

    def test_update_mutates_single_message(self, guard, history_store, sleeper):
        """Streaming updates edit one model message in place."""
        provider = FakeProvider(["a", "b", "c"])
        session = self.create_session(provider, guard, history_store, sleeper)
        seen_ids = set()

        asyncio.run(session.send("hi", on_update=lambda m: seen_ids.add(m.id)))

        assert len(seen_ids) == 1
        assert len(session.messages) == 2
        assert session.messages[-1].content == "abc"

    def test_admission_denied_skips_remote_call(self, guard, history_store, sleeper):
        """A blocked guard fails the turn without contacting the provider."""
        guard.trigger_cooldown(60)
        provider = FakeProvider(["never"])
        session = self.create_session(provider, guard, history_store, sleeper)

        result = asyncio.run(session.send("hello?"))

        assert result.state == TurnState.FAILED
        assert result.error_kind == ErrorKind.ADMISSION_DENIED
        assert "rest for 60 seconds" in result.message.content
        assert provider.prompts == []
        assert [m.role for m in session.messages] == [Role.MODEL]
        assert len(history_store.get("profile-1")) == 1

    def test_quota_failure(self, guard, history_store, sleeper):
        """A quota error appends the drained template and sets the cooldown."""
        provider = FakeProvider(ProviderError("429 RESOURCE_EXHAUSTED"))
        session = self.create_session(provider, guard, history_store, sleeper)

        result = asyncio.run(session.send("hi"))

        assert result.state == TurnState.FAILED
        assert result.error_kind == ErrorKind.QUOTA_EXHAUSTED
        assert result.message.content == QUOTA_TEMPLATE
        assert result.message.role == Role.MODEL
        assert [m.role for m in session.messages] == [Role.USER, Role.MODEL]
        assert guard.get_status().is_blocked is True

    def test_empty_response(self, guard, history_store, sleeper):
        """A stream with nothing displayable maps to the empty template."""
        provider = FakeProvider(["[MOO"])
        session = self.create_session(provider, guard, history_store, sleeper)

        result = asyncio.run(session.send("hi"))

        assert result.error_kind == ErrorKind.EMPTY_RESPONSE
        assert result.message.content == EMPTY_TEMPLATE
        assert len(session.messages) == 2

    def test_transient_failures_are_invisible(self, guard, history_store, sleeper):
        """Retried failures do not show up in the history."""
        provider = FakeProvider(ProviderError("503"), ["fine"])
        session = self.create_session(provider, guard, history_store, sleeper)

        result = asyncio.run(session.send("hi"))

        assert result.state == TurnState.DELIVERED
        assert sleeper.delays == [1.0]
        assert [m.content for m in session.messages] == ["hi", "fine"]

    def test_fatal_failure(self, guard, history_store, sleeper):
        provider = FakeProvider(ProviderError("bad request 400"))
        session = self.create_session(provider, guard, history_store, sleeper)

        result = asyncio.run(session.send("hi"))

        assert result.error_kind == ErrorKind.FATAL
        assert result.message.content == DISTRACTED_TEMPLATE

    def test_mid_stream_failure_drops_partial(self, guard, history_store, sleeper):
        """A stream that breaks after partial text appends only the template."""
        provider = FakeProvider(["partial", ProviderError("connection reset")])
        session = self.create_session(provider, guard, history_store, sleeper)

        result = asyncio.run(session.send("hi"))

        assert result.state == TurnState.FAILED
        assert result.error_kind == ErrorKind.FATAL
        assert [m.content for m in session.messages] == ["hi", DISTRACTED_TEMPLATE]
        assert [m.content for m in history_store.get("profile-1")] == ["hi", DISTRACTED_TEMPLATE]

    def test_persistence_failure_keeps_memory(self, guard, sleeper):
        """A failing history write does not undo the turn."""
        store = Mock()
        store.get.return_value = []
        store.limit = 50
        store.put.side_effect = OSError("disk full")
        session = self.create_session(FakeProvider(["ok"]), guard, store, sleeper)

        result = asyncio.run(session.send("hi"))

        assert result.state == TurnState.DELIVERED
        assert [m.content for m in session.messages] == ["hi", "ok"]

    def test_second_send_while_in_flight(self, guard, history_store, sleeper):
        """Only one turn may be in flight per conversation."""
        provider = GatedProvider()
        session = self.create_session(provider, guard, history_store, sleeper)

        async def scenario():
            first = asyncio.ensure_future(session.send("one"))
            await provider.started.wait()
            assert session.state == TurnState.SENDING
            with pytest.raises(TurnInProgress):
                await session.send("two")
            provider.release.set()
            return await first

        result = asyncio.run(scenario())
        assert result.message.content == "done"
        assert [m.content for m in session.messages] == ["one", "done"]

    def test_blank_text_rejected(self, guard, history_store, sleeper):
        session = self.create_session(FakeProvider(), guard, history_store, sleeper)
        with pytest.raises(ValueError, match="text is required"):
            asyncio.run(session.send("   "))
        assert session.messages == []

    def test_loads_existing_history(self, guard, history_store, sleeper):
        """Without initial messages the stored history is used."""
        history_store.put("profile-1", [Message(role=Role.USER, content="earlier")])
        session = self.create_session(FakeProvider(), guard, history_store, sleeper)

        assert [m.content for m in session.messages] == ["earlier"]

    def test_mid_stream_failure_reports_retraction(self, guard, history_store, sleeper):
        """A partial reply already shown is handed back when it is dropped."""
        provider = FakeProvider(["partial", ProviderError("connection reset")])
        session = self.create_session(provider, guard, history_store, sleeper)
        shown = []
        retracted = []

        asyncio.run(session.send("hi", on_update=shown.append, on_retract=retracted.append))

        assert len(retracted) == 1
        assert retracted[0] is shown[-1]
        assert all(m is not retracted[0] for m in session.messages)

    def test_no_retraction_without_partial_reply(self, guard, history_store, sleeper):
        session = self.create_session(
            FakeProvider(ProviderError("invalid api key")), guard, history_store, sleeper
        )
        retracted = []

        asyncio.run(session.send("hi", on_retract=retracted.append))

        assert retracted == []

    def test_working_history_capped(self, guard, kv_store, sleeper):
        """The in-memory history keeps only the most recent messages."""
        store = HistoryStore(kv_store, limit=4)
        earlier = [Message(role=Role.USER, content=f"m{i}") for i in range(6)]
        session = self.create_session(
            FakeProvider(["ok"]), guard, store, sleeper, initial_messages=earlier
        )
        assert [m.content for m in session.messages] == ["m2", "m3", "m4", "m5"]

        asyncio.run(session.send("hi"))

        assert [m.content for m in session.messages] == ["m4", "m5", "hi", "ok"]
        assert [m.content for m in store.get("profile-1")] == ["m4", "m5", "hi", "ok"]


class TestReactionsAndClear:
    """Test message reactions and conversation deletion."""

    def create_session(self, guard, history_store, messages):
        return ConversationSession(
            "profile-1", FakeProvider(), guard, history_store,
            initial_messages=messages
        )

    def test_toggle_reaction(self, guard, history_store):
        message = Message(role=Role.MODEL, content="hey")
        session = self.create_session(guard, history_store, [message])

        session.toggle_reaction(message.id, "🔥")
        assert history_store.get("profile-1")[0].reactions == ["🔥"]

        session.toggle_reaction(message.id, "🔥")
        assert history_store.get("profile-1")[0].reactions == []

    def test_toggle_unknown_message(self, guard, history_store):
        session = self.create_session(guard, history_store, [])
        with pytest.raises(KeyError):
            session.toggle_reaction("missing", "❤️")

    def test_clear(self, guard, history_store):
        history_store.put("profile-1", [Message(role=Role.USER, content="x")])
        session = self.create_session(guard, history_store, None)

        session.clear()

        assert session.messages == []
        assert history_store.get("profile-1") == []
        assert session.current_mood == Mood.NEUTRAL
