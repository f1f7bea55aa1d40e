from __future__ import annotations

import asyncio
import threading

import pytest

from streamchat.errors import InvalidRole, TransportFailure
from streamchat.models import Message
from streamchat.session import SessionController
from streamchat.titles import TitleSummarizer


def _session(store, backend, **kwargs):
    return SessionController(store, backend, owner_id="alice", summarizer=TitleSummarizer(backend, store), **kwargs)


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_first_exchange_streams_persists_and_titles(backend_cls, spy_store):
    backend = backend_cls(["Il ", "est ", "15h."], title="Titre: Heure actuelle")
    fragments = []
    session = _session(spy_store, backend, on_fragment=fragments.append)

    async def run():
        await session.start()
        reply = await session.submit("Quelle heure est-il ?")
        await session.wait_background()
        return reply

    reply = asyncio.run(run())

    assert [(m.role, m.content) for m in session.messages] == [
        ("user", "Quelle heure est-il ?"),
        ("model", "Il est 15h."),
    ]
    assert reply is session.messages[-1]
    assert "".join(fragments) == reply.content

    cid = session.conversation_id
    stored = spy_store.list_messages(cid)
    assert [(m.role, m.content) for m in stored] == [("user", "Quelle heure est-il ?"), ("model", "Il est 15h.")]
    assert spy_store.title_updates == [(cid, "Heure actuelle")]
    assert spy_store.get_conversation(cid).owner_id == "alice"


def test_conversation_is_created_lazily_with_placeholder(backend_cls, spy_store):
    session = _session(spy_store, backend_cls(["ok"]), placeholder_title="Nouvelle conversation")
    assert asyncio.run(session.start()) is None
    assert session.conversation_id is None
    assert spy_store.list_conversations("alice") == []

    async def run():
        await session.submit("hi")
        # title task is detached; inspect before it runs
        title = spy_store.get_conversation(session.conversation_id).title
        await session.wait_background()
        return title

    assert asyncio.run(run()) == "Nouvelle conversation"


def test_second_exchange_sends_history_and_does_not_retitle(backend_cls, spy_store):
    backend = backend_cls(["second"])
    session = _session(spy_store, backend)

    async def run():
        await session.submit("Hi there")
        await session.submit("How are you?")
        await session.wait_background()

    asyncio.run(run())

    assert len(session.messages) == 4
    request = backend.requests[1]
    assert [(t.role, t.text) for t in request.history] == [("user", "Hi there"), ("assistant", "second")]
    assert request.message == "How are you?"
    assert len(spy_store.title_updates) == 1


def test_failure_keeps_partial_in_memory_only(backend_cls, spy_store):
    backend = backend_cls(["Bonj", "our"], error=ConnectionError("dropped"))
    session = _session(spy_store, backend)

    async def run():
        with pytest.raises(TransportFailure):
            await session.submit("Salut")
        await session.wait_background()

    asyncio.run(run())

    assert session.messages[-1].role == "model"
    assert session.messages[-1].content == "Bonjour"
    assert session.last_error
    assert not session.busy
    stored = spy_store.list_messages(session.conversation_id)
    assert [(m.role, m.content) for m in stored] == [("user", "Salut")]
    assert spy_store.title_updates == []


def test_partial_reply_is_dropped_on_next_submit(backend_cls, spy_store):
    backend = backend_cls(["Bonj"], error=ConnectionError("dropped"))
    session = _session(spy_store, backend)

    async def run():
        with pytest.raises(TransportFailure):
            await session.submit("Salut")
        backend.error = None
        backend.fragments = ["Bonjour !"]
        await session.submit("Salut ?")
        await session.wait_background()

    asyncio.run(run())

    assert [(m.role, m.content) for m in session.messages] == [
        ("user", "Salut"),
        ("user", "Salut ?"),
        ("model", "Bonjour !"),
    ]
    # history of the retry excludes the failed partial
    assert [t.text for t in backend.requests[1].history] == ["Salut"]
    # first completed exchange still gets its title
    assert len(spy_store.title_updates) == 1


def test_submit_while_in_flight_is_ignored(backend_cls, spy_store):
    backend = backend_cls(["done"], gated=True)
    session = _session(spy_store, backend)

    async def run():
        first = asyncio.create_task(session.submit("first"))
        await _wait_for(lambda: backend.requests)
        before = list(session.messages)

        assert session.busy
        assert await session.submit("second") is None
        assert session.messages == before

        backend.gate.set()
        await first
        await session.wait_background()

    asyncio.run(run())

    assert len(backend.requests) == 1
    assert [m.content for m in session.messages] == ["first", "done"]


def test_blank_submission_is_ignored(backend_cls, spy_store):
    backend = backend_cls(["x"])
    session = _session(spy_store, backend)

    assert asyncio.run(session.submit("   ")) is None
    assert session.messages == []
    assert backend.requests == []


def test_buffer_grows_by_one_then_two(backend_cls, spy_store):
    backend = backend_cls(["reply"], gated=True)
    session = _session(spy_store, backend)
    sizes = []

    async def run():
        task = asyncio.create_task(session.submit("hello"))
        await asyncio.sleep(0)
        sizes.append(len(session.messages))
        await _wait_for(lambda: backend.requests)
        backend.gate.set()
        await task
        sizes.append(len([m for m in session.messages if m.content]))
        await session.wait_background()

    asyncio.run(run())
    assert sizes == [1, 2]


def test_start_loads_existing_transcript(backend_cls, spy_store):
    cid = spy_store.create_conversation("alice", "Old chat")
    spy_store.insert_message(cid, "user", "a", created_at=1.0)
    spy_store.insert_message(cid, "model", "b", created_at=2.0)
    backend = backend_cls(["c"])
    session = _session(spy_store, backend)

    async def run():
        await session.start(cid)
        await session.submit("next")
        await session.wait_background()

    asyncio.run(run())

    assert [m.content for m in session.messages] == ["a", "b", "next", "c"]
    assert [t.text for t in backend.requests[0].history] == ["a", "b"]
    assert spy_store.title_updates == []


def test_reset_mid_stream_is_harmless(backend_cls, spy_store):
    backend = backend_cls(["late"], gated=True)
    session = _session(spy_store, backend)

    async def run():
        task = asyncio.create_task(session.submit("hello"))
        await _wait_for(lambda: backend.requests)
        cid = session.conversation_id
        session.reset()
        backend.gate.set()
        result = await task
        await session.wait_background()
        return cid, result

    cid, result = asyncio.run(run())

    assert result is None
    assert session.messages == []
    assert session.conversation_id is None
    assert not session.busy
    assert [m.role for m in spy_store.list_messages(cid)] == ["user"]


def test_persistence_failure_does_not_break_the_exchange(backend_cls, spy_store_cls, tmp_data_dir):
    store = spy_store_cls(str(tmp_data_dir), fail_inserts=True)
    backend = backend_cls(["still ", "here"])
    session = _session(store, backend)

    async def run():
        reply = await session.submit("hello")
        await session.wait_background()
        return reply

    reply = asyncio.run(run())

    assert reply.content == "still here"
    assert len(session.messages) == 2
    # title only follows a persisted reply
    assert store.title_updates == []


def test_rate_is_exposed_while_streaming(backend_cls, spy_store):
    rates = []
    session = _session(spy_store, backend_cls(["abcd" * 10]), on_rate=rates.append)

    async def run():
        await session.submit("go")
        await session.wait_background()

    asyncio.run(run())
    assert len(rates) == 1
    assert session.rate == rates[0]
    assert rates[0] >= 0.0


def test_each_conversation_is_titled_once(backend_cls, spy_store):
    backend = backend_cls(["ok"], title="Petit titre")
    session = _session(spy_store, backend)

    async def run():
        await session.submit("first conversation")
        first = session.conversation_id
        session.reset()
        await session.submit("second conversation")
        await session.wait_background()
        return first, session.conversation_id

    first, second = asyncio.run(run())
    assert first != second
    assert sorted(spy_store.title_updates) == sorted([(first, "Petit titre"), (second, "Petit titre")])


def test_late_conversation_creation_does_not_leak_into_opened_chat(backend_cls, spy_store_cls, tmp_data_dir):
    class SlowCreateStore(spy_store_cls):
        """create_conversation waits until another conversation is being loaded."""

        def __init__(self, data_dir):
            super().__init__(data_dir)
            self.loading = threading.Event()
            self.creating = threading.Event()
            self.slow = False

        def create_conversation(self, owner_id, title):
            if self.slow:
                self.creating.set()
                self.loading.wait(timeout=5)
            return super().create_conversation(owner_id, title)

        def list_messages(self, conversation_id):
            self.loading.set()
            return super().list_messages(conversation_id)

    store = SlowCreateStore(str(tmp_data_dir))
    existing = store.create_conversation("alice", "Old chat")
    store.insert_message(existing, "user", "a", created_at=1.0)
    store.insert_message(existing, "model", "b", created_at=2.0)
    store.slow = True
    store.loading.clear()
    backend = backend_cls(["never shown"])
    session = _session(store, backend)

    async def run():
        task = asyncio.create_task(session.submit("first msg in new chat"))
        await _wait_for(store.creating.is_set)
        await session.start(existing)
        result = await task
        await session.wait_background()
        return result

    result = asyncio.run(run())

    assert result is None
    assert session.conversation_id == existing
    assert [m.content for m in session.messages] == ["a", "b"]
    assert backend.requests == []
    # the abandoned conversation never received the message
    stray = [c.id for c in store.list_conversations("alice") if c.id != existing]
    assert all(store.list_messages(cid) == [] for cid in stray)


def test_untranslatable_history_leaves_no_empty_reply(backend_cls, spy_store):
    backend = backend_cls(["x"])
    session = _session(spy_store, backend)
    session.messages.append(Message(role="system", content="odd"))

    async def run():
        with pytest.raises(InvalidRole):
            await session.submit("hello")
        await session.wait_background()

    asyncio.run(run())

    assert [(m.role, m.content) for m in session.messages] == [("system", "odd"), ("user", "hello")]
    assert not session.busy
    assert backend.requests == []
    assert spy_store.title_updates == []
