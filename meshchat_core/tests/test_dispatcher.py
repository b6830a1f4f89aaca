import asyncio

import pytest

from meshchat_core.chat.dispatcher import Dispatcher
from meshchat_core.chat.session_worker import SessionWorker
from meshchat_core.domain.exceptions import (
    DispatcherClosedError,
    RoutingError,
    SendError,
    SessionCreationError,
)
from meshchat_core.domain.models import InboundMessage


async def _route(dispatcher, text, metadata=None):
    message = InboundMessage.create(text, metadata)
    accepted = await dispatcher.route(message)
    return accepted, message


def test_same_key_shares_worker_and_history(fake_backend):
    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat", "sys")
        dispatcher.start()
        first = await dispatcher.ask("one", {"channel": "general", "node_id": "a"})
        second = await dispatcher.ask("two", {"channel": "general", "node_id": "b"})
        worker = dispatcher.worker("general")
        keys = dispatcher.conversation_keys()
        await dispatcher.stop()
        return first, second, worker, keys

    first, second, worker, keys = asyncio.run(_exercise())
    assert (first, second) == ("echo: one", "echo: two")
    assert keys == ["general"]
    assert len(fake_backend.sessions) == 1
    session = fake_backend.sessions[0]
    assert worker.session is session
    assert [sent[-1] for sent in session.sent] == ["one", "two"]
    assert len(session.turns) == 4


def test_different_keys_use_separate_workers(fake_backend):
    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        await dispatcher.ask("hi", {"channel": "general"})
        await dispatcher.ask("hi", {"channel": "DM", "node_id": "!abcd"})
        await dispatcher.ask("hi", {"node_id": "!abcd"})
        workers = (dispatcher.worker("general"), dispatcher.worker("!abcd"))
        keys = sorted(dispatcher.conversation_keys())
        await dispatcher.stop()
        return workers, keys

    (general, direct), keys = asyncio.run(_exercise())
    assert keys == ["!abcd", "general"]
    assert general is not direct
    assert general.session is not direct.session
    assert len(general.session.turns) == 2
    assert len(direct.session.turns) == 4


def test_unroutable_message_rejected_without_worker(fake_backend):
    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        accepted, message = await _route(dispatcher, "hello", {"snr": "1"})
        reply = await message.reply_to
        keys = dispatcher.conversation_keys()
        await dispatcher.stop()
        return accepted, reply, keys

    accepted, reply, keys = asyncio.run(_exercise())
    assert accepted
    assert isinstance(reply.error, RoutingError)
    assert str(reply.error) == "no channel or node_id found"
    assert keys == []
    assert fake_backend.create_calls == []


def test_worker_creation_failure_registers_nothing(fake_backend):
    fake_backend.create_errors.append(RuntimeError("quota"))

    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        _, message = await _route(dispatcher, "hello", {"channel": "general"})
        failed = await message.reply_to
        keys_after_failure = dispatcher.conversation_keys()
        retried = await dispatcher.ask("hello", {"channel": "general"})
        await dispatcher.stop()
        return failed, keys_after_failure, retried

    failed, keys_after_failure, retried = asyncio.run(_exercise())
    assert isinstance(failed.error, SessionCreationError)
    assert keys_after_failure == []
    assert retried == "echo: hello"
    assert len(fake_backend.create_calls) == 2


def test_fifo_per_key_with_concurrent_callers(fake_backend, make_result):
    async def on_send(session, parts):
        await asyncio.sleep(0.001)
        return make_result(f"r:{parts[-1].text}")

    fake_backend.on_send = on_send

    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        meta = {"channel": "general"}
        messages = [InboundMessage.create(f"m{i}", meta) for i in range(10)]
        await asyncio.gather(*(dispatcher.route(m) for m in messages))
        replies = await asyncio.gather(*(m.reply_to for m in messages))
        await dispatcher.stop()
        return replies

    replies = asyncio.run(_exercise())
    assert [r.text for r in replies] == [f"r:m{i}" for i in range(10)]
    session = fake_backend.sessions[0]
    assert [sent[-1] for sent in session.sent] == [f"m{i}" for i in range(10)]


def test_stalled_conversation_does_not_block_others(fake_backend, make_result):
    state = {}

    async def on_send(session, parts):
        if parts[-1].text == "slow":
            await state["gate"].wait()
        return make_result(parts[-1].text)

    fake_backend.on_send = on_send

    async def _exercise():
        state["gate"] = asyncio.Event()
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        _, slow = await _route(dispatcher, "slow", {"channel": "a"})
        fast = await asyncio.wait_for(dispatcher.ask("fast", {"channel": "b"}), timeout=1)
        slow_done_early = slow.reply_to.done()
        state["gate"].set()
        slow_reply = await slow.reply_to
        await dispatcher.stop()
        return fast, slow_done_early, slow_reply

    fast, slow_done_early, slow_reply = asyncio.run(_exercise())
    assert fast == "fast"
    assert not slow_done_early
    assert slow_reply.text == "slow"


def test_workers_are_never_evicted(fake_backend):
    # 当前行为：注册表只增不减，空闲 worker 不会被回收
    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        for i in range(5):
            await dispatcher.ask("hi", {"node_id": f"n{i}"})
        await asyncio.sleep(0.01)
        await dispatcher.ask("hi", {"node_id": "n0"})
        keys = sorted(dispatcher.conversation_keys())
        running = all(dispatcher.worker(k).running for k in keys)
        await dispatcher.stop()
        return keys, running

    keys, running = asyncio.run(_exercise())
    assert keys == [f"n{i}" for i in range(5)]
    assert running
    assert len(fake_backend.sessions) == 5


def test_stop_drains_and_rejects_new_messages(fake_backend, make_result):
    async def on_send(session, parts):
        await asyncio.sleep(0.01)
        return make_result(parts[-1].text)

    fake_backend.on_send = on_send

    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        queued = [(await _route(dispatcher, f"m{i}", {"channel": "general"}))[1] for i in range(3)]
        await dispatcher.stop()
        accepted, late = await _route(dispatcher, "late", {"channel": "general"})
        worker = dispatcher.worker("general")
        return queued, accepted, late, worker

    queued, accepted, late, worker = asyncio.run(_exercise())
    assert [m.reply_to.result().text for m in queued] == ["m0", "m1", "m2"]
    assert not accepted
    assert isinstance(late.reply_to.result().error, DispatcherClosedError)
    assert not worker.running


def test_ask_raises_reply_error(fake_backend):
    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        try:
            await dispatcher.ask("hello", {})
        finally:
            await dispatcher.stop()

    with pytest.raises(RoutingError) as ei:
        asyncio.run(_exercise())
    assert ei.value.code == "ROUTING_ERROR"


def test_custom_worker_factory_is_used(fake_backend):
    created = []

    async def _exercise():
        async def factory(key):
            created.append(key)
            return await SessionWorker.create(key, fake_backend, "other-model")

        dispatcher = Dispatcher(fake_backend, "mesh-chat", worker_factory=factory)
        dispatcher.start()
        await dispatcher.ask("hi", {"channel": "general"})
        await dispatcher.ask("hi", {"channel": "general"})
        await dispatcher.stop()

    asyncio.run(_exercise())
    assert created == ["general"]
    assert fake_backend.create_calls[0][0] == "other-model"


def test_broken_session_history_does_not_stall_routing(fake_backend):
    def broken_history(curated=True):
        raise RuntimeError("history unavailable")

    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        await dispatcher.ask("warm up", {"channel": "bad"})
        fake_backend.sessions[0].history = broken_history
        bad = [(await _route(dispatcher, f"b{i}", {"channel": "bad"}))[1] for i in range(3)]
        good = await asyncio.wait_for(dispatcher.ask("hello", {"channel": "good"}), timeout=1)
        bad_replies = await asyncio.wait_for(asyncio.gather(*(m.reply_to for m in bad)), timeout=1)
        await dispatcher.stop()
        return good, bad_replies

    good, bad_replies = asyncio.run(_exercise())
    assert good == "echo: hello"
    assert all(isinstance(r.error, SendError) for r in bad_replies)
    assert all(isinstance(r.error.__cause__, RuntimeError) for r in bad_replies)


def test_abort_replies_every_pending_message(fake_backend):
    async def on_send(session, parts):
        await asyncio.sleep(1)

    fake_backend.on_send = on_send

    async def _exercise():
        dispatcher = Dispatcher(fake_backend, "mesh-chat")
        dispatcher.start()
        messages = [(await _route(dispatcher, f"m{i}", {"channel": "general"}))[1] for i in range(4)]
        await asyncio.sleep(0.05)
        dispatcher.abort()
        replies = await asyncio.wait_for(asyncio.gather(*(m.reply_to for m in messages)), timeout=1)
        accepted, late = await _route(dispatcher, "late", {"channel": "general"})
        return replies, accepted, late

    replies, accepted, late = asyncio.run(_exercise())
    assert all(isinstance(r.error, DispatcherClosedError) for r in replies)
    assert not accepted
    assert isinstance(late.reply_to.result().error, DispatcherClosedError)
