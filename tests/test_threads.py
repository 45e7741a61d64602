"""Tests for threaded comment sessions."""

import asyncio

import pytest

from task_cache.backends.memory import MemoryBackend
from task_cache.engine import TaskCache
from task_cache.errors import MalformedEntity, ThreadValidationError, WriteFailed
from task_cache.models import Message, RealId, TempId, UserRef
from task_cache.registry import ViewCacheRegistry
from task_cache.threads import ThreadSession, ThreadState, parse_message

ADA = UserRef(id=1, full_name="Ada Lovelace")
GRACE = UserRef(id=2, full_name="Grace Hopper")


async def wait_for_call(backend: MemoryBackend, operation: str) -> None:
    while not backend.calls_to(operation):
        await asyncio.sleep(0)


def test_user_identity_ignores_display_name() -> None:
    assert UserRef(id=2) == GRACE
    assert {UserRef(id=2), GRACE} == {GRACE}


def test_parse_message_requires_author_and_body() -> None:
    message = parse_message({"id": 5, "author_id": 1, "body": "hi"})
    assert message == Message(id=RealId(5), author_id=1, body="hi")
    with pytest.raises(MalformedEntity, match="missing author or body"):
        parse_message({"id": 5, "body": "hi"})


@pytest.mark.asyncio
async def test_thread_needs_a_second_participant(cache: TaskCache, backend: MemoryBackend) -> None:
    session = cache.thread_session(RealId(1), ADA)
    with pytest.raises(ThreadValidationError):
        await session.send_message("talking to myself")
    assert session.state is ThreadState.NO_THREAD
    assert backend.calls_to("create_thread") == []


@pytest.mark.asyncio
async def test_first_message_creates_thread_optimistically(cache: TaskCache, backend: MemoryBackend) -> None:
    session = cache.thread_session(RealId(1), ADA, [GRACE])
    gate = backend.hold("create_thread")

    task = asyncio.ensure_future(session.send_message("hi"))
    await asyncio.sleep(0)

    assert session.state is ThreadState.PENDING_THREAD
    assert isinstance(session.thread.id, TempId)
    assert session.participants == {ADA, GRACE}
    [optimistic] = session.messages
    assert optimistic.is_optimistic
    assert optimistic.body == "hi"

    gate.set()
    message = await task

    assert message.id == RealId(1)
    assert session.state is ThreadState.REAL_THREAD
    assert session.thread.id == RealId(1)
    assert session.messages == [message]
    assert session.pending == set()
    assert backend.calls_to("add_watchers") == [(1, [2], 1)]
    assert backend.threads[1]["watchers"] == [1, 2]


@pytest.mark.asyncio
async def test_failed_thread_creation_restores_pending_participants(
    cache: TaskCache, backend: MemoryBackend
) -> None:
    session = cache.thread_session(RealId(1), ADA, [GRACE])
    errors = []
    session.errors.subscribe(errors.append)
    backend.fail_next("create_thread")

    assert await session.send_message("hi") is None

    assert session.state is ThreadState.NO_THREAD
    assert session.thread is None
    assert session.messages == []
    assert session.participants == {GRACE}
    assert [type(e) for e in errors] == [WriteFailed]
    assert backend.calls_to("post_message") == []


@pytest.mark.asyncio
async def test_failed_watcher_batch_keeps_thread_and_pending(cache: TaskCache, backend: MemoryBackend) -> None:
    session = cache.thread_session(RealId(1), ADA, [GRACE])
    backend.fail_next("add_watchers")

    message = await session.send_message("hi")

    assert message is not None
    assert session.state is ThreadState.REAL_THREAD
    assert session.thread.participants == {ADA}
    assert session.pending == {GRACE}


@pytest.mark.asyncio
async def test_thread_on_unsaved_entity_is_not_created(cache: TaskCache, backend: MemoryBackend) -> None:
    session = cache.thread_session(TempId.new(), ADA, [GRACE])
    assert await session.send_message("too early") is None
    assert session.state is ThreadState.NO_THREAD
    assert backend.calls_to("create_thread") == []


@pytest.mark.asyncio
async def test_session_follows_entity_id_swap(cache: TaskCache, backend: MemoryBackend) -> None:
    gate = backend.hold("create")
    task = asyncio.ensure_future(cache.create_task("Discuss me"))
    await asyncio.sleep(0)
    [temp] = [entity_id for entity_id in cache.registry.entities if isinstance(entity_id, TempId)]
    session = cache.thread_session(temp, ADA, [GRACE])

    gate.set()
    await task

    assert session.entity_id == RealId(42)
    assert cache.thread_session(RealId(42), ADA) is session
    assert (await session.send_message("now it exists")) is not None
    assert backend.calls_to("create_thread") == [(42, 1)]


@pytest.mark.asyncio
async def test_echo_before_response_is_not_duplicated(cache: TaskCache, backend: MemoryBackend) -> None:
    session = cache.thread_session(RealId(1), ADA, [GRACE])
    gate = backend.hold("post_message")
    task = asyncio.ensure_future(session.send_message("hi"))
    await wait_for_call(backend, "post_message")

    session.receive_message({"id": 1, "author_id": 1, "body": "hi"})
    assert [m.is_optimistic for m in session.messages] == [False]

    gate.set()
    await task
    assert [m.id for m in session.messages] == [RealId(1)]


@pytest.mark.asyncio
async def test_echo_after_response_is_ignored(cache: TaskCache) -> None:
    session = cache.thread_session(RealId(1), ADA, [GRACE])
    message = await session.send_message("hi")
    session.receive_message({"id": message.id.value, "author_id": 1, "body": "hi"})
    assert session.messages == [message]


@pytest.mark.asyncio
async def test_failed_message_is_dropped(cache: TaskCache, backend: MemoryBackend) -> None:
    session = cache.thread_session(RealId(1), ADA, [GRACE])
    backend.fail_next("post_message")
    assert await session.send_message("lost") is None
    assert session.messages == []
    assert session.state is ThreadState.REAL_THREAD


def test_incoming_messages_are_validated(cache: TaskCache) -> None:
    registry = ViewCacheRegistry()
    session = ThreadSession.for_existing(cache.thread_backend, registry, RealId(1), ADA, {"id": 3, "participants": [1, 2]})
    assert session.participants == {ADA, GRACE}
    assert session.receive_message({"id": 9, "author_id": 2}) is None
    assert session.receive_message({"id": 9, "author_id": 2, "body": "hello"}).id == RealId(9)
    assert [m.body for m in session.messages] == ["hello"]


def test_pending_participants_before_thread_exists(cache: TaskCache) -> None:
    session = cache.thread_session(RealId(1), ADA)
    seen = []
    session.changes.subscribe(seen.append)
    session.add_pending(GRACE)
    assert session.participants == {GRACE}
    session.remove_pending(GRACE)
    assert session.participants == set()
    assert len(seen) == 2


async def existing_session(backend: MemoryBackend) -> ThreadSession:
    raw = await backend.create_thread(1, ADA.id)
    return ThreadSession.for_existing(
        backend, ViewCacheRegistry(), RealId(1), ADA, {"id": raw["id"], "participants": [{"id": 1, "full_name": "Ada"}]}
    )


@pytest.mark.asyncio
async def test_add_participant_to_real_thread(backend: MemoryBackend) -> None:
    session = await existing_session(backend)
    assert await session.add_participant(GRACE)
    assert session.participants == {ADA, GRACE}
    assert backend.threads[1]["watchers"] == [1, 2]


@pytest.mark.asyncio
async def test_refused_participant_changes_are_reverted(backend: MemoryBackend) -> None:
    session = await existing_session(backend)
    errors = []
    session.errors.subscribe(errors.append)

    backend.fail_next("add_watcher")
    assert not await session.add_participant(GRACE)
    assert session.participants == {ADA}

    await session.add_participant(GRACE)
    backend.fail_next("remove_watcher")
    assert not await session.remove_participant(GRACE)
    assert session.participants == {ADA, GRACE}
    assert len(errors) == 2


@pytest.mark.asyncio
async def test_acting_user_cannot_be_removed(backend: MemoryBackend) -> None:
    session = await existing_session(backend)
    with pytest.raises(ThreadValidationError):
        await session.remove_participant(UserRef(id=1))
    assert ADA in session.participants
