"""Threaded comments: optimistic thread creation, participants and messages."""

import asyncio
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

import structlog

from task_cache.backend import ThreadBackend
from task_cache.channels import EventChannel
from task_cache.errors import MalformedEntity, ThreadValidationError, WriteFailed
from task_cache.models import EntityId, Message, RealId, TempId, Thread, UserRef, parse_id
from task_cache.orchestrator import utc_now
from task_cache.registry import ViewCacheRegistry

logger = structlog.get_logger()


class ThreadState(str, Enum):
    NO_THREAD = "no_thread"
    PENDING_THREAD = "pending_thread"
    REAL_THREAD = "real_thread"


def parse_message(raw: Mapping[str, Any]) -> Message:
    """Build a Message from a raw server message.

    Raises:
        MalformedEntity: If the id, author or body is missing
    """
    try:
        message_id = parse_id(raw.get("id"))
    except ValueError as e:
        raise MalformedEntity(str(e), raw=raw) from e
    if raw.get("author_id") is None or raw.get("body") is None:
        raise MalformedEntity(f"Message {message_id} is missing author or body", raw=raw)
    return Message(id=message_id, author_id=raw["author_id"], body=raw["body"], created_at=raw.get("created_at"))


class ThreadSession:
    """The comment thread of one entity, as seen by one acting user.

    Before the first message the thread does not exist and the chosen
    participants are kept in ``pending``. The first send creates the thread
    under a temporary id, shows it immediately, and swaps in the server id
    once the backend answers. The session is registered with the view cache
    registry as an id index, so both the owning entity id and the thread id
    follow temp-to-real swaps.
    """

    def __init__(
        self,
        backend: ThreadBackend,
        registry: ViewCacheRegistry,
        entity_id: EntityId,
        acting_user: UserRef,
        default_participants: Iterable[UserRef] = (),
        resolve: Callable[[EntityId], EntityId] | None = None,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.backend = backend
        self.registry = registry
        self.entity_id = entity_id
        self.acting_user = acting_user
        self.resolve = resolve or (lambda entity_id: entity_id)
        self.clock = clock
        self.state = ThreadState.NO_THREAD
        self.thread: Thread | None = None
        self.pending: set[UserRef] = set(default_participants)
        self.changes: EventChannel[ThreadSession] = EventChannel("thread")
        self.errors: EventChannel[Exception] = EventChannel("thread-errors")
        self._saved_pending: set[UserRef] = set()
        self._creation: asyncio.Task[bool] | None = None

    @classmethod
    def for_existing(
        cls,
        backend: ThreadBackend,
        registry: ViewCacheRegistry,
        entity_id: EntityId,
        acting_user: UserRef,
        raw_thread: Mapping[str, Any],
    ) -> "ThreadSession":
        """Open a session on a thread the server already has."""
        session = cls(backend, registry, entity_id, acting_user)
        participants = {
            UserRef(id=p["id"], full_name=p.get("full_name", "")) if isinstance(p, Mapping) else UserRef(id=p)
            for p in raw_thread.get("participants", [])
        }
        session.thread = Thread(
            id=parse_id(raw_thread["id"]),
            entity_id=entity_id,
            participants=participants,
            messages=[parse_message(m) for m in raw_thread.get("messages", [])],
        )
        session.state = ThreadState.REAL_THREAD
        return session

    @property
    def participants(self) -> set[UserRef]:
        """Participants of the thread, or the pending selection while there is none."""
        if self.thread is None:
            return set(self.pending)
        return set(self.thread.participants)

    @property
    def messages(self) -> list[Message]:
        return list(self.thread.messages) if self.thread is not None else []

    def add_pending(self, user: UserRef) -> None:
        self.pending.add(user)
        self._notify()

    def remove_pending(self, user: UserRef) -> None:
        self.pending.discard(user)
        self._notify()

    async def send_message(self, body: str) -> Message | None:
        """Send a message, creating the thread first if needed.

        Args:
            body: Message text

        Returns:
            The confirmed message, or None if the thread or message write failed

        Raises:
            ThreadValidationError: If a new thread would have fewer than two participants
        """
        if self.state is ThreadState.NO_THREAD:
            participants = {self.acting_user, *self.pending}
            if len(participants) < 2:
                raise ThreadValidationError("A thread needs at least one participant besides the author")
            self._start_thread(participants)

        thread = self.thread
        optimistic = Message(
            id=TempId.new(),
            author_id=self.acting_user.id,
            body=body,
            created_at=self.clock(),
            is_optimistic=True,
        )
        thread.messages.append(optimistic)
        self._notify()

        if self._creation is not None and not await self._creation:
            return None
        if self.thread is not thread:
            return None

        try:
            raw = await self.backend.post_message(self._thread_key(), self.acting_user.id, body)
            message = parse_message(raw)
        except Exception as e:
            self._drop_message(optimistic.id)
            self._fail(WriteFailed.from_exception(e))
            return None
        self._settle_message(optimistic.id, message)
        logger.info("Message posted", thread_id=str(thread.id), message_id=str(message.id))
        return message

    def receive_message(self, raw: Mapping[str, Any]) -> Message | None:
        """Ingest a message pushed by the server.

        An optimistic message with the same author and body is replaced rather
        than duplicated.
        """
        if self.thread is None:
            logger.debug("Message for unknown thread dropped", entity_id=str(self.entity_id))
            return None
        try:
            message = parse_message(raw)
        except MalformedEntity as e:
            logger.warning("Dropping malformed message", error=str(e))
            return None
        messages = self.thread.messages
        if any(m.id == message.id for m in messages):
            return message
        for i, existing in enumerate(messages):
            if existing.is_optimistic and existing.author_id == message.author_id and existing.body == message.body:
                messages[i] = message
                break
        else:
            messages.append(message)
        self._notify()
        return message

    async def add_participant(self, user: UserRef) -> bool:
        """Add a participant; reverted if the server refuses.

        Returns:
            True if the participant is in the thread (or pending selection) afterwards
        """
        if self.state is ThreadState.NO_THREAD:
            self.add_pending(user)
            return True
        if self.state is ThreadState.PENDING_THREAD:
            self.pending.add(user)
            self.thread.participants.add(user)
            self._notify()
            return True
        if user in self.thread.participants:
            return True

        self.thread.participants.add(user)
        self._notify()
        try:
            await self.backend.add_watcher(self._thread_key(), user.id)
        except Exception as e:
            self.thread.participants.discard(user)
            self._fail(WriteFailed.from_exception(e))
            return False
        logger.info("Participant added", thread_id=str(self.thread.id), user_id=user.id)
        return True

    async def remove_participant(self, user: UserRef) -> bool:
        """Remove a participant; reverted if the server refuses.

        Raises:
            ThreadValidationError: If asked to remove the acting user
        """
        if user == self.acting_user:
            raise ThreadValidationError("The acting user cannot be removed from the thread")
        if self.state is ThreadState.NO_THREAD:
            self.remove_pending(user)
            return True
        if self.state is ThreadState.PENDING_THREAD:
            self.pending.discard(user)
            self.thread.participants.discard(user)
            self._notify()
            return True
        if user not in self.thread.participants:
            return True

        self.thread.participants.discard(user)
        self._notify()
        try:
            await self.backend.remove_watcher(self._thread_key(), user.id)
        except Exception as e:
            self.thread.participants.add(user)
            self._fail(WriteFailed.from_exception(e))
            return False
        logger.info("Participant removed", thread_id=str(self.thread.id), user_id=user.id)
        return True

    def replace_id(self, old: EntityId, new: EntityId) -> None:
        if self.entity_id == old:
            self.entity_id = new
            if self.thread is not None:
                self.thread.entity_id = new
        if self.thread is not None and self.thread.id == old:
            self.thread.id = new

    def discard_id(self, entity_id: EntityId) -> None:
        if self.thread is not None and self.thread.id == entity_id:
            self._reset()

    def _start_thread(self, participants: set[UserRef]) -> None:
        temp = TempId.new()
        self._saved_pending = set(self.pending)
        self.thread = Thread(id=temp, entity_id=self.entity_id, participants=set(participants))
        self.state = ThreadState.PENDING_THREAD
        logger.info("Creating thread", entity_id=str(self.entity_id), temp_id=str(temp))
        self._notify()
        self._creation = asyncio.ensure_future(self._create_thread(temp))

    async def _create_thread(self, temp: TempId) -> bool:
        try:
            owner = self.resolve(self.entity_id)
            if not isinstance(owner, RealId):
                raise WriteFailed(f"Entity {owner} has not been saved yet")
            raw = await self.backend.create_thread(owner.value, self.acting_user.id)
            real = parse_id(raw.get("id"))
        except Exception as e:
            self._abandon(temp, WriteFailed.from_exception(e))
            return False

        # The session is an id index; this swaps the thread id here too.
        self.registry.replace_index_ids(temp, real)
        if self.thread is not None and self.thread.id == temp:
            self.thread.id = real
        self.state = ThreadState.REAL_THREAD
        self._creation = None
        logger.info("Thread created", entity_id=str(self.entity_id), thread_id=str(real))
        self._notify()

        watchers = [user for user in self.pending if user != self.acting_user]
        if watchers:
            try:
                await self.backend.add_watchers(real.value, [user.id for user in watchers], self.acting_user.id)
            except Exception as e:
                for user in watchers:
                    self.thread.participants.discard(user)
                self._notify()
                self._fail(WriteFailed.from_exception(e))
                return True
        self.pending.clear()
        self._notify()
        return True

    def _abandon(self, temp: TempId, error: Exception) -> None:
        logger.warning("Thread creation failed", entity_id=str(self.entity_id), temp_id=str(temp), error=str(error))
        self._reset()
        self.pending = set(self._saved_pending)
        self._notify()
        self.errors.publish(error)

    def _reset(self) -> None:
        self.thread = None
        self.state = ThreadState.NO_THREAD
        self._creation = None

    def _thread_key(self) -> int:
        if self.thread is None or not isinstance(self.thread.id, RealId):
            raise WriteFailed("Thread has not been created yet")
        return self.thread.id.value

    def _settle_message(self, temp_id: TempId, message: Message) -> None:
        messages = self.thread.messages
        if any(m.id == message.id for m in messages):
            self._drop_message(temp_id)
            return
        for i, existing in enumerate(messages):
            if existing.id == temp_id:
                messages[i] = message
                break
        else:
            messages.append(message)
        self._notify()

    def _drop_message(self, message_id: EntityId) -> None:
        if self.thread is None:
            return
        self.thread.messages[:] = [m for m in self.thread.messages if m.id != message_id]
        self._notify()

    def _fail(self, error: Exception) -> None:
        logger.warning("Thread operation failed", entity_id=str(self.entity_id), error=str(error))
        self.errors.publish(error)

    def _notify(self) -> None:
        self.changes.publish(self)
