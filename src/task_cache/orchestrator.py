"""Mutation orchestrator: optimistic apply, backend write, then commit or rollback."""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import structlog

from task_cache.backend import Backend
from task_cache.broadcaster import Broadcaster
from task_cache.channels import EventChannel
from task_cache.composite import CompositeMutation
from task_cache.errors import MalformedEntity, PartialCompositeFailure, WriteFailed
from task_cache.models import (
    Committed,
    EntityId,
    MutationIntent,
    MutationKind,
    MutationResult,
    MutationState,
    PartiallyCommitted,
    RealId,
    RolledBack,
    TempId,
    ViewEntity,
    parse_id,
)
from task_cache.normalizer import RelationDirectory, normalize, normalize_changes, related_fields, wire_fields
from task_cache.reconciler import TempIdReconciler
from task_cache.registry import EntitySnapshot, ViewCacheRegistry

logger = structlog.get_logger()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PendingMutation:
    """A mutation that has been applied optimistically and not yet settled."""

    mutation_id: int
    intent: MutationIntent
    entity_id: EntityId
    seq: int
    state: MutationState = MutationState.IDLE
    snapshot: EntitySnapshot | None = None
    changes: dict[str, Any] = field(default_factory=dict)
    prior: dict[str, Any] = field(default_factory=dict)
    step: str | None = None
    exact: bool = True

    @property
    def touched(self) -> frozenset[str]:
        """Every field this mutation writes, widened to whole foreign-key groups."""
        out: set[str] = set()
        for name in self.changes:
            out |= related_fields(name)
        return frozenset(out)


@dataclass
class _Draft:
    pending: PendingMutation
    future: "asyncio.Future[MutationResult]"
    handle: asyncio.TimerHandle | None = None


class MutationOrchestrator:
    """Runs the lifecycle of every mutation.

    A mutation is applied to all view caches before the backend write is
    issued. Success commits the authoritative entity (swapping temp ids for
    creates); failure restores the exact pre-mutation cache state and
    publishes the error on ``errors``.

    Concurrent mutations on the same entity are merged field by field: a
    response never overwrites a field that a later, still in-flight mutation
    has written, and the most recently issued value of a field wins
    regardless of the order in which responses arrive.

    The orchestrator registers itself as an id index, so mutations begun on a
    temp id follow the swap to the real id. Committed deletes are remembered
    and late responses or pushes for those ids are dropped.
    """

    def __init__(
        self,
        registry: ViewCacheRegistry,
        broadcaster: Broadcaster,
        reconciler: TempIdReconciler,
        backend: Backend,
        *,
        directory: RelationDirectory | None = None,
        clock: Callable[[], str] = utc_now,
        debounce_ms: int = 400,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.reconciler = reconciler
        self.backend = backend
        self.directory = directory
        self.clock = clock
        self.debounce_ms = debounce_ms
        self.errors: EventChannel[Exception] = EventChannel("errors")
        self._counter = itertools.count(1)
        self._pending: dict[int, PendingMutation] = {}
        self._field_seq: dict[tuple[EntityId, str], int] = {}
        self._drafts: dict[EntityId, _Draft] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self.deleted: set[EntityId] = set()
        registry.add_index(self)

    def pending(self) -> list[PendingMutation]:
        """In-flight mutations, oldest first."""
        return list(self._pending.values())

    async def mutate(self, intent: MutationIntent) -> MutationResult:
        """Apply a mutation optimistically, write it, then commit or roll back.

        Args:
            intent: The requested change

        Returns:
            Committed with the authoritative entity, or RolledBack with the error
        """
        try:
            pending = self.begin(intent)
        except MalformedEntity as e:
            logger.warning("Mutation refused", kind=intent.kind.value, error=str(e))
            self.errors.publish(e)
            return RolledBack(e)
        return await self.execute(pending)

    def begin(self, intent: MutationIntent, step: str | None = None) -> PendingMutation:
        """Apply the optimistic part of a mutation to every cache.

        Raises:
            MalformedEntity: If the intent cannot produce a valid entity; no cache is touched
        """
        kind = intent.kind
        if kind is MutationKind.CREATE:
            entity_id = intent.entity_id if isinstance(intent.entity_id, TempId) else TempId.new()
        elif intent.entity_id is None:
            raise MalformedEntity(f"{kind.value} intent has no entity id")
        else:
            entity_id = self.reconciler.resolve(intent.entity_id)

        mutation_id = next(self._counter)
        pending = PendingMutation(
            mutation_id=mutation_id,
            intent=intent,
            entity_id=entity_id,
            seq=mutation_id,
            step=step,
        )

        if kind is MutationKind.CREATE:
            raw = dict(intent.optimistic_entity.fields) if intent.optimistic_entity is not None else {}
            raw.update(intent.changed_fields)
            if raw.get("created_at") is None:
                raw["created_at"] = self.clock()
            raw["id"] = entity_id
            optimistic = normalize(raw, directory=self.directory, entity_type=intent.entity_type)
            pending.changes = dict(optimistic.fields)
            pending.snapshot = self.registry.capture(entity_id)
            self._register(pending)
            self.broadcaster.apply(optimistic, created=True)
        elif kind is MutationKind.DELETE:
            pending.snapshot = self.registry.capture(entity_id)
            self._register(pending)
            self.broadcaster.remove(entity_id)
        else:
            current = self.registry.entities.get(entity_id)
            changes = normalize_changes(intent.changed_fields, current, self.directory, hints=intent.optimistic_entity)
            if kind is MutationKind.REPARENT:
                changes = {"parent_id": changes.get("parent_id")}
            pending.changes = changes
            pending.prior = {name: current.get(name) if current is not None else None for name in changes}
            pending.snapshot = self.registry.capture(entity_id)
            self._register(pending)
            if current is not None:
                self.broadcaster.apply(ViewEntity(id=entity_id, fields=changes, entity_type=current.entity_type))
            else:
                logger.debug("Entity not cached, write only", entity_id=str(entity_id))

        pending.state = MutationState.OPTIMISTICALLY_APPLIED
        logger.info(
            "Mutation applied optimistically",
            mutation_id=mutation_id,
            kind=kind.value,
            entity_id=str(entity_id),
            step=step,
        )
        return pending

    async def execute(self, pending: PendingMutation, publish: bool = True) -> MutationResult:
        """Issue the backend write for a begun mutation and settle it."""
        try:
            response = await self._write(pending)
        except Exception as e:
            error = WriteFailed.from_exception(e, intent=pending.intent, step=pending.step)
            self._rollback(pending, error, publish=publish)
            return RolledBack(error)
        return self._commit(pending, response, publish=publish)

    async def mutate_composite(self, composite: CompositeMutation) -> MutationResult:
        """Run a multi-step mutation.

        Every step is applied optimistically up front. Writes then run in
        dependency order, independent steps concurrently. When a step fails,
        the steps that never ran are rolled back; steps that already
        committed stay committed.

        Args:
            composite: Steps and their dependencies

        Returns:
            Committed when every step committed, RolledBack when none did,
            otherwise PartiallyCommitted carrying a PartialCompositeFailure
        """
        waves = composite.waves()
        targets = composite.targets()
        begun: dict[str, PendingMutation] = {}
        try:
            for step in composite.steps:
                begun[step.name] = self.begin(step.to_intent(targets), step=step.name)
        except MalformedEntity as e:
            for pending in reversed(list(begun.values())):
                self._rollback(pending, e, publish=False)
            logger.warning("Composite mutation refused", composite=composite.name, error=str(e))
            self.errors.publish(e)
            return RolledBack(e)

        committed: list[str] = []
        entities: list[ViewEntity] = []
        failed: list[str] = []
        skipped: list[str] = []
        errors: dict[str, Exception] = {}
        for index, wave in enumerate(waves):
            results = await asyncio.gather(*(self.execute(begun[step.name], publish=False) for step in wave))
            for step, result in zip(wave, results):
                if isinstance(result, Committed):
                    committed.append(step.name)
                    if result.entity is not None:
                        entities.append(result.entity)
                else:
                    failed.append(step.name)
                    errors[step.name] = result.error
            if failed:
                skipped = [step.name for later in waves[index + 1 :] for step in later]
                for name in reversed(skipped):
                    self._rollback(begun[name], WriteFailed(f"Step '{name}' skipped"), publish=False)
                break

        if not failed:
            logger.info("Composite mutation committed", composite=composite.name, steps=committed)
            return Committed(entities[0] if entities else None, related=tuple(entities))

        if not committed:
            error = errors[failed[0]]
            logger.warning("Composite mutation rolled back", composite=composite.name, failed=failed)
            self.errors.publish(error)
            return RolledBack(error)

        partial = PartialCompositeFailure(failed, skipped, committed, errors)
        logger.warning(
            "Composite mutation partially committed",
            composite=composite.name,
            failed=failed,
            skipped=skipped,
            committed=committed,
        )
        self.errors.publish(partial)
        return PartiallyCommitted(entities, partial)

    def edit_field(self, entity_id: EntityId, name: str, value: Any) -> "asyncio.Future[MutationResult]":
        """Apply a keystroke-level edit now and write it after the debounce delay.

        Edits to the same entity within the delay coalesce into one write.
        Must be called from a running event loop.

        Returns:
            A future resolved with the result of the coalesced write
        """
        loop = asyncio.get_running_loop()
        entity_id = self.reconciler.resolve(entity_id)
        draft = self._drafts.get(entity_id)
        if draft is None:
            pending = self.begin(MutationIntent.update(entity_id, {name: value}))
            draft = _Draft(pending=pending, future=loop.create_future())
            self._drafts[entity_id] = draft
        else:
            self._extend(draft.pending, {name: value})
            if draft.handle is not None:
                draft.handle.cancel()
        draft.handle = loop.call_later(self.debounce_ms / 1000, self._fire, entity_id)
        return draft.future

    async def flush(self) -> None:
        """Write every debounced edit now and wait for all of them."""
        drafts = list(self._drafts.values())
        self._drafts.clear()
        for draft in drafts:
            if draft.handle is not None:
                draft.handle.cancel()
        await asyncio.gather(*(self._run_draft(draft) for draft in drafts))
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def accept_push(self, entity: ViewEntity) -> ViewEntity | None:
        """Strip fields of a pushed entity that an in-flight mutation is still writing.

        Returns:
            The entity to apply, or None when the entity was deleted
        """
        entity_id = self.reconciler.resolve(entity.id)
        if entity_id in self.deleted:
            logger.debug("Push for deleted entity dropped", entity_id=str(entity_id))
            return None
        fields = {
            name: value for name, value in entity.fields.items() if not self._in_flight(entity_id, related_fields(name))
        }
        return ViewEntity(id=entity_id, fields=fields, entity_type=entity.entity_type)

    def mark_deleted(self, entity_id: EntityId) -> None:
        """Remember a delete confirmed by the server."""
        if isinstance(entity_id, RealId):
            self.deleted.add(entity_id)

    def replace_id(self, old: EntityId, new: EntityId) -> None:
        """Re-key pending mutations, field ownership and drafts after a temp id swap."""
        for pending in self._pending.values():
            if pending.entity_id != old:
                continue
            pending.entity_id = new
            if pending.intent.kind is not MutationKind.CREATE:
                # The snapshot still holds the temp row.
                pending.exact = False
        self._field_seq = {
            ((new if entity_id == old else entity_id), name): seq
            for (entity_id, name), seq in self._field_seq.items()
        }
        draft = self._drafts.pop(old, None)
        if draft is not None:
            self._drafts[new] = draft

    def discard_id(self, entity_id: EntityId) -> None:
        # Mutations on a dropped temp entity fail at write time and settle themselves.
        pass

    def _register(self, pending: PendingMutation) -> None:
        # Older snapshots of this entity no longer describe what to restore.
        for other in self._pending.values():
            if other.entity_id == pending.entity_id:
                other.exact = False
        self._pending[pending.mutation_id] = pending
        for name in pending.touched:
            self._field_seq[(pending.entity_id, name)] = pending.seq

    def _extend(self, pending: PendingMutation, fields: dict[str, Any]) -> None:
        current = self.registry.entities.get(pending.entity_id)
        changes = normalize_changes(fields, current, self.directory)
        for name in changes:
            if name not in pending.prior:
                pending.prior[name] = current.get(name) if current is not None else None
        pending.changes.update(changes)
        pending.intent.changed_fields.update(fields)
        pending.seq = next(self._counter)
        for name in pending.touched:
            self._field_seq[(pending.entity_id, name)] = pending.seq
        if current is not None:
            self.broadcaster.apply(ViewEntity(id=pending.entity_id, fields=changes, entity_type=current.entity_type))

    def _fire(self, entity_id: EntityId) -> None:
        draft = self._drafts.pop(self.reconciler.resolve(entity_id), None)
        if draft is None:
            return
        task = asyncio.ensure_future(self._run_draft(draft))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_draft(self, draft: _Draft) -> None:
        try:
            result = await self.execute(draft.pending)
        except Exception as e:
            logger.exception("Debounced write failed", entity_id=str(draft.pending.entity_id))
            if not draft.future.done():
                draft.future.set_exception(e)
            return
        if not draft.future.done():
            draft.future.set_result(result)

    def _wire(self, fields: dict[str, Any], drop_empty: bool = False) -> dict[str, Any]:
        return {
            name: self._wire_value(name, value)
            for name, value in wire_fields(fields).items()
            if not (drop_empty and value is None)
        }

    def _wire_value(self, name: str, value: Any) -> Any:
        if isinstance(value, (RealId, TempId)):
            value = self.reconciler.resolve(value)
            if isinstance(value, TempId):
                raise WriteFailed(f"Field '{name}' references unsaved entity {value}")
            return value.value
        if isinstance(value, list):
            return [self._wire_value(name, item) for item in value]
        return value

    async def _write(self, pending: PendingMutation) -> Any:
        intent = pending.intent
        if intent.kind is MutationKind.CREATE:
            return await self.backend.create(intent.entity_type, self._wire(pending.changes, drop_empty=True))
        if intent.kind is MutationKind.RPC:
            payload = {name: self._wire_value(name, value) for name, value in intent.payload.items()}
            return await self.backend.rpc(intent.procedure, payload)

        target = self.reconciler.resolve(pending.entity_id)
        if intent.kind is MutationKind.DELETE:
            if isinstance(target, TempId):
                logger.info("Unsaved entity deleted locally", entity_id=str(target))
                return None
            await self.backend.delete(target.value)
            return None

        if isinstance(target, TempId):
            raise WriteFailed(f"Entity {target} has not been saved yet")
        return await self.backend.update(target.value, self._wire(pending.changes))

    def _accept(self, pending: PendingMutation, real: ViewEntity) -> ViewEntity:
        """Keep only the response fields this mutation is entitled to write."""
        mine = pending.touched
        fields: dict[str, Any] = {}
        for name, value in real.fields.items():
            group = related_fields(name)
            if name in mine:
                if any(self._field_seq.get((pending.entity_id, f), 0) > pending.seq for f in group):
                    continue
            elif self._in_flight(pending.entity_id, group, exclude=pending):
                continue
            fields[name] = value
        return ViewEntity(id=real.id, fields=fields, entity_type=real.entity_type)

    def _in_flight(self, entity_id: EntityId, group: frozenset[str], exclude: PendingMutation | None = None) -> bool:
        return any(
            p is not exclude and p.entity_id == entity_id and p.touched & group for p in self._pending.values()
        )

    def _commit_rows(self, pending: PendingMutation, entity_id: EntityId, response: Any) -> ViewEntity | None:
        """Apply the rows a procedure answered with.

        A procedure may answer with one raw entity, a list of them (every row
        it touched), or nothing at all, in which case the optimistic values
        stand until a push arrives.
        """
        if isinstance(response, Mapping):
            rows = [response]
        elif isinstance(response, list):
            rows = [row for row in response if isinstance(row, Mapping)]
        else:
            rows = []
        with self.registry.batch():
            for raw in rows:
                try:
                    row_id = self.reconciler.resolve(parse_id(raw.get("id")))
                except ValueError as e:
                    raise MalformedEntity(str(e), raw=raw) from e
                previous = self.registry.entities.get(row_id)
                entity_type = previous.entity_type if previous is not None else pending.intent.entity_type
                real = normalize(raw, previous=previous, directory=self.directory, entity_type=entity_type)
                accepted = self._accept(pending, real) if row_id == entity_id else self.accept_push(real)
                if accepted is not None:
                    self.broadcaster.apply(accepted, commit=True)
        return self.registry.entities.get(entity_id)

    def _commit(self, pending: PendingMutation, response: Any, publish: bool) -> MutationResult:
        kind = pending.intent.kind
        entity_id = self.reconciler.resolve(pending.entity_id)
        try:
            if kind is MutationKind.DELETE:
                self.mark_deleted(entity_id)
                self.broadcaster.remove(entity_id, commit=True)
                entity = pending.snapshot.canonical if pending.snapshot is not None else None
            elif kind is MutationKind.CREATE:
                if response is None:
                    raise MalformedEntity("Create returned no entity")
                previous = self.registry.entities.get(pending.entity_id)
                real = normalize(response, previous=previous, directory=self.directory, entity_type=pending.intent.entity_type)
                if previous is not None:
                    # Edits begun on the temp row while the create was in flight keep their values.
                    real = self._accept(pending, real)
                entity = self.reconciler.reconcile(pending.entity_id, real)
            elif entity_id in self.deleted:
                logger.info("Response for deleted entity dropped", entity_id=str(entity_id), kind=kind.value)
                entity = None
            elif kind is MutationKind.RPC:
                entity = self._commit_rows(pending, entity_id, response)
            elif response is None:
                entity = self.registry.entities.get(entity_id)
            else:
                current = self.registry.entities.get(entity_id)
                entity_type = current.entity_type if current is not None else pending.intent.entity_type
                real = normalize(response, previous=current, directory=self.directory, entity_type=entity_type)
                entity = self.broadcaster.apply(self._accept(pending, real), commit=True)
        except MalformedEntity as e:
            if kind is MutationKind.CREATE:
                self._rollback(pending, e, publish=publish)
                return RolledBack(e)
            logger.warning("Write response malformed, keeping optimistic values", entity_id=str(entity_id), error=str(e))
            entity = self.registry.entities.get(entity_id)

        pending.state = MutationState.COMMITTED
        self._finish(pending)
        logger.info(
            "Mutation committed",
            mutation_id=pending.mutation_id,
            kind=kind.value,
            entity_id=str(entity.id if entity is not None else entity_id),
        )
        return Committed(entity)

    def _rollback(self, pending: PendingMutation, error: Exception, publish: bool) -> None:
        kind = pending.intent.kind
        entity_id = pending.entity_id
        if kind is MutationKind.CREATE:
            self.reconciler.rollback(entity_id)
        elif pending.exact and pending.snapshot is not None:
            self.registry.restore(pending.snapshot)
        elif kind is MutationKind.DELETE:
            if pending.snapshot is not None and pending.snapshot.canonical is not None:
                self.broadcaster.apply(pending.snapshot.canonical)
        else:
            revert = {
                name: value
                for name, value in pending.prior.items()
                if self._field_seq.get((entity_id, name)) == pending.seq
            }
            current = self.registry.entities.get(entity_id)
            if revert and current is not None:
                self.broadcaster.apply(ViewEntity(id=entity_id, fields=revert, entity_type=current.entity_type))
            self._hand_down_prior(pending)

        pending.state = MutationState.ROLLED_BACK
        self._finish(pending, rolled_back=True)
        logger.warning(
            "Mutation rolled back",
            mutation_id=pending.mutation_id,
            kind=kind.value,
            entity_id=str(entity_id),
            step=pending.step,
            error=str(error),
        )
        if publish:
            self.errors.publish(error)

    def _hand_down_prior(self, pending: PendingMutation) -> None:
        """Give a rolled-back mutation's prior values to the next mutation that overwrote them."""
        for name, value in pending.prior.items():
            later = [
                p
                for p in self._pending.values()
                if p is not pending and p.entity_id == pending.entity_id and p.seq > pending.seq and name in p.prior
            ]
            if later:
                heir = min(later, key=lambda p: p.seq)
                heir.prior[name] = value
                heir.exact = False

    def _finish(self, pending: PendingMutation, rolled_back: bool = False) -> None:
        self._pending.pop(pending.mutation_id, None)
        for name in pending.touched:
            key = (pending.entity_id, name)
            others = [p.seq for p in self._pending.values() if p.entity_id == pending.entity_id and name in p.touched]
            if not others:
                self._field_seq.pop(key, None)
            elif rolled_back and self._field_seq.get(key) == pending.seq:
                # The rolled-back value is gone; the newest survivor is now the latest writer.
                self._field_seq[key] = max(others)
