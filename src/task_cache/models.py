"""Data models for the task cache."""

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping


@dataclass(frozen=True)
class RealId:
    """Identifier assigned by the backend."""

    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class TempId:
    """Client-only placeholder identifier, valid until reconciliation."""

    value: uuid.UUID

    @classmethod
    def new(cls) -> "TempId":
        """Mint a fresh placeholder."""
        return cls(uuid.uuid4())

    def __str__(self) -> str:
        return f"tmp:{self.value}"


EntityId = RealId | TempId


def parse_id(raw: Any) -> EntityId:
    """Turn a raw backend identifier into an EntityId.

    Args:
        raw: An int, a digit string, a RealId or a TempId

    Returns:
        The parsed identifier

    Raises:
        ValueError: If the value cannot be read as an identifier
    """
    if isinstance(raw, (RealId, TempId)):
        return raw
    if isinstance(raw, bool):
        raise ValueError(f"Invalid entity id: {raw!r}")
    if isinstance(raw, int):
        return RealId(raw)
    if isinstance(raw, str) and raw.strip().isdigit():
        return RealId(int(raw.strip()))
    raise ValueError(f"Invalid entity id: {raw!r}")


def id_sort_key(entity_id: EntityId) -> tuple[int, str]:
    """Total order over identifiers: real ids first, numerically."""
    if isinstance(entity_id, RealId):
        return (0, f"{entity_id.value:020d}")
    return (1, str(entity_id.value))


@dataclass(frozen=True)
class ViewEntity:
    """Flattened, denormalized projection of a domain entity used by every view cache."""

    id: EntityId
    fields: dict[str, Any] = field(default_factory=dict)
    entity_type: str = "task"

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def __contains__(self, key: str) -> bool:
        return key in self.fields

    @property
    def is_temp(self) -> bool:
        return isinstance(self.id, TempId)

    def merged(self, changes: Mapping[str, Any]) -> "ViewEntity":
        """Return a copy with changes shallow-merged over the current fields."""
        return replace(self, fields={**self.fields, **changes})

    def with_id(self, entity_id: EntityId) -> "ViewEntity":
        return replace(self, id=entity_id)


class MutationKind(str, Enum):
    """Kinds of write a mutation intent can carry."""

    CREATE = "create"
    UPDATE = "update"
    REPARENT = "reparent"
    DELETE = "delete"
    RPC = "rpc"


class MutationState(str, Enum):
    """Lifecycle of a single mutation."""

    IDLE = "idle"
    OPTIMISTICALLY_APPLIED = "optimistically_applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationIntent:
    """A change requested by the UI layer."""

    entity_id: EntityId | None
    kind: MutationKind
    changed_fields: dict[str, Any] = field(default_factory=dict)
    optimistic_entity: ViewEntity | None = None
    entity_type: str = "task"
    procedure: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, fields: Mapping[str, Any], entity_type: str = "task") -> "MutationIntent":
        return cls(entity_id=TempId.new(), kind=MutationKind.CREATE, changed_fields=dict(fields), entity_type=entity_type)

    @classmethod
    def update(cls, entity_id: EntityId, fields: Mapping[str, Any]) -> "MutationIntent":
        return cls(entity_id=entity_id, kind=MutationKind.UPDATE, changed_fields=dict(fields))

    @classmethod
    def reparent(cls, entity_id: EntityId, parent_id: EntityId | None) -> "MutationIntent":
        return cls(entity_id=entity_id, kind=MutationKind.REPARENT, changed_fields={"parent_id": parent_id})

    @classmethod
    def delete(cls, entity_id: EntityId) -> "MutationIntent":
        return cls(entity_id=entity_id, kind=MutationKind.DELETE)

    @classmethod
    def rpc(
        cls,
        entity_id: EntityId,
        procedure: str,
        payload: Mapping[str, Any],
        fields: Mapping[str, Any] | None = None,
    ) -> "MutationIntent":
        """Call a named server procedure, showing ``fields`` on the entity until it answers."""
        return cls(
            entity_id=entity_id,
            kind=MutationKind.RPC,
            changed_fields=dict(fields or {}),
            procedure=procedure,
            payload=dict(payload),
        )


@dataclass(frozen=True)
class Committed:
    """The backend confirmed the change."""

    entity: ViewEntity | None
    related: tuple[ViewEntity, ...] = ()

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class RolledBack:
    """The change was rejected and its optimistic state undone."""

    error: Exception

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class PartiallyCommitted:
    """Some steps of a composite mutation committed before another failed."""

    committed: list[ViewEntity]
    error: Exception

    @property
    def ok(self) -> bool:
        return False


MutationResult = Committed | RolledBack | PartiallyCommitted


@dataclass(frozen=True)
class UserRef:
    """A user taking part in a thread. Identity is the user id alone."""

    id: int | str
    full_name: str = field(default="", compare=False)


@dataclass
class Message:
    """A single comment in a thread."""

    id: EntityId
    author_id: int | str
    body: str
    created_at: str | None = None
    is_optimistic: bool = False


@dataclass
class Thread:
    """A conversation, optionally linked 1:1 to an entity."""

    id: EntityId
    entity_id: EntityId | None = None
    participants: set[UserRef] = field(default_factory=set)
    messages: list[Message] = field(default_factory=list)
