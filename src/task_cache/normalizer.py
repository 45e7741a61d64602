"""Entity normalizer: flattens backend task shapes into one canonical ViewEntity."""

from dataclasses import dataclass
from typing import Any, Mapping

from task_cache.errors import MalformedEntity
from task_cache.models import EntityId, RealId, TempId, ViewEntity, parse_id


@dataclass(frozen=True)
class Relation:
    """A foreign key and the denormalized fields that shadow its related record."""

    key: str
    nested: tuple[str, ...]
    fields: tuple[tuple[str, str], ...]
    table: str

    @property
    def denormalized(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.fields)


RELATIONS: tuple[Relation, ...] = (
    Relation("assigned_to_id", ("assigned_user", "users"), (("assigned_to_name", "full_name"),), "users"),
    Relation(
        "project_id",
        ("projects", "project"),
        (("project_name", "name"), ("project_color", "color")),
        "projects",
    ),
    Relation(
        "project_status_id",
        ("project_statuses", "status"),
        (("project_status_name", "name"), ("project_status_color", "color")),
        "statuses",
    ),
    Relation("content_type_id", ("content_types",), (("content_type_title", "title"),), "content_types"),
    Relation("production_type_id", ("production_types",), (("production_type_title", "title"),), "production_types"),
    Relation("language_id", ("languages",), (("language_code", "code"),), "languages"),
)

PRIMARY_FIELDS: tuple[str, ...] = (
    "title",
    "notes",
    "briefing",
    "delivery_date",
    "publication_date",
    "created_at",
    "updated_at",
    "parent_id",
    "channels",
    "meta_title",
    "meta_description",
    "keyword",
)

REQUIRED_FIELDS: tuple[str, ...] = ("title",)

ALIASES: dict[str, str] = {
    "project_id_int": "project_id",
    "parent_task_id_int": "parent_id",
    "parent_task_id": "parent_id",
    "channel_names": "channels",
    "metaTitle": "meta_title",
    "metaDescription": "meta_description",
    "keywords": "keyword",
}

FOREIGN_KEYS: frozenset[str] = frozenset(rel.key for rel in RELATIONS)
DENORMALIZED_FIELDS: frozenset[str] = frozenset(name for rel in RELATIONS for name in rel.denormalized)
NESTED_KEYS: frozenset[str] = frozenset(key for rel in RELATIONS for key in rel.nested)

_RELATION_BY_FIELD: dict[str, Relation] = {}
for _rel in RELATIONS:
    _RELATION_BY_FIELD[_rel.key] = _rel
    for _name in _rel.denormalized:
        _RELATION_BY_FIELD[_name] = _rel


class RelationDirectory:
    """Known related records (users, projects, statuses...) used to derive denormalized fields.

    Mirrors the task edit metadata the dashboard loads once: each table maps a
    foreign key value to the record's attributes.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[Any, dict[str, Any]]] = {}

    def add(self, table: str, key: Any, **attrs: Any) -> None:
        """Register a related record.

        Args:
            table: Table name (users, projects, statuses, content_types, production_types, languages)
            key: Foreign key value pointing at the record
            **attrs: Record attributes such as name, color or full_name
        """
        self._tables.setdefault(table, {})[_coerce_key(key)] = dict(attrs)

    def lookup(self, table: str, key: Any, attr: str) -> Any:
        record = self._tables.get(table, {}).get(_coerce_key(key))
        if record is None:
            return None
        return record.get(attr)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RelationDirectory":
        """Build a directory from lists of records keyed by table name.

        Each record must carry an ``id``; every other attribute is kept.
        """
        directory = cls()
        for table, records in data.items():
            for record in records or []:
                attrs = {k: v for k, v in record.items() if k != "id"}
                directory.add(table, record["id"], **attrs)
        return directory


def _coerce_key(value: Any) -> Any:
    """Foreign keys compare as ints when they look like ints."""
    if value is None or value == "":
        return None
    if isinstance(value, RealId):
        return value.value
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return value


def _coerce_ref(value: Any) -> EntityId | None:
    if value is None or value == "":
        return None
    try:
        return parse_id(value)
    except ValueError as e:
        raise MalformedEntity(f"Invalid entity reference: {value!r}") from e


def _coerce_field(name: str, value: Any) -> Any:
    if name == "parent_id":
        return _coerce_ref(value)
    if name in FOREIGN_KEYS:
        return _coerce_key(value)
    if name == "channels":
        if value is None:
            return []
        return list(value) if isinstance(value, (list, tuple)) else [value]
    return value


def _nested_record(raw: Mapping[str, Any], rel: Relation) -> Mapping[str, Any] | None:
    for key in rel.nested:
        value = raw.get(key)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, Mapping):
            return value
    return None


def _canonical_name(name: str) -> str:
    return ALIASES.get(name, name)


def related_fields(name: str) -> frozenset[str]:
    """Return the field group that must be merged together with ``name``.

    A foreign key and its denormalized shadows always travel together so a
    merge can never pair a status id with another status's name.
    """
    rel = _RELATION_BY_FIELD.get(name)
    if rel is None:
        return frozenset((name,))
    return frozenset((rel.key, *rel.denormalized))


def normalize(
    raw: Mapping[str, Any],
    previous: ViewEntity | None = None,
    directory: RelationDirectory | None = None,
    entity_type: str = "task",
) -> ViewEntity:
    """Normalize a raw backend entity into a ViewEntity.

    The result is a pure function of the inputs. Fields absent from ``raw``
    fall back to ``previous`` so a narrow projection never blanks a richer
    cached entity; denormalized fields resolve from the nested relation, a
    non-null flat raw value, ``previous`` (same foreign key only), then ``directory``.

    Args:
        raw: Entity as returned by a creation response, a fetch or a realtime push
        previous: The currently known entity with the same id, if any
        directory: Related records used to derive denormalized fields
        entity_type: Entity type tag stored on the result

    Returns:
        The normalized entity

    Raises:
        MalformedEntity: If the id or a required primary field is missing
    """
    if not isinstance(raw, Mapping):
        raise MalformedEntity(f"Expected a mapping, got {type(raw).__name__}", raw=raw)

    raw_id = raw.get("id")
    if raw_id is None or raw_id == "":
        raise MalformedEntity("Entity is missing its id", raw=raw)
    try:
        entity_id = parse_id(raw_id)
    except ValueError as e:
        raise MalformedEntity(str(e), raw=raw) from e

    flat = {_canonical_name(k): v for k, v in raw.items() if k != "id" and k not in NESTED_KEYS}
    for name in REQUIRED_FIELDS:
        if flat.get(name) is None and (previous is None or previous.get(name) is None):
            raise MalformedEntity(f"Entity {entity_id} is missing required field '{name}'", raw=raw)

    fields: dict[str, Any] = {}
    for name, value in flat.items():
        if name in DENORMALIZED_FIELDS:
            continue
        fields[name] = _coerce_field(name, value)
    for name in PRIMARY_FIELDS:
        if name not in fields:
            fields[name] = previous.get(name) if previous is not None else _coerce_field(name, None)

    for rel in RELATIONS:
        record = _nested_record(raw, rel)
        if rel.key not in fields:
            if record is not None and record.get("id") is not None:
                fields[rel.key] = _coerce_key(record.get("id"))
            elif previous is not None:
                fields[rel.key] = previous.get(rel.key)
            else:
                fields[rel.key] = None
        key = fields[rel.key]
        same_key = previous is not None and previous.get(rel.key) == key
        for name, attr in rel.fields:
            if record is not None and attr in record:
                value = record[attr]
            elif flat.get(name) is not None:
                value = flat[name]
            elif key is None:
                value = None
            elif same_key and previous.get(name) is not None:
                value = previous.get(name)
            elif directory is not None:
                value = directory.lookup(rel.table, key, attr)
            else:
                value = None
            fields[name] = value

    return ViewEntity(id=entity_id, fields=fields, entity_type=entity_type)


def normalize_changes(
    changes: Mapping[str, Any],
    current: ViewEntity | None = None,
    directory: RelationDirectory | None = None,
    hints: ViewEntity | None = None,
) -> dict[str, Any]:
    """Normalize a partial field set for an update.

    Denormalized fields are recomputed for every foreign key that changed, so
    the merged entity stays internally consistent.

    Args:
        changes: Fields the user changed
        current: The entity being changed, if cached
        directory: Related records used to derive denormalized fields
        hints: Optional optimistic entity carrying display values for the new keys

    Returns:
        Normalized changed fields, including derived denormalized fields
    """
    out: dict[str, Any] = {}
    for name, value in changes.items():
        name = _canonical_name(name)
        if name == "id" or name in NESTED_KEYS or name in DENORMALIZED_FIELDS:
            continue
        out[name] = _coerce_field(name, value)

    for rel in RELATIONS:
        if rel.key not in out:
            continue
        key = out[rel.key]
        unchanged = current is not None and current.get(rel.key) == key
        for name, attr in rel.fields:
            if name in changes:
                value = changes[name]
            elif key is None:
                value = None
            elif hints is not None and hints.get(rel.key) == key and hints.get(name) is not None:
                value = hints.get(name)
            elif unchanged:
                value = current.get(name)
            elif directory is not None:
                value = directory.lookup(rel.table, key, attr)
            else:
                value = None
            out[name] = value
    return out


def wire_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Strip view-only fields, leaving what a backend write accepts."""
    return {
        name: value
        for name, value in fields.items()
        if name not in DENORMALIZED_FIELDS and name not in ("id", "created_at", "updated_at")
    }


def is_reference(value: Any, entity_id: EntityId) -> bool:
    return isinstance(value, (RealId, TempId)) and value == entity_id
