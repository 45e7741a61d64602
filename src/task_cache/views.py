"""View parameters: filters, grouping and ordering of a cache instance."""

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from task_cache.models import ViewEntity, id_sort_key
from task_cache.search import matches_query

FLAT = ""
NO_GROUP = "__none__"


class GroupBy(str, Enum):
    """Kanban grouping dimensions."""

    ASSIGNED_TO = "assigned_to"
    STATUS = "status"
    PROJECT = "project"
    CONTENT_TYPE = "content_type"
    PRODUCTION_TYPE = "production_type"
    LANGUAGE = "language"
    DELIVERY_DATE = "delivery_date"
    PUBLICATION_DATE = "publication_date"
    CHANNELS = "channels"


GROUP_FIELDS: dict[GroupBy, str] = {
    GroupBy.ASSIGNED_TO: "assigned_to_id",
    GroupBy.STATUS: "project_status_name",
    GroupBy.PROJECT: "project_id",
    GroupBy.CONTENT_TYPE: "content_type_id",
    GroupBy.PRODUCTION_TYPE: "production_type_id",
    GroupBy.LANGUAGE: "language_id",
    GroupBy.DELIVERY_DATE: "delivery_date",
    GroupBy.PUBLICATION_DATE: "publication_date",
    GroupBy.CHANNELS: "channels",
}

DATE_GROUPS = frozenset((GroupBy.DELIVERY_DATE, GroupBy.PUBLICATION_DATE))

RECENCY_FIELDS = frozenset(("created_at",))


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class ViewSpec:
    """Full parameter tuple identifying one cache instance.

    Two registrations with equal specs share a single cache.
    """

    name: str
    filters: tuple[tuple[str, tuple[Any, ...]], ...] = ()
    predicate: Callable[[ViewEntity], bool] | None = None
    group_by: GroupBy | None = None
    sort_field: str = "created_at"
    sort_order: SortOrder = SortOrder.DESC
    page_size: int | None = None
    search: str | None = None
    date_range: tuple[str, str, str] | None = None
    entity_type: str = "task"

    @property
    def is_recency_sorted(self) -> bool:
        return self.sort_field in RECENCY_FIELDS and self.sort_order is SortOrder.DESC

    def matches(self, entity: ViewEntity) -> bool:
        """Evaluate the filter predicate of this view against an entity."""
        if entity.entity_type != self.entity_type:
            return False
        for name, allowed in self.filters:
            value = entity.get(name)
            if isinstance(value, (list, tuple, set)):
                if not any(v in allowed for v in value):
                    return False
            elif value not in allowed:
                return False
        if self.date_range is not None:
            name, start, end = self.date_range
            value = entity.get(name)
            if not value or not (start <= str(value)[: len(start)] < end):
                return False
        if self.search and not matches_query(entity, self.search):
            return False
        if self.predicate is not None and not self.predicate(entity):
            return False
        return True

    def group_keys(self, entity: ViewEntity) -> list[str]:
        """Columns the entity belongs to. Flat views have a single column."""
        if self.group_by is None:
            return [FLAT]
        value = entity.get(GROUP_FIELDS[self.group_by])
        if self.group_by is GroupBy.CHANNELS:
            channels = [str(v) for v in value or [] if v not in (None, "")]
            return list(dict.fromkeys(channels)) or [NO_GROUP]
        if value is None or value == "":
            return [NO_GROUP]
        if self.group_by in DATE_GROUPS:
            return [str(value)[:7]]
        return [str(value)]

    def sort_value(self, entity: ViewEntity) -> Any:
        return entity.get(self.sort_field)

    def precedes(self, a: ViewEntity, b: ViewEntity) -> bool:
        """True if ``a`` sorts before ``b``. Nulls go last; ties break on id."""
        av, bv = self.sort_value(a), self.sort_value(b)
        if av is None and bv is None:
            return id_sort_key(a.id) < id_sort_key(b.id)
        if av is None:
            return False
        if bv is None:
            return True
        if av != bv:
            return av > bv if self.sort_order is SortOrder.DESC else av < bv
        return id_sort_key(a.id) < id_sort_key(b.id)

    def insertion_index(self, column: list[ViewEntity], entity: ViewEntity) -> int:
        for i, item in enumerate(column):
            if self.precedes(entity, item):
                return i
        return len(column)

    def sort(self, entities: Iterable[ViewEntity]) -> list[ViewEntity]:
        ordered: list[ViewEntity] = []
        for entity in entities:
            ordered.insert(self.insertion_index(ordered, entity), entity)
        return ordered


def _freeze_filters(filters: Mapping[str, Any] | None) -> tuple[tuple[str, tuple[Any, ...]], ...]:
    if not filters:
        return ()
    frozen = []
    for name, allowed in sorted(filters.items()):
        if isinstance(allowed, (list, tuple, set, frozenset)):
            values = tuple(allowed)
        else:
            values = (allowed,)
        frozen.append((name, values))
    return tuple(frozen)


def list_view(
    filters: Mapping[str, Any] | None = None,
    sort_field: str = "created_at",
    sort_order: SortOrder = SortOrder.DESC,
    page_size: int | None = 50,
) -> ViewSpec:
    """Flat, paginated task list."""
    return ViewSpec(
        name="list",
        filters=_freeze_filters(filters),
        sort_field=sort_field,
        sort_order=sort_order,
        page_size=page_size,
    )


def board_view(
    group_by: GroupBy,
    sort_field: str = "created_at",
    sort_order: SortOrder = SortOrder.DESC,
    filters: Mapping[str, Any] | None = None,
) -> ViewSpec:
    """Kanban board with one column per group key."""
    return ViewSpec(
        name="board",
        filters=_freeze_filters(filters),
        group_by=group_by,
        sort_field=sort_field,
        sort_order=sort_order,
    )


def board_views(
    group_bys: Iterable[GroupBy],
    sort_fields: Iterable[str],
    sort_orders: Iterable[SortOrder] = (SortOrder.ASC, SortOrder.DESC),
    filters: Mapping[str, Any] | None = None,
) -> list[ViewSpec]:
    """Every (grouping x sort field x sort order) combination as separate specs."""
    return [
        board_view(group_by, sort_field, sort_order, filters)
        for group_by, sort_field, sort_order in itertools.product(group_bys, sort_fields, sort_orders)
    ]


def calendar_view(month: str, date_field: str = "delivery_date", filters: Mapping[str, Any] | None = None) -> ViewSpec:
    """Tasks whose ``date_field`` falls within a ``YYYY-MM`` month."""
    year, mon = (int(part) for part in month.split("-"))
    end = f"{year + 1:04d}-01" if mon == 12 else f"{year:04d}-{mon + 1:02d}"
    return ViewSpec(
        name="calendar",
        filters=_freeze_filters(filters),
        sort_field=date_field,
        sort_order=SortOrder.ASC,
        date_range=(date_field, f"{year:04d}-{mon:02d}", end),
    )


def search_view(query: str, page_size: int | None = 50) -> ViewSpec:
    """Tasks matching a free-text query."""
    return ViewSpec(name="search", search=query, sort_field="updated_at", page_size=page_size)
