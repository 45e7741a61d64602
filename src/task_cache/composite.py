"""Composite mutations: one user action made of several dependent backend writes."""

from dataclasses import dataclass, field
from typing import Any, Mapping

from task_cache.models import EntityId, MutationIntent, MutationKind, TempId


@dataclass(frozen=True)
class StepRef:
    """Placeholder for the entity id produced or targeted by another step."""

    step: str


@dataclass
class CompositeStep:
    """One backend write inside a composite mutation."""

    name: str
    kind: MutationKind
    target: EntityId
    fields: dict[str, Any] = field(default_factory=dict)
    after: tuple[str, ...] = ()
    entity_type: str = "task"
    procedure: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, name: str, fields: Mapping[str, Any], after: tuple[str, ...] = ()) -> "CompositeStep":
        return cls(name=name, kind=MutationKind.CREATE, target=TempId.new(), fields=dict(fields), after=after)

    @classmethod
    def rpc(
        cls,
        name: str,
        target: EntityId,
        procedure: str,
        payload: Mapping[str, Any],
        fields: Mapping[str, Any] | None = None,
        after: tuple[str, ...] = (),
    ) -> "CompositeStep":
        return cls(
            name=name,
            kind=MutationKind.RPC,
            target=target,
            fields=dict(fields or {}),
            after=after,
            procedure=procedure,
            payload=dict(payload),
        )

    @property
    def depends_on(self) -> tuple[str, ...]:
        """Explicit ordering plus every step referenced from the fields or the payload."""
        values = [*self.fields.values(), *self.payload.values()]
        refs = [value.step for value in values if isinstance(value, StepRef)]
        return tuple(dict.fromkeys((*self.after, *refs)))

    def to_intent(self, targets: Mapping[str, EntityId]) -> MutationIntent:
        """Build the intent, with step references replaced by the referenced steps' targets."""

        def resolve(values: Mapping[str, Any]) -> dict[str, Any]:
            return {name: targets[value.step] if isinstance(value, StepRef) else value for name, value in values.items()}

        return MutationIntent(
            entity_id=self.target,
            kind=self.kind,
            changed_fields=resolve(self.fields),
            entity_type=self.entity_type,
            procedure=self.procedure,
            payload=resolve(self.payload),
        )


@dataclass
class CompositeMutation:
    """Ordered steps with dependencies between them."""

    name: str
    steps: list[CompositeStep] = field(default_factory=list)

    def step(self, name: str) -> CompositeStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def targets(self) -> dict[str, EntityId]:
        return {step.name: step.target for step in self.steps}

    def waves(self) -> list[list[CompositeStep]]:
        """Group steps into dependency levels; steps in one level are independent.

        Raises:
            ValueError: On unknown step references or dependency cycles
        """
        names = {step.name for step in self.steps}
        if len(names) != len(self.steps):
            raise ValueError(f"Duplicate step names in composite '{self.name}'")
        for step in self.steps:
            unknown = [dep for dep in step.depends_on if dep not in names]
            if unknown:
                raise ValueError(f"Step '{step.name}' depends on unknown steps {unknown}")

        done: set[str] = set()
        remaining = list(self.steps)
        waves: list[list[CompositeStep]] = []
        while remaining:
            wave = [step for step in remaining if all(dep in done for dep in step.depends_on)]
            if not wave:
                raise ValueError(f"Dependency cycle in composite '{self.name}'")
            waves.append(wave)
            done.update(step.name for step in wave)
            remaining = [step for step in remaining if step.name not in done]
        return waves


def promote_task(
    task_id: EntityId,
    parent_fields: Mapping[str, Any],
    child_fields: Mapping[str, Any],
) -> CompositeMutation:
    """Turn a plain task into a parent/child pair.

    Creates a new parent, re-points the original task at it and creates a
    new sibling child under it. Both follow-up writes need the parent's real
    id, and run concurrently once it is known.
    """
    parent = CompositeStep.create("create_parent", parent_fields)
    reparent = CompositeStep(
        name="reparent_task",
        kind=MutationKind.REPARENT,
        target=task_id,
        fields={"parent_id": StepRef(parent.name)},
    )
    child = CompositeStep.create("create_child", {**child_fields, "parent_id": StepRef(parent.name)})
    return CompositeMutation(name="promote_task", steps=[parent, reparent, child])
