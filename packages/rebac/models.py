"""Relationship model types.

Defines relation expressions, object types, conditions and tuples.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

# type:id#relation, the relation part optional
_OBJECT_PATTERN = re.compile(r"^(?P<type>[A-Za-z_][\w]*):(?P<id>[^#@\s]+)(?:#(?P<relation>[A-Za-z_][\w]*))?$")

WILDCARD = "*"


class SubjectSpec(BaseModel):
    """An allowed subject of a direct relation.

    Forms:
    - ``user``: a concrete user
    - ``user:*``: every user (wildcard)
    - ``team#member``: everyone who is a member of the referenced team
    - any of the above followed by ``with <condition>``
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(description="Subject object type")
    relation: str | None = Field(default=None, description="Userset relation on the subject type")
    wildcard: bool = Field(default=False, description="Matches every subject of the type")
    condition: str | None = Field(default=None, description="Condition gating the grant")

    @model_validator(mode="after")
    def validate_form(self) -> "SubjectSpec":
        if self.wildcard and self.relation:
            raise ValueError("a wildcard subject cannot carry a userset relation")
        return self

    @property
    def is_userset(self) -> bool:
        return self.relation is not None

    def matches(self, tup: "RelationTuple") -> bool:
        """Check whether a stored tuple was written against this spec."""
        if tup.subject_type != self.type:
            return False
        if tup.subject_relation != self.relation:
            return False
        if (tup.subject_id == WILDCARD) != self.wildcard:
            return False
        return tup.condition == self.condition

    def __str__(self) -> str:
        text = self.type
        if self.wildcard:
            text += ":*"
        if self.relation:
            text += f"#{self.relation}"
        if self.condition:
            text += f" with {self.condition}"
        return text


class DirectSet(BaseModel):
    """Relation granted by tuples written directly against it."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["direct"] = "direct"
    subjects: tuple[SubjectSpec, ...] = Field(default_factory=tuple)


class Union(BaseModel):
    """Relation holds if any child expression holds."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["union"] = "union"
    children: tuple[RelationExpression, ...]


class TupleToUserset(BaseModel):
    """Relation holds if ``computed`` holds on an object reached via ``tupleset``.

    ``read from parent`` reads the ``parent`` tuples of the current object and
    checks ``read`` on each parent.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["tuple_to_userset"] = "tuple_to_userset"
    tupleset: str = Field(description="Hierarchy relation on the current type")
    computed: str = Field(description="Relation evaluated on the related object")


class ComputedRelation(BaseModel):
    """Relation holds if another relation on the same object holds."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["computed"] = "computed"
    relation: str


RelationExpression = Annotated[
    DirectSet | Union | TupleToUserset | ComputedRelation,
    Field(discriminator="kind"),
]

Union.model_rebuild()


class Relation(BaseModel):
    """A named relation on an object type."""

    model_config = ConfigDict(frozen=True)

    name: str
    expression: RelationExpression


class ObjectType(BaseModel):
    """A compiled object type."""

    model_config = ConfigDict(frozen=True)

    name: str
    relations: dict[str, Relation] = Field(default_factory=dict)
    hierarchy_relations: frozenset[str] = Field(
        default_factory=frozenset,
        description="Relations used as the tupleset of a tuple-to-userset rewrite",
    )


ParamType = Literal["string", "int", "double", "bool", "list", "map", "any"]


class ConditionParam(BaseModel):
    """A declared condition parameter."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParamType = "any"


class ConditionDefinition(BaseModel):
    """A named predicate over declared parameters."""

    model_config = ConfigDict(frozen=True)

    name: str
    params: tuple[ConditionParam, ...] = Field(default_factory=tuple)
    expression: str | None = Field(
        default=None,
        description="Boolean expression over the parameters (None for Python predicates)",
    )

    @property
    def param_names(self) -> frozenset[str]:
        return frozenset(p.name for p in self.params)


class RelationTuple(BaseModel):
    """A stored relationship fact: ``object#relation@subject``."""

    model_config = ConfigDict(frozen=True)

    object_type: str
    object_id: str
    relation: str
    subject_type: str
    subject_id: str
    subject_relation: str | None = None
    condition: str | None = None
    condition_params: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_shape(self) -> "RelationTuple":
        if self.subject_id == WILDCARD and self.subject_relation:
            raise ValueError("wildcard subjects cannot be usersets")
        if self.condition_params and not self.condition:
            raise ValueError("condition_params given without a condition")
        return self

    @property
    def key(self) -> tuple[str, str, str, str, str, str | None]:
        """Identity of the tuple; the condition is payload, not identity."""
        return (
            self.object_type,
            self.object_id,
            self.relation,
            self.subject_type,
            self.subject_id,
            self.subject_relation,
        )

    @property
    def is_userset(self) -> bool:
        return self.subject_relation is not None

    @property
    def is_wildcard(self) -> bool:
        return self.subject_id == WILDCARD

    @classmethod
    def from_string(
        cls,
        value: str,
        condition: str | None = None,
        **condition_params: Any,
    ) -> "RelationTuple":
        """Parse ``type:id#relation@type:id[#relation]``.

        Example:
            RelationTuple.from_string("folder2:a#parent@folder2:b")
        """
        try:
            obj, subject = value.split("@", 1)
        except ValueError:
            raise ValueError(f"Invalid tuple (missing '@'): {value!r}") from None

        obj_match = _OBJECT_PATTERN.match(obj.strip())
        subject_match = _OBJECT_PATTERN.match(subject.strip())
        if not obj_match or not obj_match.group("relation"):
            raise ValueError(f"Invalid tuple object: {obj!r}")
        if not subject_match:
            raise ValueError(f"Invalid tuple subject: {subject!r}")

        return cls(
            object_type=obj_match.group("type"),
            object_id=obj_match.group("id"),
            relation=obj_match.group("relation"),
            subject_type=subject_match.group("type"),
            subject_id=subject_match.group("id"),
            subject_relation=subject_match.group("relation"),
            condition=condition,
            condition_params=condition_params,
        )

    def __str__(self) -> str:
        subject = f"{self.subject_type}:{self.subject_id}"
        if self.subject_relation:
            subject += f"#{self.subject_relation}"
        text = f"{self.object_type}:{self.object_id}#{self.relation}@{subject}"
        if self.condition:
            text += f" with {self.condition}"
        return text


class CheckResult(BaseModel):
    """Outcome of a check with evaluation statistics."""

    allowed: bool = Field(description="Whether the subject holds the relation")
    object: str = Field(description="Checked object as type:id")
    relation: str = Field(description="Checked relation")
    subject: str = Field(description="Checked subject as type:id")
    dispatch_count: int = Field(default=0, description="Sub-problems evaluated")
    memo_hits: int = Field(default=0, description="Sub-problems answered from the request memo")
    duration_ms: float = Field(default=0.0, description="Wall time of the check")
