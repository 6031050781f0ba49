"""Schema loading and compilation.

A schema declares object types, their relations and named conditions. It can
be written in the text DSL:

    type user

    type folder2
      relations
        define parent: [folder2]
        define read: [user, team#member] or read from parent

    condition group_filter(requested_group: string, resource_group: string) {
      requested_group == resource_group
    }

or as a dict (typically loaded from YAML) of the shape:

    types:
      user: {}
      folder2:
        relations:
          parent: "[folder2]"
          read:
            union:
              - direct: [user, team#member]
              - tuple_to_userset: {tupleset: parent, computed: read}
    conditions:
      group_filter:
        params: {requested_group: string, resource_group: string}
        expression: requested_group == resource_group

Compilation validates every reference and rejects relations that can never
be grounded because every path through them loops back on itself.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterator

import yaml

from packages.rebac.conditions import ConditionEvaluator
from packages.rebac.errors import InvalidTupleError, SchemaError, UnknownRelationError
from packages.rebac.models import (
    ComputedRelation,
    ConditionDefinition,
    ConditionParam,
    DirectSet,
    ObjectType,
    Relation,
    RelationExpression,
    RelationTuple,
    SubjectSpec,
    TupleToUserset,
    Union,
)

logger = logging.getLogger(__name__)

_IDENT = r"[A-Za-z_][\w]*"
_COMMENT = re.compile(r"(?:^|\s)#.*$")
_TYPE_LINE = re.compile(rf"^type\s+({_IDENT})$")
_DEFINE_LINE = re.compile(rf"^define\s+({_IDENT})\s*:\s*(.+)$")
_CONDITION_HEAD = re.compile(rf"^condition\s+({_IDENT})\s*\(([^)]*)\)\s*\{{(.*)$")
_PARAM = re.compile(rf"^({_IDENT})\s*(?::\s*({_IDENT})(?:<[^>]*>)?)?$")
_TOKEN = re.compile(rf"\s*({_IDENT}(?::\*)?(?:#{_IDENT})?|[\[\](),])")

_PARAM_TYPE_ALIASES = {
    "string": "string",
    "str": "string",
    "int": "int",
    "uint": "int",
    "double": "double",
    "float": "double",
    "bool": "bool",
    "list": "list",
    "map": "map",
    "any": "any",
}


# =============================================================================
# Expression parsing
# =============================================================================


class _ExpressionParser:
    """Recursive-descent parser for relation expressions.

    expr  := term ("or" term)*
    term  := "[" spec ("," spec)* "]" | "(" expr ")" | relation ["from" relation]
    spec  := type[":*"]["#" relation] ["with" condition]
    """

    def __init__(self, text: str, line: int | None = None):
        self.text = text
        self.line = line
        self.tokens = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> list[str]:
        tokens = []
        pos = 0
        while pos < len(text):
            if text[pos:].strip() == "":
                break
            match = _TOKEN.match(text, pos)
            if not match:
                raise SchemaError(f"Unexpected input in expression: {text[pos:].strip()!r}", self.line)
            tokens.append(match.group(1))
            pos = match.end()
        return tokens

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            raise SchemaError(f"Unexpected end of expression: {self.text!r}", self.line)
        self.pos += 1
        return token

    def _expect(self, value: str) -> None:
        token = self._next()
        if token != value:
            raise SchemaError(f"Expected '{value}', got '{token}' in {self.text!r}", self.line)

    def parse(self) -> RelationExpression:
        expression = self._expr()
        if self._peek() is not None:
            raise SchemaError(f"Unexpected token '{self._peek()}' in {self.text!r}", self.line)
        return expression

    def _expr(self) -> RelationExpression:
        children = [self._term()]
        while self._peek() == "or":
            self._next()
            children.append(self._term())
        if len(children) == 1:
            return children[0]
        flat: list[RelationExpression] = []
        for child in children:
            if isinstance(child, Union):
                flat.extend(child.children)
            else:
                flat.append(child)
        return Union(children=tuple(flat))

    def _term(self) -> RelationExpression:
        token = self._next()
        if token == "[":
            return self._direct()
        if token == "(":
            inner = self._expr()
            self._expect(")")
            return inner
        if not re.fullmatch(_IDENT, token) or token in ("or", "from", "with"):
            raise SchemaError(f"Expected a relation name, got '{token}'", self.line)
        if self._peek() == "from":
            self._next()
            tupleset = self._next()
            if not re.fullmatch(_IDENT, tupleset):
                raise SchemaError(f"Expected a hierarchy relation after 'from', got '{tupleset}'", self.line)
            return TupleToUserset(tupleset=tupleset, computed=token)
        return ComputedRelation(relation=token)

    def _direct(self) -> DirectSet:
        specs: list[SubjectSpec] = []
        if self._peek() == "]":
            raise SchemaError("Direct subject list cannot be empty", self.line)
        while True:
            specs.append(self._spec(self._next()))
            token = self._next()
            if token == "]":
                break
            if token != ",":
                raise SchemaError(f"Expected ',' or ']', got '{token}'", self.line)
        return DirectSet(subjects=tuple(specs))

    def _spec(self, token: str) -> SubjectSpec:
        match = re.fullmatch(rf"({_IDENT})(:\*)?(?:#({_IDENT}))?", token)
        if not match:
            raise SchemaError(f"Invalid subject type '{token}'", self.line)
        condition = None
        if self._peek() == "with":
            self._next()
            condition = self._next()
        try:
            return SubjectSpec(
                type=match.group(1),
                wildcard=bool(match.group(2)),
                relation=match.group(3),
                condition=condition,
            )
        except ValueError as exc:
            raise SchemaError(f"Invalid subject '{token}': {exc}", self.line) from exc


def parse_expression(text: str, line: int | None = None) -> RelationExpression:
    """Parse a single relation expression such as ``[user] or edit``."""
    return _ExpressionParser(text, line).parse()


def _parse_params(raw: str, line: int | None) -> tuple[ConditionParam, ...]:
    params = []
    seen = set()
    for part in filter(None, (p.strip() for p in raw.split(","))):
        match = _PARAM.match(part)
        if not match:
            raise SchemaError(f"Invalid condition parameter '{part}'", line)
        name, type_name = match.group(1), (match.group(2) or "any")
        if name in seen:
            raise SchemaError(f"Duplicate condition parameter '{name}'", line)
        seen.add(name)
        param_type = _PARAM_TYPE_ALIASES.get(type_name.lower())
        if param_type is None:
            raise SchemaError(f"Unknown parameter type '{type_name}'", line)
        params.append(ConditionParam(name=name, type=param_type))
    return tuple(params)


# =============================================================================
# Compiled schema
# =============================================================================


class CompiledSchema:
    """Immutable, validated schema.

    Usage:
        schema = SchemaLoader().load_from_text(text)
        expr = schema.get_expression("folder2", "read")
        schema.hierarchy_relations("folder2")  # frozenset({"parent"})
    """

    def __init__(self, types: dict[str, ObjectType], evaluator: ConditionEvaluator):
        self._types = dict(types)
        self.evaluator = evaluator

    @property
    def type_names(self) -> list[str]:
        return sorted(self._types)

    def get_type(self, object_type: str) -> ObjectType:
        try:
            return self._types[object_type]
        except KeyError:
            raise UnknownRelationError(object_type) from None

    def has_type(self, object_type: str) -> bool:
        return object_type in self._types

    def has_relation(self, object_type: str, relation: str) -> bool:
        obj = self._types.get(object_type)
        return obj is not None and relation in obj.relations

    def get_expression(self, object_type: str, relation: str) -> RelationExpression:
        """Return the expression for (type, relation).

        Raises:
            UnknownRelationError: if either is undefined
        """
        obj = self.get_type(object_type)
        try:
            return obj.relations[relation].expression
        except KeyError:
            raise UnknownRelationError(object_type, relation) from None

    def hierarchy_relations(self, object_type: str) -> frozenset[str]:
        return self.get_type(object_type).hierarchy_relations

    def condition(self, name: str) -> ConditionDefinition:
        return self.evaluator.get(name)

    def direct_subjects(self, object_type: str, relation: str) -> tuple[SubjectSpec, ...]:
        """Subject specs that tuples may be written against for a relation."""
        specs: list[SubjectSpec] = []
        for direct in _direct_sets(self.get_expression(object_type, relation)):
            specs.extend(direct.subjects)
        return tuple(specs)

    def validate_tuple(self, tup: RelationTuple) -> None:
        """Check that a tuple fits the schema before it is written.

        Raises:
            InvalidTupleError: on any mismatch
        """
        if not self.has_relation(tup.object_type, tup.relation):
            raise InvalidTupleError(f"Unknown relation {tup.object_type}#{tup.relation}")

        specs = self.direct_subjects(tup.object_type, tup.relation)
        if not any(spec.matches(tup) for spec in specs):
            allowed = ", ".join(str(s) for s in specs) or "none"
            raise InvalidTupleError(
                f"Tuple {tup} does not match allowed subjects of "
                f"{tup.object_type}#{tup.relation} ({allowed})"
            )

        if tup.condition:
            declared = self.evaluator.get(tup.condition).param_names
            unknown = set(tup.condition_params) - declared
            if unknown:
                raise InvalidTupleError(
                    f"Tuple {tup} sets undeclared parameters of {tup.condition}: "
                    f"{sorted(unknown)}"
                )

    def to_dict(self) -> dict[str, Any]:
        """Dump the schema in the structured (YAML/JSON) shape."""
        return {
            "types": {
                name: {
                    "relations": {
                        rel.name: _expression_to_dict(rel.expression)
                        for rel in obj.relations.values()
                    }
                }
                for name, obj in sorted(self._types.items())
            },
            "conditions": {
                name: {
                    "params": {p.name: p.type for p in self.evaluator.get(name).params},
                    "expression": self.evaluator.get(name).expression,
                }
                for name in self.evaluator.names()
            },
        }


def _direct_sets(expression: RelationExpression) -> Iterator[DirectSet]:
    if isinstance(expression, DirectSet):
        yield expression
    elif isinstance(expression, Union):
        for child in expression.children:
            if isinstance(child, DirectSet):
                yield child


def _expression_to_dict(expression: RelationExpression) -> Any:
    if isinstance(expression, DirectSet):
        return {"direct": [str(s) for s in expression.subjects]}
    if isinstance(expression, Union):
        return {"union": [_expression_to_dict(c) for c in expression.children]}
    if isinstance(expression, TupleToUserset):
        return {"tuple_to_userset": {"tupleset": expression.tupleset, "computed": expression.computed}}
    return {"computed": expression.relation}


# =============================================================================
# Compiler
# =============================================================================


def compile_schema(
    relations: dict[str, dict[str, RelationExpression]],
    conditions: list[ConditionDefinition] | None = None,
    evaluator: ConditionEvaluator | None = None,
) -> CompiledSchema:
    """Validate raw type/relation definitions and build a CompiledSchema.

    Args:
        relations: type name -> relation name -> expression
        conditions: conditions declared by the schema
        evaluator: Existing registry (e.g. with Python predicates). It is
            copied and never modified; schema conditions go into the copy

    Raises:
        SchemaError: on dangling references, invalid hierarchy relations or
            relations that cannot terminate, or a condition name that is
            already registered
    """
    evaluator = evaluator.copy() if evaluator is not None else ConditionEvaluator()
    for definition in conditions or []:
        if evaluator.has(definition.name):
            raise SchemaError(f"Condition '{definition.name}' is already registered")
        evaluator.register(definition)

    def check_relation(type_name: str, relation: str, where: str) -> None:
        if type_name not in relations:
            raise SchemaError(f"{where}: unknown type '{type_name}'")
        if relation not in relations[type_name]:
            raise SchemaError(f"{where}: unknown relation '{type_name}#{relation}'")

    def validate(type_name: str, rel_name: str, expression: RelationExpression) -> None:
        where = f"{type_name}#{rel_name}"
        if isinstance(expression, DirectSet):
            for spec in expression.subjects:
                if spec.type not in relations:
                    raise SchemaError(f"{where}: unknown subject type '{spec.type}'")
                if spec.relation:
                    check_relation(spec.type, spec.relation, where)
                if spec.condition and not evaluator.has(spec.condition):
                    raise SchemaError(f"{where}: unknown condition '{spec.condition}'")
        elif isinstance(expression, Union):
            for child in expression.children:
                validate(type_name, rel_name, child)
        elif isinstance(expression, ComputedRelation):
            check_relation(type_name, expression.relation, where)
        elif isinstance(expression, TupleToUserset):
            check_relation(type_name, expression.tupleset, where)
            tupleset = relations[type_name][expression.tupleset]
            if not isinstance(tupleset, DirectSet):
                raise SchemaError(
                    f"{where}: hierarchy relation '{expression.tupleset}' must be a direct relation"
                )
            for spec in tupleset.subjects:
                if spec.relation or spec.wildcard or spec.condition:
                    raise SchemaError(
                        f"{where}: hierarchy relation '{expression.tupleset}' may only "
                        f"reference plain object types, got '{spec}'"
                    )
                if expression.computed not in relations[spec.type]:
                    raise SchemaError(
                        f"{where}: '{spec.type}' reached via '{expression.tupleset}' "
                        f"does not define '{expression.computed}'"
                    )

    for type_name, type_relations in relations.items():
        for rel_name, expression in type_relations.items():
            validate(type_name, rel_name, expression)

    _check_termination(relations)

    types: dict[str, ObjectType] = {}
    for type_name, type_relations in relations.items():
        hierarchy = set()
        for expression in type_relations.values():
            hierarchy.update(_tuplesets(expression))
        types[type_name] = ObjectType(
            name=type_name,
            relations={
                name: Relation(name=name, expression=expr)
                for name, expr in type_relations.items()
            },
            hierarchy_relations=frozenset(hierarchy),
        )

    logger.info(
        "Compiled schema: %d types, %d relations, %d conditions",
        len(types),
        sum(len(t.relations) for t in types.values()),
        len(evaluator.names()),
    )
    return CompiledSchema(types, evaluator)


def _tuplesets(expression: RelationExpression) -> Iterator[str]:
    if isinstance(expression, TupleToUserset):
        yield expression.tupleset
    elif isinstance(expression, Union):
        for child in expression.children:
            yield from _tuplesets(child)


def _check_termination(relations: dict[str, dict[str, RelationExpression]]) -> None:
    """Reject relations whose every derivation loops back on itself.

    A relation is grounded when some path through its expression ends at a
    concrete direct subject. Computed as a least fixpoint; whatever is left
    ungrounded only ever refers to itself (``define read: read from parent``).
    """
    grounded: set[tuple[str, str]] = set()

    def can_ground(type_name: str, expression: RelationExpression) -> bool:
        if isinstance(expression, DirectSet):
            return any(
                not spec.relation or (spec.type, spec.relation) in grounded
                for spec in expression.subjects
            )
        if isinstance(expression, Union):
            return any(can_ground(type_name, child) for child in expression.children)
        if isinstance(expression, ComputedRelation):
            return (type_name, expression.relation) in grounded
        tupleset = relations[type_name][expression.tupleset]
        return any(
            (spec.type, expression.computed) in grounded
            for spec in tupleset.subjects
        )

    changed = True
    while changed:
        changed = False
        for type_name, type_relations in relations.items():
            for rel_name, expression in type_relations.items():
                node = (type_name, rel_name)
                if node not in grounded and can_ground(type_name, expression):
                    grounded.add(node)
                    changed = True

    for type_name, type_relations in relations.items():
        for rel_name in type_relations:
            if (type_name, rel_name) not in grounded:
                raise SchemaError(
                    f"{type_name}#{rel_name}: definition cannot terminate, every path "
                    "leads back to itself without reaching a direct subject"
                )


# =============================================================================
# Loader
# =============================================================================


class SchemaLoader:
    """Load schemas from DSL text, dicts or files."""

    def __init__(self, evaluator: ConditionEvaluator | None = None):
        self.evaluator = evaluator

    def load_file(self, path: str | Path) -> CompiledSchema:
        """Load a schema file.

        ``.yaml``/``.yml`` and ``.json`` are read as structured documents,
        anything else as DSL text.
        """
        path = Path(path)
        if not path.exists():
            raise SchemaError(f"Schema file not found: {path}")
        text = path.read_text(encoding="utf-8")
        logger.info("Loading schema from %s", path)

        suffix = path.suffix.lower()
        if suffix in (".yaml", ".yml"):
            try:
                raw = yaml.safe_load(text)
            except yaml.YAMLError as exc:
                raise SchemaError(f"Invalid YAML schema {path}: {exc}") from exc
            return self.load_from_dict(raw or {})
        if suffix == ".json":
            try:
                raw = json.loads(text)
            except json.JSONDecodeError as exc:
                raise SchemaError(f"Invalid JSON schema {path}: {exc}") from exc
            return self.load_from_dict(raw)
        return self.load_from_text(text)

    def load_from_text(self, text: str) -> CompiledSchema:
        """Parse and compile DSL text."""
        relations: dict[str, dict[str, RelationExpression]] = {}
        conditions: list[ConditionDefinition] = []
        current_type: str | None = None

        lines = text.splitlines()
        index = 0
        while index < len(lines):
            line_no = index + 1
            raw_line = lines[index]
            index += 1

            line = _COMMENT.sub("", raw_line).strip()
            if not line:
                continue

            if line == "model" or line.startswith("schema "):
                continue

            match = _TYPE_LINE.match(line)
            if match:
                current_type = match.group(1)
                if current_type in relations:
                    raise SchemaError(f"Duplicate type '{current_type}'", line_no)
                relations[current_type] = {}
                continue

            if line == "relations":
                if current_type is None:
                    raise SchemaError("'relations' outside of a type", line_no)
                continue

            match = _DEFINE_LINE.match(line)
            if match:
                if current_type is None:
                    raise SchemaError("'define' outside of a type", line_no)
                rel_name = match.group(1)
                if rel_name in relations[current_type]:
                    raise SchemaError(
                        f"Duplicate relation '{rel_name}' on type '{current_type}'", line_no
                    )
                relations[current_type][rel_name] = parse_expression(match.group(2), line_no)
                continue

            match = _CONDITION_HEAD.match(line)
            if match:
                current_type = None
                body = match.group(3)
                while "}" not in body:
                    if index >= len(lines):
                        raise SchemaError(f"Unterminated condition '{match.group(1)}'", line_no)
                    body += "\n" + _COMMENT.sub("", lines[index])
                    index += 1
                body, _, trailing = body.partition("}")
                if trailing.strip():
                    raise SchemaError(f"Unexpected text after condition: {trailing.strip()!r}", line_no)
                name = match.group(1)
                if any(c.name == name for c in conditions):
                    raise SchemaError(f"Duplicate condition '{name}'", line_no)
                definition = ConditionDefinition(
                    name=name,
                    params=_parse_params(match.group(2), line_no),
                    expression=" ".join(body.split()),
                )
                conditions.append(definition)
                continue

            raise SchemaError(f"Unrecognised line: {line!r}", line_no)

        return compile_schema(relations, conditions, self.evaluator)

    def load_from_dict(self, raw: dict[str, Any]) -> CompiledSchema:
        """Compile a structured schema document."""
        if not isinstance(raw, dict):
            raise SchemaError("Schema document must be a mapping")

        types_data = raw.get("types") or {}
        if not isinstance(types_data, dict):
            raise SchemaError("'types' must be a mapping of type names")

        relations: dict[str, dict[str, RelationExpression]] = {}
        for type_name, type_data in types_data.items():
            type_data = type_data or {}
            if not isinstance(type_data, dict):
                raise SchemaError(f"{type_name}: type definition must be a mapping")
            relations_data = type_data.get("relations") or {}
            if not isinstance(relations_data, dict):
                raise SchemaError(f"{type_name}: 'relations' must be a mapping")
            relations[type_name] = {
                rel_name: self._parse_expression(rel_data, f"{type_name}#{rel_name}")
                for rel_name, rel_data in relations_data.items()
            }

        conditions_data = raw.get("conditions") or {}
        if not isinstance(conditions_data, dict):
            raise SchemaError("'conditions' must be a mapping of condition names")

        conditions: list[ConditionDefinition] = []
        for name, cond_data in conditions_data.items():
            where = f"condition {name}"
            if not isinstance(cond_data, dict):
                raise SchemaError(f"{where}: definition must be a mapping")
            params_data = cond_data.get("params") or {}
            if isinstance(params_data, dict):
                params_text = ", ".join(f"{k}: {v}" for k, v in params_data.items())
            elif isinstance(params_data, list):
                params_text = ", ".join(str(p) for p in params_data)
            else:
                raise SchemaError(f"{where}: 'params' must be a mapping or a list")
            expression = cond_data.get("expression")
            if not isinstance(expression, str):
                raise SchemaError(f"{where}: 'expression' must be a string")
            conditions.append(ConditionDefinition(
                name=name,
                params=_parse_params(params_text, None),
                expression=expression,
            ))

        return compile_schema(relations, conditions, self.evaluator)

    def _parse_expression(self, data: Any, where: str) -> RelationExpression:
        if isinstance(data, str):
            return parse_expression(data)
        if not isinstance(data, dict) or len(data) != 1:
            raise SchemaError(f"{where}: expression must be a string or a single-key mapping")

        (kind, value), = data.items()
        if kind == "direct":
            if not value or not isinstance(value, list):
                raise SchemaError(f"{where}: direct subject list cannot be empty")
            return parse_expression("[" + ", ".join(str(v) for v in value) + "]")
        if kind == "union":
            if not isinstance(value, list):
                raise SchemaError(f"{where}: union must be a list of expressions")
            return Union(children=tuple(self._parse_expression(v, where) for v in value))
        if kind == "computed":
            if not isinstance(value, str):
                raise SchemaError(f"{where}: computed must name a relation")
            return ComputedRelation(relation=value)
        if kind == "tuple_to_userset":
            if (
                not isinstance(value, dict)
                or not isinstance(value.get("tupleset"), str)
                or not isinstance(value.get("computed"), str)
            ):
                raise SchemaError(f"{where}: tuple_to_userset needs 'tupleset' and 'computed'")
            return TupleToUserset(tupleset=value["tupleset"], computed=value["computed"])
        raise SchemaError(f"{where}: unknown expression kind '{kind}'")
