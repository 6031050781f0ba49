"""Condition evaluation for conditional relationship tuples.

A condition is a named boolean predicate over declared parameters. Values
come from the tuple (stored when the grant was written) and from the
request context supplied at check time; stored values win on conflicts so a
caller cannot widen a grant by sending its own parameter values.

Predicates are either schema-declared expressions, compiled once into a
restricted Python AST, or plain Python callables registered by name.

Usage:
    evaluator = ConditionEvaluator()
    evaluator.register(ConditionDefinition(
        name="group_filter",
        params=(ConditionParam(name="requested_group", type="string"),
                ConditionParam(name="resource_group", type="string")),
        expression="requested_group == resource_group",
    ))
    evaluator.evaluate("group_filter", {"resource_group": "a"}, {"requested_group": "a"})
"""

from __future__ import annotations

import ast
import logging
import operator
import re
from typing import Any, Callable, Iterable, Mapping

from packages.rebac.errors import (
    ConditionError,
    ConditionNotFoundError,
    ConditionParamError,
    SchemaError,
)
from packages.rebac.models import ConditionDefinition, ConditionParam, ParamType

logger = logging.getLogger(__name__)

Predicate = Callable[..., bool]

# CEL spellings accepted in schema expressions, rewritten outside string literals
_CEL_TOKENS = re.compile(
    r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')"
    r"|(&&|\|\||!(?!=)|\btrue\b|\bfalse\b|\bnull\b)"
)
_CEL_REPLACEMENTS = {
    "&&": " and ",
    "||": " or ",
    "!": " not ",
    "true": "True",
    "false": "False",
    "null": "None",
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Subscript,
    *_COMPARE_OPS.keys(),
)

_TYPE_CHECKS: dict[ParamType, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "int": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "double": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "bool": lambda v: isinstance(v, bool),
    "list": lambda v: isinstance(v, (list, tuple)),
    "map": lambda v: isinstance(v, dict),
    "any": lambda v: True,
}


def _translate_cel(expression: str) -> str:
    def replace(match: re.Match) -> str:
        if match.group(1):
            return match.group(1)
        return _CEL_REPLACEMENTS[match.group(2)]

    return _CEL_TOKENS.sub(replace, expression).strip()


def parse_expression(definition: ConditionDefinition) -> ast.Expression:
    """Parse and validate a condition expression.

    Raises:
        SchemaError: on syntax errors, unsupported constructs, or names that
            are not declared parameters
    """
    if not definition.expression:
        raise SchemaError(f"Condition {definition.name} has no expression")

    source = _translate_cel(definition.expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise SchemaError(f"Condition {definition.name}: invalid expression: {exc.msg}") from exc

    declared = definition.param_names
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise SchemaError(
                f"Condition {definition.name}: unsupported construct {type(node).__name__}"
            )
        if isinstance(node, ast.Name) and node.id not in declared:
            raise SchemaError(
                f"Condition {definition.name}: undeclared parameter '{node.id}'"
            )
    return tree


def _eval_node(node: ast.AST, values: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body, values)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return values[node.id]
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval_node(v, values) for v in node.values)
        return any(_eval_node(v, values) for v in node.values)
    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, values)
        if isinstance(node.op, ast.Not):
            return not operand
        return -operand
    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, values)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval_node(comparator, values)
            if not _COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval_node(elt, values) for elt in node.elts]
    if isinstance(node, ast.Subscript):
        return _eval_node(node.value, values)[_eval_node(node.slice, values)]
    raise TypeError(f"unsupported node {type(node).__name__}")


def compile_expression(definition: ConditionDefinition) -> Predicate:
    """Compile a declared expression into a predicate taking keyword params."""
    tree = parse_expression(definition)

    def predicate(**values: Any) -> bool:
        return bool(_eval_node(tree, values))

    return predicate


class _RegisteredCondition:
    __slots__ = ("definition", "predicate")

    def __init__(self, definition: ConditionDefinition, predicate: Predicate):
        self.definition = definition
        self.predicate = predicate


class ConditionEvaluator:
    """Registry of named conditions.

    Evaluation is a pure function of the condition, the stored parameters
    and the request context, which keeps per-request memoization sound.
    """

    def __init__(self, definitions: Iterable[ConditionDefinition] = ()):
        self._conditions: dict[str, _RegisteredCondition] = {}
        for definition in definitions:
            self.register(definition)

    def register(
        self,
        definition: ConditionDefinition,
        predicate: Predicate | None = None,
    ) -> None:
        """Register a condition.

        Without an explicit predicate the definition's expression is compiled.
        """
        if predicate is None:
            predicate = compile_expression(definition)
        self._conditions[definition.name] = _RegisteredCondition(definition, predicate)
        logger.debug("Registered condition: %s", definition.name)

    def register_predicate(
        self,
        name: str,
        params: Mapping[str, ParamType],
        predicate: Predicate,
    ) -> ConditionDefinition:
        """Register a Python callable as a condition.

        Example:
            evaluator.register_predicate(
                "before", {"now": "int", "expires": "int"},
                lambda now, expires: now < expires,
            )
        """
        definition = ConditionDefinition(
            name=name,
            params=tuple(ConditionParam(name=p, type=t) for p, t in params.items()),
        )
        self.register(definition, predicate)
        return definition

    def copy(self) -> "ConditionEvaluator":
        """Independent registry holding the same conditions."""
        clone = ConditionEvaluator()
        clone._conditions = dict(self._conditions)
        return clone

    def has(self, name: str) -> bool:
        return name in self._conditions

    def get(self, name: str) -> ConditionDefinition:
        try:
            return self._conditions[name].definition
        except KeyError:
            raise ConditionNotFoundError(name) from None

    def names(self) -> list[str]:
        return sorted(self._conditions)

    def evaluate(
        self,
        name: str,
        stored_params: Mapping[str, Any] | None = None,
        request_context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Evaluate a condition.

        Args:
            name: Registered condition name
            stored_params: Parameter values stored on the tuple
            request_context: Values supplied by the caller for this request

        Returns:
            Predicate result

        Raises:
            ConditionNotFoundError: if the name is not registered
            ConditionParamError: if a declared parameter is missing or mistyped
            ConditionError: if the predicate itself fails
        """
        registered = self._conditions.get(name)
        if registered is None:
            raise ConditionNotFoundError(name)

        merged: dict[str, Any] = dict(request_context or {})
        merged.update(stored_params or {})

        values: dict[str, Any] = {}
        for param in registered.definition.params:
            if param.name not in merged:
                raise ConditionParamError(name, param.name)
            value = merged[param.name]
            if not _TYPE_CHECKS[param.type](value):
                raise ConditionParamError(name, param.name, f"must be of type {param.type}")
            values[param.name] = value

        try:
            return bool(registered.predicate(**values))
        except (TypeError, KeyError, IndexError, ValueError) as exc:
            raise ConditionError(
                f"Condition {name} failed to evaluate: {exc}", "condition_eval"
            ) from exc
