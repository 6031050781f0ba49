"""Error taxonomy for the relationship engine.

Schema errors abort start-up; everything else is per request.
"""


class RebacError(Exception):
    """Base class for engine errors."""

    def __init__(self, message: str, code: str = "rebac_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class SchemaError(RebacError):
    """Raised when a schema is malformed or references something missing."""

    def __init__(self, message: str, line: int | None = None, code: str = "schema_error"):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message, code)


class UnknownRelationError(SchemaError):
    """Raised when a query names a type or relation the schema does not define."""

    def __init__(self, object_type: str, relation: str | None = None):
        self.object_type = object_type
        self.relation = relation
        if relation is None:
            message = f"Unknown object type: {object_type}"
        else:
            message = f"Unknown relation: {object_type}#{relation}"
        super().__init__(message, code="unknown_relation")


class InvalidTupleError(RebacError):
    """Raised when a relationship tuple does not fit the schema."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_tuple")


class ConditionError(RebacError):
    """Base for condition evaluation failures."""


class ConditionNotFoundError(ConditionError):
    """Raised when a condition name is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Condition not found: {name}", "condition_not_found")


class ConditionParamError(ConditionError):
    """Raised when a condition parameter is missing or has the wrong type."""

    def __init__(self, condition: str, param: str, reason: str = "missing"):
        self.condition = condition
        self.param = param
        super().__init__(
            f"Condition {condition}: parameter '{param}' {reason}",
            "condition_param",
        )


class CheckCancelledError(RebacError):
    """Raised when a check or expansion runs past its deadline."""

    def __init__(self, message: str = "Check cancelled: deadline exceeded"):
        super().__init__(message, "check_cancelled")
