"""Typed filter expressions and validated compilation of filters, projections, sorts and updates.

Filters can be built from expressions::

    from docrepo.database import field

    adults = (field("age") >= 18) & field("email").exists()
    await users.find_by_query(adults)

or given as plain mappings, which are shape-checked before they reach the store::

    await users.find_by_query({"age": {"$gte": 18}, "email": {"$exists": True}})

The entity identifier is exposed as ``id``; every compiler rewrites it to the store's ``_id`` and turns
24-character hex strings into ObjectIds.
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Mapping, Optional, Sequence, Union

from bson import ObjectId

from docrepo.database.core.exceptions import ImmutableFieldError, InvalidQueryError
from docrepo.database.core.types import SortDirection

ID_FIELD = "id"
STORE_ID_FIELD = "_id"

COMPARISON_OPERATORS = frozenset(
    {
        "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists", "$regex", "$options",
        "$not", "$elemMatch", "$size", "$all", "$type", "$mod",
    }
)
LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})
TOP_LEVEL_OPERATORS = LOGICAL_OPERATORS | {"$text", "$expr", "$comment"}
UPDATE_OPERATORS = frozenset(
    {
        "$set", "$unset", "$inc", "$mul", "$min", "$max", "$rename", "$push", "$pull", "$pullAll",
        "$addToSet", "$pop", "$currentDate", "$setOnInsert",
    }
)
_LIST_OPERATORS = frozenset({"$in", "$nin", "$all"})


def to_store_id(value: Any) -> Any:
    """Convert an entity id to the value stored in ``_id``. Non-ObjectId strings are kept as-is."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _store_field(name: str) -> str:
    return STORE_ID_FIELD if name == ID_FIELD else name


def _is_id_field(name: str) -> bool:
    return name in (ID_FIELD, STORE_ID_FIELD)


def _store_value(name: str, value: Any) -> Any:
    return to_store_id(value) if _is_id_field(name) else value


def _check_field_name(name: Any) -> None:
    if not isinstance(name, str) or not name or name.startswith("$"):
        raise InvalidQueryError(f"Invalid field name {name!r}")


class Expression:
    """Base class of filter expressions. Combine with ``&``, ``|`` and ``~``."""

    def to_mongo(self) -> dict:
        raise NotImplementedError

    def __and__(self, other: "Expression") -> "And":
        return And(self, other)

    def __or__(self, other: "Expression") -> "Or":
        return Or(self, other)

    def __invert__(self) -> "Not":
        return Not(self)


@dataclass(frozen=True)
class Comparison(Expression):
    field: str
    value: Any
    operator: ClassVar[str] = "$eq"

    def __post_init__(self):
        _check_field_name(self.field)

    def to_mongo(self) -> dict:
        return {_store_field(self.field): {self.operator: _store_value(self.field, self.value)}}


@dataclass(frozen=True)
class Eq(Comparison):
    operator: ClassVar[str] = "$eq"


@dataclass(frozen=True)
class Ne(Comparison):
    operator: ClassVar[str] = "$ne"


@dataclass(frozen=True)
class Gt(Comparison):
    operator: ClassVar[str] = "$gt"


@dataclass(frozen=True)
class Gte(Comparison):
    operator: ClassVar[str] = "$gte"


@dataclass(frozen=True)
class Lt(Comparison):
    operator: ClassVar[str] = "$lt"


@dataclass(frozen=True)
class Lte(Comparison):
    operator: ClassVar[str] = "$lte"


@dataclass(frozen=True)
class In(Comparison):
    operator: ClassVar[str] = "$in"

    def __post_init__(self):
        super().__post_init__()
        if isinstance(self.value, (str, bytes, Mapping)) or not isinstance(self.value, Iterable):
            raise InvalidQueryError(f"{self.operator} on {self.field!r} needs a sequence of values")
        object.__setattr__(self, "value", tuple(self.value))

    def to_mongo(self) -> dict:
        return {_store_field(self.field): {self.operator: [_store_value(self.field, v) for v in self.value]}}


@dataclass(frozen=True)
class NotIn(In):
    operator: ClassVar[str] = "$nin"


@dataclass(frozen=True)
class Exists(Expression):
    field: str
    exists: bool = True

    def __post_init__(self):
        _check_field_name(self.field)

    def to_mongo(self) -> dict:
        return {_store_field(self.field): {"$exists": self.exists}}


@dataclass(frozen=True)
class Regex(Expression):
    field: str
    pattern: str
    options: str = ""

    def __post_init__(self):
        _check_field_name(self.field)
        if not isinstance(self.pattern, str):
            raise InvalidQueryError(f"Regex on {self.field!r} needs a string pattern")

    def to_mongo(self) -> dict:
        condition = {"$regex": self.pattern}
        if self.options:
            condition["$options"] = self.options
        return {_store_field(self.field): condition}


class _Logical(Expression):
    operator: ClassVar[str]

    def __init__(self, *operands: Expression):
        if not operands:
            raise InvalidQueryError(f"{type(self).__name__} needs at least one operand")
        flat = []
        for operand in operands:
            if not isinstance(operand, Expression):
                raise InvalidQueryError(f"{type(self).__name__} operands must be expressions, got {operand!r}")
            flat.extend(operand.operands if type(operand) is type(self) else (operand,))
        self.operands = tuple(flat)

    def to_mongo(self) -> dict:
        return {self.operator: [operand.to_mongo() for operand in self.operands]}

    def __eq__(self, other):
        return type(other) is type(self) and other.operands == self.operands

    def __hash__(self):
        return hash((type(self).__name__, self.operands))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(map(repr, self.operands))})"


class And(_Logical):
    operator = "$and"


class Or(_Logical):
    operator = "$or"


@dataclass(frozen=True)
class Not(Expression):
    operand: Expression

    def __post_init__(self):
        if not isinstance(self.operand, Expression):
            raise InvalidQueryError(f"Not needs an expression operand, got {self.operand!r}")

    def to_mongo(self) -> dict:
        # $not only negates a single field operator, $nor negates a whole sub-filter
        return {"$nor": [self.operand.to_mongo()]}


class FieldRef:
    """Builds comparisons with Python operators: ``field("age") >= 30``."""

    __slots__ = ("name",)
    __hash__ = None

    def __init__(self, name: str):
        _check_field_name(name)
        self.name = name

    def __eq__(self, value) -> Eq:  # type: ignore[override]
        return Eq(self.name, value)

    def __ne__(self, value) -> Ne:  # type: ignore[override]
        return Ne(self.name, value)

    def __gt__(self, value) -> Gt:
        return Gt(self.name, value)

    def __ge__(self, value) -> Gte:
        return Gte(self.name, value)

    def __lt__(self, value) -> Lt:
        return Lt(self.name, value)

    def __le__(self, value) -> Lte:
        return Lte(self.name, value)

    def in_(self, values: Iterable) -> In:
        return In(self.name, values)

    def not_in(self, values: Iterable) -> NotIn:
        return NotIn(self.name, values)

    def exists(self, flag: bool = True) -> Exists:
        return Exists(self.name, flag)

    def matches(self, pattern: str, options: str = "") -> Regex:
        return Regex(self.name, pattern, options)

    def __repr__(self) -> str:
        return f"field({self.name!r})"


def field(name: str) -> FieldRef:
    return FieldRef(name)


FilterLike = Union[Expression, Mapping[str, Any], None]
ProjectionLike = Union[Mapping[str, Union[int, bool]], Sequence[str], None]
SortLike = Union[Mapping[str, Any], Sequence[tuple[str, Any]], None]


def compile_filter(query: FilterLike, *, entity_name: str = "Resource") -> dict:
    """Validate a filter and return the store-native mapping. ``None`` matches every document."""
    if query is None:
        return {}
    if isinstance(query, Expression):
        return query.to_mongo()
    if isinstance(query, Mapping):
        return _compile_mapping(query, entity_name)
    raise InvalidQueryError(f"Unsupported filter type {type(query).__name__}", entity_name=entity_name)


def _compile_mapping(query: Mapping, entity_name: str) -> dict:
    compiled = {}
    for key, value in query.items():
        if not isinstance(key, str) or not key:
            raise InvalidQueryError(f"Filter keys must be non-empty strings, got {key!r}", entity_name=entity_name)
        if key.startswith("$"):
            if key not in TOP_LEVEL_OPERATORS:
                raise InvalidQueryError(f"Unsupported query operator {key!r}", entity_name=entity_name)
            if key in LOGICAL_OPERATORS:
                if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Sequence) or not value:
                    raise InvalidQueryError(f"{key} needs a non-empty list of filters", entity_name=entity_name)
                value = [compile_filter(sub, entity_name=entity_name) for sub in value]
            compiled[key] = value
        else:
            compiled[_store_field(key)] = _compile_condition(key, value, entity_name)
    return compiled


def _compile_condition(name: str, condition: Any, entity_name: str) -> Any:
    if not isinstance(condition, Mapping) or not any(isinstance(k, str) and k.startswith("$") for k in condition):
        return _store_value(name, condition)

    compiled = {}
    for op, operand in condition.items():
        if not isinstance(op, str) or not op.startswith("$"):
            raise InvalidQueryError(
                f"Condition on {name!r} mixes operators and plain fields ({op!r})", entity_name=entity_name
            )
        if op not in COMPARISON_OPERATORS:
            raise InvalidQueryError(f"Unsupported operator {op!r} on {name!r}", entity_name=entity_name)
        if op in _LIST_OPERATORS:
            if isinstance(operand, (str, bytes, Mapping)) or not isinstance(operand, Sequence):
                raise InvalidQueryError(f"{op} on {name!r} needs a list of values", entity_name=entity_name)
            operand = [_store_value(name, v) for v in operand]
        elif op == "$not":
            operand = _compile_condition(name, operand, entity_name) if isinstance(operand, Mapping) else operand
        elif op in ("$eq", "$ne"):
            operand = _store_value(name, operand)
        compiled[op] = operand
    return compiled


def include(*fields: str) -> dict:
    return {f: 1 for f in fields}


def exclude(*fields: str) -> dict:
    return {f: 0 for f in fields}


def compile_projection(projection: ProjectionLike, *, entity_name: str = "Resource") -> Optional[dict]:
    """Validate a projection. A sequence of names is an inclusion list; mappings take ``0``/``1`` per field."""
    if projection is None:
        return None
    if isinstance(projection, str):
        raise InvalidQueryError("Projection must be a mapping or a list of field names", entity_name=entity_name)
    if not isinstance(projection, Mapping):
        projection = include(*projection)
    if not projection:
        return None

    compiled = {}
    for name, flag in projection.items():
        if not isinstance(name, str) or not name or name.startswith("$"):
            raise InvalidQueryError(f"Invalid projection field {name!r}", entity_name=entity_name)
        if flag not in (0, 1) or isinstance(flag, float):
            raise InvalidQueryError(f"Projection for {name!r} must be 0 or 1, got {flag!r}", entity_name=entity_name)
        compiled[_store_field(name)] = int(flag)

    modes = {flag for name, flag in compiled.items() if name != STORE_ID_FIELD}
    if len(modes) > 1:
        raise InvalidQueryError("Projection cannot mix included and excluded fields", entity_name=entity_name)
    return compiled


_DIRECTIONS = {
    "asc": SortDirection.ASCENDING,
    "ascending": SortDirection.ASCENDING,
    "desc": SortDirection.DESCENDING,
    "descending": SortDirection.DESCENDING,
}


def _direction(name: str, value: Any, entity_name: str) -> int:
    if isinstance(value, str) and value.lower() in _DIRECTIONS:
        return int(_DIRECTIONS[value.lower()])
    if not isinstance(value, bool) and value in (1, -1):
        return int(value)
    raise InvalidQueryError(f"Invalid sort direction {value!r} for {name!r}", entity_name=entity_name)


def compile_sort(sort: SortLike, *, entity_name: str = "Resource") -> Optional[list[tuple[str, int]]]:
    """Validate a sort specification and return the ordered ``(field, direction)`` list the driver takes."""
    if sort is None:
        return None
    items = sort.items() if isinstance(sort, Mapping) else sort
    compiled = []
    for item in items:
        if not isinstance(item, (tuple, list)) or len(item) != 2:
            raise InvalidQueryError(
                f"Sort entries must be (field, direction) pairs, got {item!r}", entity_name=entity_name
            )
        name, value = item
        if not isinstance(name, str) or not name:
            raise InvalidQueryError(f"Invalid sort field {name!r}", entity_name=entity_name)
        compiled.append((_store_field(name), _direction(name, value, entity_name)))
    return compiled or None


def check_mutable_path(path: str, *, entity_name: str = "Resource") -> None:
    """Raise ImmutableFieldError when ``path`` targets the entity identifier."""
    if not isinstance(path, str) or not path:
        raise InvalidQueryError(f"Invalid update field {path!r}", entity_name=entity_name)
    if _is_id_field(path.split(".", 1)[0]):
        raise ImmutableFieldError(f"The identifier of a {entity_name} cannot be changed", entity_name=entity_name)


def compile_update(update: Mapping[str, Any], *, entity_name: str = "Resource") -> dict:
    """Validate an update.

    A plain field mapping is wrapped in ``$set``; an operator document is checked against the supported update
    operators. Any path that touches ``id``/``_id`` is rejected.
    """
    if not isinstance(update, Mapping) or not update:
        raise InvalidQueryError("Update must be a non-empty mapping", entity_name=entity_name)

    operator_keys = [k for k in update if isinstance(k, str) and k.startswith("$")]
    if not operator_keys:
        compiled = {"$set": dict(update)}
    elif len(operator_keys) != len(update):
        raise InvalidQueryError("Update cannot mix operators and plain fields", entity_name=entity_name)
    else:
        compiled = {}
        for op, fields in update.items():
            if op not in UPDATE_OPERATORS:
                raise InvalidQueryError(f"Unsupported update operator {op!r}", entity_name=entity_name)
            if not isinstance(fields, Mapping) or not fields:
                raise InvalidQueryError(f"{op} needs a non-empty mapping of fields", entity_name=entity_name)
            compiled[op] = dict(fields)

    for op, fields in compiled.items():
        for path in fields:
            check_mutable_path(path, entity_name=entity_name)
        if op == "$rename":
            for target in fields.values():
                check_mutable_path(target, entity_name=entity_name)
    return compiled
