"""
Filter model translation.

Turns the grid's structured filter model into SQL predicate fragments with
bound parameters. Column names are looked up in the entity's declared
column→type table before they are quoted into a fragment; operands are
always bound, never embedded.

Filter entry shapes accepted per column::

    {"filterType": "text", "type": "contains", "filter": "abc"}
    {"filterType": "contains", "filter": "abc"}
    {"filterType": "number", "type": "greaterThan", "filter": 100}
    {"filterType": "set", "values": ["Active", "On Leave"]}
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from grid_api.database import quote_identifier
from grid_api.entities import NUMBER, TEXT, EntityDescriptor
from grid_api.errors import ErrorKind, Result

logger = logging.getLogger(__name__)

TEXT_OPERATORS = (
    "contains", "notContains", "equals", "notEqual", "startsWith", "endsWith",
    "blank", "notBlank",
)
NUMBER_OPERATORS = (
    "equals", "notEqual", "lessThan", "lessThanOrEqual", "greaterThan",
    "greaterThanOrEqual", "blank", "notBlank",
)
_NO_OPERAND = ("blank", "notBlank")
_FILTER_TYPE_NAMES = ("text", "number", "date", "set")

_NUMBER_COMPARISONS = {
    "equals": "=",
    "notEqual": "<>",
    "lessThan": "<",
    "lessThanOrEqual": "<=",
    "greaterThan": ">",
    "greaterThanOrEqual": ">=",
}

_LIKE_ESCAPE = "ESCAPE '\\'"


@dataclass
class Predicate:
    """AND-combined SQL fragments plus the values bound to them."""

    fragments: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)

    def add(self, fragment: str, **params: Any) -> None:
        self.fragments.append(fragment)
        self.params.update(params)

    def extend(self, other: "Predicate") -> None:
        self.fragments.extend(other.fragments)
        self.params.update(other.params)

    def where_clause(self) -> str:
        if not self.fragments:
            return ""
        return "WHERE " + " AND ".join(self.fragments)

    def signature(self) -> str:
        return json.dumps([self.fragments, self.params], sort_keys=True, default=str)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def coerce_number(value: Any) -> Optional[float]:
    """Numeric operand or None. Numeric strings are accepted, booleans are not."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


class _ParamNames:
    def __init__(self, prefix: str):
        self.prefix = prefix
        self.count = 0

    def next(self) -> str:
        name = f"{self.prefix}{self.count}"
        self.count += 1
        return name


def _resolve_operator(entry: Mapping[str, Any]) -> Optional[str]:
    operator = entry.get("type") or entry.get("operator")
    if operator:
        return str(operator)
    filter_type = entry.get("filterType")
    if filter_type and filter_type not in _FILTER_TYPE_NAMES:
        return str(filter_type)
    return None


def _text_condition(column: str, operator: str, operand: Any, names: _ParamNames) -> Predicate:
    predicate = Predicate()
    col = quote_identifier(column)

    if operator == "blank":
        predicate.add(f"({col} IS NULL OR {col} = '')")
        return predicate
    if operator == "notBlank":
        predicate.add(f"({col} IS NOT NULL AND {col} <> '')")
        return predicate

    text = str(operand).lower()
    param = names.next()
    if operator == "equals":
        predicate.add(f"LOWER({col}) = :{param}", **{param: text})
    elif operator == "notEqual":
        predicate.add(f"LOWER({col}) <> :{param}", **{param: text})
    elif operator == "startsWith":
        predicate.add(f"LOWER({col}) LIKE :{param} {_LIKE_ESCAPE}",
                      **{param: escape_like(text) + "%"})
    elif operator == "endsWith":
        predicate.add(f"LOWER({col}) LIKE :{param} {_LIKE_ESCAPE}",
                      **{param: "%" + escape_like(text)})
    elif operator == "notContains":
        predicate.add(f"LOWER({col}) NOT LIKE :{param} {_LIKE_ESCAPE}",
                      **{param: "%" + escape_like(text) + "%"})
    else:
        # contains, and any unrecognized text operator
        predicate.add(f"LOWER({col}) LIKE :{param} {_LIKE_ESCAPE}",
                      **{param: "%" + escape_like(text) + "%"})
    return predicate


def _number_condition(column: str, operator: str, number: Any, names: _ParamNames) -> Predicate:
    predicate = Predicate()
    col = quote_identifier(column)

    if operator == "blank":
        predicate.add(f"{col} IS NULL")
        return predicate
    if operator == "notBlank":
        predicate.add(f"{col} IS NOT NULL")
        return predicate

    comparison = _NUMBER_COMPARISONS.get(operator, "=")
    param = names.next()
    predicate.add(f"{col} {comparison} :{param}", **{param: number})
    return predicate


def _set_condition(column: str, column_type: str, values: Any, names: _ParamNames) -> Result[Predicate]:
    if not isinstance(values, list):
        return Result.fail(ErrorKind.BAD_FILTER, f"Set filter on '{column}' requires a list of values")

    predicate = Predicate()
    if not values:
        return Result.success(predicate)

    col = quote_identifier(column)
    alternatives = []
    for value in values:
        if value is None:
            alternatives.append(f"{col} IS NULL")
            continue
        if column_type == NUMBER:
            bound = coerce_number(value)
            if bound is None:
                return Result.fail(
                    ErrorKind.BAD_FILTER,
                    f"Set filter value {value!r} is not numeric for column '{column}'",
                )
        else:
            bound = str(value)
        param = names.next()
        alternatives.append(f"{col} = :{param}")
        predicate.params[param] = bound

    predicate.fragments.append("(" + " OR ".join(alternatives) + ")")
    return Result.success(predicate)


def translate_filters(
    filter_model: Optional[Mapping[str, Any]],
    column_types: Mapping[str, str],
) -> Result[Predicate]:
    """
    Translate a filter model into a predicate.

    Args:
        filter_model: column -> filter entry, as sent by the grid
        column_types: declared column -> "text" | "number" for the entity

    Returns:
        Result holding the predicate, or a BAD_FILTER failure for any entry
        that references an undeclared column or carries an unusable operand.
        One bad entry fails the whole request.
    """
    predicate = Predicate()
    if not filter_model:
        return Result.success(predicate)
    if not isinstance(filter_model, Mapping):
        return Result.fail(ErrorKind.BAD_FILTER, "Filter model must be an object")

    names = _ParamNames("f")
    for column, entry in filter_model.items():
        column_type = column_types.get(column)
        if column_type is None:
            logger.warning(f"Rejected filter on undeclared column: {column!r}")
            return Result.fail(ErrorKind.BAD_FILTER, f"Unknown filter column: {column}")
        if not isinstance(entry, Mapping):
            return Result.fail(ErrorKind.BAD_FILTER, f"Invalid filter for column '{column}'")

        if entry.get("filterType") == "set":
            outcome = _set_condition(column, column_type, entry.get("values"), names)
            if not outcome.ok:
                return outcome
            predicate.extend(outcome.value)
            continue

        operator = _resolve_operator(entry)
        operand = entry.get("filter")

        if column_type == TEXT:
            operator = operator if operator in TEXT_OPERATORS else "contains"
            if operator not in _NO_OPERAND and (operand is None or isinstance(operand, (dict, list))):
                return Result.fail(ErrorKind.BAD_FILTER, f"Missing text operand for column '{column}'")
            predicate.extend(_text_condition(column, operator, operand, names))
        else:
            operator = operator if operator in NUMBER_OPERATORS else "equals"
            number = None
            if operator not in _NO_OPERAND:
                number = coerce_number(operand)
                if number is None:
                    return Result.fail(
                        ErrorKind.BAD_FILTER,
                        f"Filter value {operand!r} is not numeric for column '{column}'",
                    )
            predicate.extend(_number_condition(column, operator, number, names))

    return Result.success(predicate)


def parse_filter_json(filter_json: Optional[str]) -> Result[Optional[Dict[str, Any]]]:
    """Accept the filter model as a JSON string, as older grid clients send it."""
    if filter_json is None or filter_json.strip() == "":
        return Result.success(None)
    try:
        model = json.loads(filter_json)
    except ValueError:
        return Result.fail(ErrorKind.BAD_FILTER, "Filter JSON is not valid JSON")
    if not isinstance(model, dict):
        return Result.fail(ErrorKind.BAD_FILTER, "Filter model must be an object")
    return Result.success(model)


def search_predicate(search_term: Optional[str], descriptor: EntityDescriptor) -> Predicate:
    """Case-insensitive substring match across the entity's searchable columns."""
    predicate = Predicate()
    if not search_term or not search_term.strip():
        return predicate
    fields = descriptor.searchable_fields
    if not fields:
        return predicate

    pattern = "%" + escape_like(search_term.strip().lower()) + "%"
    alternatives = [
        f"LOWER(CAST({quote_identifier(name)} AS TEXT)) LIKE :search {_LIKE_ESCAPE}"
        for name in fields
    ]
    predicate.add("(" + " OR ".join(alternatives) + ")", search=pattern)
    return predicate


def order_by_clause(
    sort_column: Optional[str],
    sort_direction: Optional[str],
    descriptor: EntityDescriptor,
) -> str:
    """
    ORDER BY for a grid request. Unknown or unsortable columns fall back to
    key order; key columns always follow as a tie-break.
    """
    direction = "DESC" if (sort_direction or "").strip().upper() == "DESC" else "ASC"
    keys = [quote_identifier(name) for name in descriptor.key_names]

    terms = []
    column = descriptor.columns.get(sort_column) if sort_column else None
    if column is not None and column.sortable:
        terms.append(f"{quote_identifier(column.name)} {direction}")
    elif sort_column:
        logger.warning(
            f"Ignoring sort on undeclared or unsortable column {sort_column!r} "
            f"for {descriptor.table}"
        )

    sorted_name = column.name if column is not None and column.sortable else None
    terms.extend(f"{key} ASC" for key, name in zip(keys, descriptor.key_names) if name != sorted_name)
    return "ORDER BY " + ", ".join(terms)


def filter_column_types(descriptor: EntityDescriptor) -> Dict[str, str]:
    return {name: col.type for name, col in descriptor.columns.items() if col.filterable}
