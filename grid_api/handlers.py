"""
Entity write handlers.

The dispatcher hands a handler the raw identifier token; the handler is the
only place that knows the key's component types and decodes it. Change sets
are checked against the descriptor (editable fields, declared types, range
and ordering rules) before anything reaches storage.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from grid_api import identifiers
from grid_api.entities import NUMBER, EntityDescriptor
from grid_api.errors import ErrorKind, GridFailure, Result
from grid_api.filters import coerce_number
from grid_api.storage import GridStorage

logger = logging.getLogger(__name__)


def coerce_value(descriptor: EntityDescriptor, field: str, value: Any) -> Tuple[Any, Optional[GridFailure]]:
    """
    Convert one incoming value to its declared column type.

    ``None`` clears the column to NULL. It never means "keep the current
    value"; callers leave a field out of the change set for that.
    """
    if value is None:
        return None, None
    column = descriptor.columns[field]
    if column.type == NUMBER:
        number = coerce_number(value)
        if number is None:
            return None, GridFailure(ErrorKind.VALIDATION_FAILED, f"Field '{field}' must be numeric")
        return number, None
    if isinstance(value, (dict, list, bool)):
        return None, GridFailure(ErrorKind.VALIDATION_FAILED, f"Field '{field}' must be text")
    return str(value), None


def check_rules(descriptor: EntityDescriptor, values: Dict[str, Any]) -> Optional[GridFailure]:
    """Range and paired-ordering business rules over the supplied values."""
    for rule in descriptor.range_rules:
        value = values.get(rule.field)
        if value is None:
            continue
        if (rule.minimum is not None and value < rule.minimum) or (
            rule.maximum is not None and value > rule.maximum
        ):
            message = rule.message or f"Field '{rule.field}' is out of range"
            return GridFailure(ErrorKind.VALIDATION_FAILED, message)

    for rule in descriptor.ordering_rules:
        high, low = values.get(rule.high), values.get(rule.low)
        if high is not None and low is not None and high < low:
            message = rule.message or f"'{rule.high}' must not be lower than '{rule.low}'"
            return GridFailure(ErrorKind.VALIDATION_FAILED, message)
    return None


class EntityWriteHandler:
    def __init__(self, descriptor: EntityDescriptor, storage: GridStorage, routing_key: Optional[str] = None):
        self.descriptor = descriptor
        self.storage = storage
        self.routing_key = routing_key

    def decode_key(self, row_id: Any) -> Result[Tuple[Any, ...]]:
        return identifiers.decode(row_id, self.descriptor.key_types)

    def _prepare(self, fields: Dict[str, Any], allowed: set) -> Result[Dict[str, Any]]:
        if not isinstance(fields, dict) or not fields:
            return Result.fail(ErrorKind.VALIDATION_FAILED, "No changes supplied")

        prepared = {}
        for name, raw in fields.items():
            if name not in allowed:
                logger.warning(f"Rejected write to non-editable field {self.descriptor.table}.{name!r}")
                return Result.fail(ErrorKind.VALIDATION_FAILED, f"Field '{name}' is not editable")
            value, failure = coerce_value(self.descriptor, name, raw)
            if failure is not None:
                return Result(failure=failure)
            prepared[name] = value

        failure = check_rules(self.descriptor, prepared)
        if failure is not None:
            return Result(failure=failure)
        return Result.success(prepared)

    def update(self, row_id: Any, changes: Dict[str, Any]) -> Result[Dict[str, Any]]:
        key = self.decode_key(row_id)
        if not key.ok:
            return key
        prepared = self._prepare(changes, set(self.descriptor.editable_fields))
        if not prepared.ok:
            return prepared
        return self.storage.update_row(self.descriptor, key.value, prepared.value, self.routing_key)

    def delete(self, row_id: Any) -> Result[int]:
        key = self.decode_key(row_id)
        if not key.ok:
            return key
        return self.storage.delete_row(self.descriptor, key.value, self.routing_key)

    def create(self, field_values: Dict[str, Any]) -> Result[Dict[str, Any]]:
        allowed = set(self.descriptor.editable_fields)
        if not self.descriptor.generated_key:
            allowed.update(self.descriptor.key_names)
            missing = [
                name for name in self.descriptor.key_names
                if not isinstance(field_values, dict) or field_values.get(name) is None
            ]
            if missing:
                return Result.fail(
                    ErrorKind.VALIDATION_FAILED,
                    f"Key field(s) required: {', '.join(missing)}",
                )
        prepared = self._prepare(field_values, allowed)
        if not prepared.ok:
            return prepared

        if not self.descriptor.generated_key:
            # The stored key must decode back from the identifier the row will carry
            key_values = []
            for component in self.descriptor.key:
                value = prepared.value[component.name]
                if component.type is int and isinstance(value, float) and value.is_integer():
                    value = int(value)
                key_values.append(value)
            try:
                token = identifiers.encode(key_values)
            except ValueError as e:
                return Result.fail(ErrorKind.INVALID_FORMAT, str(e))
            decoded = identifiers.decode(token, self.descriptor.key_types)
            if not decoded.ok:
                return decoded
            prepared.value.update(zip(self.descriptor.key_names, decoded.value))

        return self.storage.insert_row(self.descriptor, prepared.value, self.routing_key)
