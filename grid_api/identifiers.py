"""
Composite identifier codec.

A multi-column primary key crosses the generic dispatch layer as one plain
string: the canonical text of each component joined with ``DELIMITER``.
Only the entity write handler knows the component types and decodes it.

There is no escaping scheme. A component whose text contains the delimiter
cannot be encoded.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence, Tuple, Type

from grid_api.errors import ErrorKind, Result

logger = logging.getLogger(__name__)

DELIMITER = "_"


def _canonical_text(value: Any) -> str:
    if isinstance(value, bool):
        raise ValueError("Boolean key components are not supported")
    return str(value)


def encode(components: Sequence[Any], delimiter: str = DELIMITER) -> str:
    """
    Join key components into a single identifier token.

    Raises:
        ValueError: No components, or a component contains the delimiter
    """
    if not components:
        raise ValueError("At least one key component is required")

    parts = []
    for value in components:
        if value is None:
            raise ValueError("Key components cannot be null")
        text = _canonical_text(value)
        if delimiter in text:
            raise ValueError(
                f"Key component {text!r} contains the delimiter {delimiter!r}"
            )
        parts.append(text)
    return delimiter.join(parts)


def _convert(text: str, expected: Type) -> Any:
    if expected is int:
        return int(text.strip())
    if expected is float:
        return float(text)
    if expected is Decimal:
        try:
            return Decimal(text)
        except InvalidOperation as e:
            raise ValueError(str(e)) from e
    if expected is str:
        return text
    return expected(text)


def decode(
    token: Any,
    expected_types: Sequence[Type],
    delimiter: str = DELIMITER,
) -> Result[Tuple[Any, ...]]:
    """
    Split a token into typed key components.

    Args:
        token: Identifier token (scalar ids may arrive as numbers)
        expected_types: One Python type per component, in key order

    Returns:
        Result holding the component tuple, or an INVALID_FORMAT failure when
        the part count does not match, or INVALID_TYPE when a part fails
        conversion.
    """
    if token is None or isinstance(token, bool):
        return Result.fail(ErrorKind.INVALID_FORMAT, "Row identifier is required")

    text = str(token)
    if text == "":
        return Result.fail(ErrorKind.INVALID_FORMAT, "Row identifier is required")

    parts = text.split(delimiter)
    if len(parts) != len(expected_types):
        return Result.fail(
            ErrorKind.INVALID_FORMAT,
            f"Invalid identifier format. Expected {len(expected_types)} "
            f"part(s) separated by '{delimiter}', got {len(parts)}",
        )

    values = []
    for position, (part, expected) in enumerate(zip(parts, expected_types), start=1):
        try:
            values.append(_convert(part, expected))
        except (TypeError, ValueError):
            logger.debug(f"Identifier part {position} ({part!r}) is not {expected.__name__}")
            return Result.fail(
                ErrorKind.INVALID_TYPE,
                f"Invalid identifier value at position {position}: "
                f"expected {expected.__name__}",
            )
    return Result.success(tuple(values))
