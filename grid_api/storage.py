"""
Generic SQL over entity descriptors.

Every identifier embedded here comes from a validated ``EntityDescriptor``;
every value is a bound parameter. Writes run inside ``engine.begin()`` so a
multi-field change commits whole or not at all.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import exc, text
from sqlalchemy.engine import Connection, Engine

from grid_api.database import get_db_engine, quote_identifier
from grid_api.entities import EntityDescriptor
from grid_api.errors import ErrorKind, GridFailure, Result
from grid_api.filters import Predicate
from grid_api.pagination import Window

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("statement timeout", "canceling statement", "57014", "timed out", "timeout expired")


class _AbortTransaction(Exception):
    """Raised inside a transaction block to force a rollback."""

    def __init__(self, failure: GridFailure):
        super().__init__(failure.message)
        self.failure = failure


def is_timeout(error: exc.SQLAlchemyError) -> bool:
    if isinstance(error, exc.TimeoutError):
        return True
    original = getattr(error, "orig", None)
    message = f"{error} {original or ''}".lower()
    code = getattr(original, "pgcode", None) or getattr(original, "sqlstate", None)
    return code == "57014" or any(marker in message for marker in _TIMEOUT_MARKERS)


def map_storage_error(error: exc.SQLAlchemyError, action: str) -> GridFailure:
    """Translate a storage exception into the error taxonomy."""
    if isinstance(error, exc.IntegrityError):
        logger.warning(f"Constraint violation during {action}: {error.orig}")
        return GridFailure(
            ErrorKind.CONSTRAINT_VIOLATION,
            f"The {action} violates a uniqueness or reference constraint",
        )
    if is_timeout(error):
        logger.error(f"Query timed out during {action}: {str(error)}")
        return GridFailure(ErrorKind.TIMED_OUT, f"The {action} timed out")
    logger.error(f"Database error during {action}: {str(error)}", exc_info=True)
    return GridFailure(ErrorKind.INTERNAL, "Database error occurred", "DB_ERROR")


def _key_clause(descriptor: EntityDescriptor, key_values: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    conditions = []
    params = {}
    for index, (name, value) in enumerate(zip(descriptor.key_names, key_values)):
        conditions.append(f"{quote_identifier(name)} = :k{index}")
        params[f"k{index}"] = value
    return " AND ".join(conditions), params


class GridStorage:
    """Count, fetch and row-level writes for any described entity."""

    def __init__(self, engine_resolver: Callable[[Optional[str]], Engine] = get_db_engine):
        self._engine_for = engine_resolver

    def _select_list(self, descriptor: EntityDescriptor) -> str:
        return ", ".join(quote_identifier(name) for name in descriptor.columns)

    def read_page(
        self,
        descriptor: EntityDescriptor,
        predicate: Predicate,
        order_by: str,
        choose_window: Callable[[int], Window],
        routing_key: Optional[str] = None,
    ) -> Result[Tuple[int, List[Dict[str, Any]]]]:
        """
        Count and fetch on one connection with the same predicate.

        ``choose_window`` receives the filtered total and returns the window
        to fetch, so the pagination mode can depend on the count.
        """
        table = quote_identifier(descriptor.table)
        where = predicate.where_clause()
        count_query = text(f"SELECT COUNT(*) FROM {table} {where}")

        try:
            engine = self._engine_for(routing_key)
            with engine.connect() as conn:
                total = conn.execute(count_query, predicate.params).scalar() or 0
                window = choose_window(total)

                params = dict(predicate.params)
                paging = ""
                if window.limit is not None:
                    paging = "LIMIT :_limit OFFSET :_offset"
                    params.update(_limit=window.limit, _offset=window.offset)

                data_query = text(
                    f"SELECT {self._select_list(descriptor)} FROM {table} "
                    f"{where} {order_by} {paging}"
                )
                rows = [dict(row) for row in conn.execute(data_query, params).mappings()]
        except exc.SQLAlchemyError as e:
            return Result(failure=map_storage_error(e, f"{descriptor.label} query"))

        logger.debug(
            f"Fetched {len(rows)} of {total} rows from {descriptor.table} "
            f"(offset={window.offset}, limit={window.limit})"
        )
        return Result.success((int(total), rows))

    def _fetch_row(self, conn: Connection, descriptor: EntityDescriptor, key_values: Sequence[Any]) -> Optional[Dict[str, Any]]:
        clause, params = _key_clause(descriptor, key_values)
        query = text(
            f"SELECT {self._select_list(descriptor)} "
            f"FROM {quote_identifier(descriptor.table)} WHERE {clause}"
        )
        row = conn.execute(query, params).mappings().first()
        return dict(row) if row is not None else None

    def update_row(
        self,
        descriptor: EntityDescriptor,
        key_values: Sequence[Any],
        changes: Dict[str, Any],
        routing_key: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """Apply ``changes`` to exactly one row. Returns the updated row."""
        assignments = []
        params: Dict[str, Any] = {}
        for index, (name, value) in enumerate(changes.items()):
            assignments.append(f"{quote_identifier(name)} = :v{index}")
            params[f"v{index}"] = value
        clause, key_params = _key_clause(descriptor, key_values)
        params.update(key_params)

        statement = text(
            f"UPDATE {quote_identifier(descriptor.table)} "
            f"SET {', '.join(assignments)} WHERE {clause}"
        )
        try:
            engine = self._engine_for(routing_key)
            with engine.begin() as conn:
                affected = conn.execute(statement, params).rowcount
                if affected == 0:
                    raise _AbortTransaction(GridFailure(
                        ErrorKind.NOT_FOUND, f"{descriptor.label} not found",
                    ))
                if affected > 1:
                    logger.error(
                        f"Update on {descriptor.table} matched {affected} rows; "
                        f"key declaration is not unique"
                    )
                    raise _AbortTransaction(GridFailure(
                        ErrorKind.INTERNAL, "Update matched more than one row",
                    ))
                updated = self._fetch_row(conn, descriptor, key_values)
        except _AbortTransaction as abort:
            return Result(failure=abort.failure)
        except exc.SQLAlchemyError as e:
            return Result(failure=map_storage_error(e, f"{descriptor.label} update"))
        return Result.success(updated)

    def delete_row(
        self,
        descriptor: EntityDescriptor,
        key_values: Sequence[Any],
        routing_key: Optional[str] = None,
    ) -> Result[int]:
        clause, params = _key_clause(descriptor, key_values)
        statement = text(f"DELETE FROM {quote_identifier(descriptor.table)} WHERE {clause}")
        try:
            engine = self._engine_for(routing_key)
            with engine.begin() as conn:
                affected = conn.execute(statement, params).rowcount
                if affected == 0:
                    raise _AbortTransaction(GridFailure(
                        ErrorKind.NOT_FOUND, f"{descriptor.label} not found",
                    ))
                if affected > 1:
                    raise _AbortTransaction(GridFailure(
                        ErrorKind.INTERNAL, "Delete matched more than one row",
                    ))
        except _AbortTransaction as abort:
            return Result(failure=abort.failure)
        except exc.SQLAlchemyError as e:
            return Result(failure=map_storage_error(e, f"{descriptor.label} delete"))
        return Result.success(affected)

    def insert_row(
        self,
        descriptor: EntityDescriptor,
        values: Dict[str, Any],
        routing_key: Optional[str] = None,
    ) -> Result[Dict[str, Any]]:
        """Insert one row and return it as stored."""
        names = list(values)
        columns = ", ".join(quote_identifier(name) for name in names)
        placeholders = ", ".join(f":v{index}" for index in range(len(names)))
        params = {f"v{index}": values[name] for index, name in enumerate(names)}
        table = quote_identifier(descriptor.table)

        try:
            engine = self._engine_for(routing_key)
            generated = descriptor.generated_key
            returning = ""
            if generated and engine.dialect.insert_returning:
                returning = " RETURNING " + ", ".join(
                    quote_identifier(name) for name in descriptor.key_names
                )
            statement = text(f"INSERT INTO {table} ({columns}) VALUES ({placeholders}){returning}")

            with engine.begin() as conn:
                result = conn.execute(statement, params)
                if not generated:
                    key_values = [values[name] for name in descriptor.key_names]
                elif returning:
                    key_values = list(result.one())
                else:
                    key_values = [result.lastrowid]
                created = self._fetch_row(conn, descriptor, key_values)
        except exc.SQLAlchemyError as e:
            return Result(failure=map_storage_error(e, f"{descriptor.label} insert"))
        return Result.success(created)
