"""
Dynamic procedure executor.

Composes the registry gate, filter translation, pagination selection, name
derivation and the entity write handlers into the four grid operations.
Nothing here embeds a caller-supplied string into SQL: names are resolved
through the registry and entity catalog, values through bound parameters.
"""

import json
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from grid_api import identifiers
from grid_api.authorization import AccessDecision, authorize, available_procedures, check_access
from grid_api.entities import EntityCatalog, EntityDescriptor
from grid_api.errors import ErrorKind, Result
from grid_api.filters import (
    filter_column_types,
    order_by_clause,
    parse_filter_json,
    search_predicate,
    translate_filters,
)
from grid_api.handlers import EntityWriteHandler
from grid_api.metadata import ColumnMetadataStore, StaticColumnMetadataLoader
from grid_api.models import (
    GridDataRequest,
    GridDataResponse,
    ProcedureInfo,
    RowCreateRequest,
    RowCreateResponse,
    RowDeleteRequest,
    RowDeleteResponse,
    RowUpdateRequest,
    RowUpdateResponse,
)
from grid_api.naming import derive_write_procedures
from grid_api.pagination import PaginationMode, PaginationSelector, Window, resolve_window
from grid_api.registry import ProcedureRegistration, ProcedureRegistry
from grid_api.storage import GridStorage

logger = logging.getLogger(__name__)

UPDATE, DELETE, INSERT = "update", "delete", "insert"

_UNSUPPORTED_CODES = {
    UPDATE: "UPDATE_NOT_SUPPORTED",
    DELETE: "DELETE_NOT_SUPPORTED",
    INSERT: "INSERT_NOT_SUPPORTED",
}


class DynamicProcedureExecutor:
    def __init__(
        self,
        registry: ProcedureRegistry,
        catalog: EntityCatalog,
        storage: Optional[GridStorage] = None,
        column_metadata: Optional[ColumnMetadataStore] = None,
        selector: Optional[PaginationSelector] = None,
    ):
        self.registry = registry
        self.catalog = catalog
        self.storage = storage or GridStorage()
        self.column_metadata = column_metadata or ColumnMetadataStore(StaticColumnMetadataLoader())
        self.selector = selector or PaginationSelector()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def execute_read(
        self,
        request: GridDataRequest,
        caller_roles: Iterable[str],
        session_id: Optional[str] = None,
    ) -> Result[GridDataResponse]:
        name = request.procedure_name
        decision = check_access(self.registry, name, caller_roles)
        if not decision.allowed:
            logger.warning(f"Grid access denied: procedure={name} reason={decision.reason.value}")
            return Result(failure=decision.failure())

        registration = decision.registration
        descriptor = self.catalog.get(name)
        if descriptor is None:
            logger.error(f"Procedure {name} is registered but no grid entity is declared for it")
            return Result.fail(ErrorKind.NOT_FOUND, f"Procedure not found: {name}")

        page_size = min(request.page_size or registration.default_page_size, registration.max_page_size)

        filter_model = request.filter_model
        if filter_model is None and request.filter_json:
            parsed = parse_filter_json(request.filter_json)
            if not parsed.ok:
                return parsed
            filter_model = parsed.value

        translated = translate_filters(filter_model, filter_column_types(descriptor))
        if not translated.ok:
            return translated
        predicate = translated.value
        predicate.extend(search_predicate(request.search_term, descriptor))
        order_by = order_by_clause(request.sort_column, request.sort_direction, descriptor)
        signature = json.dumps([order_by, predicate.signature()])

        explicit_rows = request.start_row is not None and request.end_row is not None
        outcome: Dict[str, Any] = {"page_number": request.page_number}

        def choose_window(total: int) -> Window:
            mode, query_changed = self.selector.observe(session_id, name, total, signature)
            outcome["mode"] = mode
            if mode is PaginationMode.ALL_LOADED:
                return Window(offset=0, limit=None)
            if query_changed and not explicit_rows and outcome["page_number"] != 1:
                logger.debug(f"Sort/filter changed for session={session_id}; resetting to page 1")
                outcome["page_number"] = 1
            window = resolve_window(
                outcome["page_number"], page_size, request.start_row, request.end_row
            )
            return Window(window.offset, min(window.limit, registration.max_page_size))

        fetched = self.storage.read_page(
            descriptor, predicate, order_by, choose_window, registration.database_routing_key
        )
        if not fetched.ok:
            return fetched
        total, rows = fetched.value

        response = GridDataResponse(
            rows=[self._with_row_id(descriptor, row) for row in rows],
            columns=self.column_metadata.augment(name, descriptor.column_definitions()),
            total_count=total,
            page_number=outcome["page_number"],
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if page_size > 0 else 0,
            last_row=total,
            pagination_mode=outcome["mode"].value,
        )
        logger.info(
            f"Grid {name}: {len(rows)}/{total} rows, mode={response.pagination_mode}, "
            f"page={response.page_number}"
        )
        return Result.success(response)

    def _with_row_id(self, descriptor: EntityDescriptor, row: Dict[str, Any]) -> Dict[str, Any]:
        if descriptor.id_field in descriptor.columns:
            return row
        try:
            row[descriptor.id_field] = identifiers.encode([row.get(key) for key in descriptor.key_names])
        except ValueError as e:
            # Rows whose key cannot be encoded stay readable but are not addressable for writes
            logger.warning(f"Row in {descriptor.table} has no identifier: {e}")
            row[descriptor.id_field] = None
        return row

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _resolve_writer(
        self,
        procedure_name: str,
        caller_roles: Iterable[str],
        action: str,
    ) -> Result[EntityWriteHandler]:
        roles = list(caller_roles or [])
        decision = check_access(self.registry, procedure_name, roles)
        if not decision.allowed:
            logger.warning(
                f"Grid {action} denied: procedure={procedure_name} reason={decision.reason.value}"
            )
            return Result(failure=decision.failure())

        unsupported = Result.fail(
            ErrorKind.UNSUPPORTED,
            f"{action.capitalize()} not supported for this grid",
            _UNSUPPORTED_CODES[action],
        )
        descriptor = self.catalog.get(procedure_name)
        names = derive_write_procedures(procedure_name)
        if descriptor is None or names is None:
            return unsupported

        target_name = getattr(names, action)
        target = self.registry.get(target_name)
        if target is None or not target.is_active:
            logger.info(f"{action.capitalize()} procedure {target_name} is not registered")
            return unsupported

        target_decision: AccessDecision = authorize(target, roles)
        if not target_decision.allowed:
            logger.warning(f"Access denied to {action} procedure {target_name}")
            return Result(failure=target_decision.failure())

        routing_key = target.database_routing_key or decision.registration.database_routing_key
        logger.info(f"Dispatching {action} for {procedure_name} via {target_name}")
        return Result.success(EntityWriteHandler(descriptor, self.storage, routing_key))

    def update_row(
        self,
        request: RowUpdateRequest,
        caller_roles: Iterable[str],
        user_id: Optional[str] = None,
    ) -> Result[RowUpdateResponse]:
        logger.info(
            f"Update requested: procedure={request.procedure_name} "
            f"row={request.row_id} user={user_id}"
        )
        writer = self._resolve_writer(request.procedure_name, caller_roles, UPDATE)
        if not writer.ok:
            return writer
        handler = writer.value

        updated = handler.update(str(request.row_id), request.changes)
        if not updated.ok:
            return updated
        if updated.value is None:
            return _row_not_reread(handler.descriptor, UPDATE)
        return Result.success(RowUpdateResponse(
            success=True,
            message=f"{handler.descriptor.label} updated successfully",
            rows_affected=1,
            updated_row=self._with_row_id(handler.descriptor, updated.value),
        ))

    def delete_row(
        self,
        request: RowDeleteRequest,
        caller_roles: Iterable[str],
        user_id: Optional[str] = None,
    ) -> Result[RowDeleteResponse]:
        logger.info(
            f"Delete requested: procedure={request.procedure_name} "
            f"row={request.row_id} user={user_id}"
        )
        writer = self._resolve_writer(request.procedure_name, caller_roles, DELETE)
        if not writer.ok:
            return writer
        handler = writer.value

        deleted = handler.delete(str(request.row_id))
        if not deleted.ok:
            return deleted
        return Result.success(RowDeleteResponse(
            success=True,
            message=f"{handler.descriptor.label} deleted successfully",
            rows_affected=deleted.value,
        ))

    def create_row(
        self,
        request: RowCreateRequest,
        caller_roles: Iterable[str],
        user_id: Optional[str] = None,
    ) -> Result[RowCreateResponse]:
        logger.info(f"Create requested: procedure={request.procedure_name} user={user_id}")
        writer = self._resolve_writer(request.procedure_name, caller_roles, INSERT)
        if not writer.ok:
            return writer
        handler = writer.value

        created = handler.create(request.field_values)
        if not created.ok:
            return created
        if created.value is None:
            return _row_not_reread(handler.descriptor, INSERT)
        return Result.success(RowCreateResponse(
            success=True,
            message=f"{handler.descriptor.label} created successfully",
            rows_affected=1,
            created_row=self._with_row_id(handler.descriptor, created.value),
        ))

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def available_procedures(self, caller_roles: Iterable[str]) -> List[ProcedureInfo]:
        return [_procedure_info(reg) for reg in available_procedures(self.registry, caller_roles)]

    def refresh(self) -> None:
        self.registry.invalidate()
        self.column_metadata.invalidate()
        self.selector.reset()


def _row_not_reread(descriptor: EntityDescriptor, action: str) -> Result:
    logger.error(f"{action.capitalize()} on {descriptor.table} succeeded but the row could not be read back")
    return Result.fail(ErrorKind.INTERNAL, f"{descriptor.label} {action} could not be confirmed")


def _procedure_info(reg: ProcedureRegistration) -> ProcedureInfo:
    return ProcedureInfo(
        procedure_name=reg.name,
        display_name=reg.display_name,
        description=reg.description,
        category=reg.category,
        is_active=reg.is_active,
        requires_auth=reg.requires_auth,
        allowed_roles=reg.allowed_roles,
        default_page_size=reg.default_page_size,
        max_page_size=reg.max_page_size,
    )
