import logging
import threading
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from grid_api.config import (
    ADMIN_ROLE,
    CORS_ORIGINS,
    ENTITY_REGISTRY,
    RATE_LIMIT_ENABLED,
    READ_RATE_LIMIT,
    WRITE_RATE_LIMIT,
)
from grid_api.database import dispose_engines, init_db_engine
from grid_api.entities import EntityCatalog
from grid_api.errors import ErrorKind, Result
from grid_api.executor import DynamicProcedureExecutor
from grid_api.metadata import ColumnMetadataStore, DatabaseColumnMetadataLoader
from grid_api.models import GridDataRequest, RowCreateRequest, RowDeleteRequest, RowUpdateRequest
from grid_api.pagination import PaginationSelector
from grid_api.registry import DatabaseRegistryLoader, ProcedureRegistry
from grid_api.security import Caller, get_current_caller, get_user_id_from_token

VERSION = "1.0.0"

# Initialize the API App
app = FastAPI(
    title="Dynamic Grid API",
    description="Registry-driven grid data service: paged reads and row writes",
    version=VERSION,
)
logger = logging.getLogger("uvicorn")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Rate Limiter
def get_user_identifier(request: Request) -> str:
    """Extract user ID from JWT for rate limiting."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:]
        user_id = get_user_id_from_token(token)
        if user_id != "invalid_user":
            return f"user:{user_id}"

    client_ip = request.client.host if request.client else "unknown_ip"
    return f"ip:{client_ip}"


limiter = Limiter(key_func=get_user_identifier, enabled=RATE_LIMIT_ENABLED)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    logger.warning(f"Rejected malformed request to {request.url.path}: {message}")
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": message, "errorCode": ErrorKind.VALIDATION_FAILED.value},
    )


# Executor wiring
_executor: Optional[DynamicProcedureExecutor] = None
_executor_lock = threading.Lock()


def build_executor() -> DynamicProcedureExecutor:
    """Assemble the executor from the database-backed registry and the entity catalog."""
    return DynamicProcedureExecutor(
        registry=ProcedureRegistry(DatabaseRegistryLoader()),
        catalog=EntityCatalog.from_config(ENTITY_REGISTRY),
        column_metadata=ColumnMetadataStore(DatabaseColumnMetadataLoader()),
        selector=PaginationSelector(),
    )


def get_executor() -> DynamicProcedureExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = build_executor()
        return _executor


def _respond(result: Result) -> JSONResponse:
    if not result.ok:
        failure = result.failure
        return JSONResponse(status_code=failure.kind.status_code, content=failure.to_body())
    return JSONResponse(status_code=200, content=jsonable_encoder(result.value.to_wire()))


def _internal_error(action: str, e: Exception) -> JSONResponse:
    logger.error(f"Unexpected error during {action}: {str(e)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": f"Internal server error during {action}",
            "errorCode": ErrorKind.INTERNAL.value,
        },
    )


# Lifecycle Events
@app.on_event("startup")
async def startup_event():
    """Initialize resources before serving requests."""
    init_db_engine()
    get_executor()
    logger.info("Application startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Release resources during shutdown."""
    dispose_engines()
    logger.info("Clean shutdown complete")


# Health Check Endpoint
@app.get("/")
@limiter.limit(READ_RATE_LIMIT)
def health_check(request: Request):
    """Liveness probe endpoint."""
    return {
        "status": "healthy",
        "service": "dynamic-grid",
        "version": VERSION,
        "features": ["grid_read", "row_update", "row_delete", "row_create", "jwt_auth", "rate_limiting"],
    }


# Grid read
@app.post("/api/DynamicGrid/execute")
@limiter.limit(READ_RATE_LIMIT)
def execute_grid(
    request: Request,
    grid_request: GridDataRequest,
    x_grid_session: Optional[str] = Header(default=None),
    caller: Caller = Depends(get_current_caller),
    executor: DynamicProcedureExecutor = Depends(get_executor),
):
    """
    Return one page of grid rows plus column definitions.

    The optional ``X-Grid-Session`` header keys the pagination mode decision;
    without it every request is decided on its own count.
    """
    logger.info(
        f"Grid read by user={caller.user_id} | procedure={grid_request.procedure_name} | "
        f"page={grid_request.page_number}"
    )
    try:
        return _respond(executor.execute_read(grid_request, caller.roles, x_grid_session))
    except Exception as e:
        return _internal_error("grid read", e)


# Row writes
@app.post("/api/DynamicGrid/update-row")
@limiter.limit(WRITE_RATE_LIMIT)
def update_row(
    request: Request,
    update_request: RowUpdateRequest,
    caller: Caller = Depends(get_current_caller),
    executor: DynamicProcedureExecutor = Depends(get_executor),
):
    try:
        return _respond(executor.update_row(update_request, caller.roles, caller.user_id))
    except Exception as e:
        return _internal_error("row update", e)


@app.post("/api/DynamicGrid/delete-row")
@limiter.limit(WRITE_RATE_LIMIT)
def delete_row(
    request: Request,
    delete_request: RowDeleteRequest,
    caller: Caller = Depends(get_current_caller),
    executor: DynamicProcedureExecutor = Depends(get_executor),
):
    try:
        return _respond(executor.delete_row(delete_request, caller.roles, caller.user_id))
    except Exception as e:
        return _internal_error("row delete", e)


@app.post("/api/DynamicGrid/create-row")
@limiter.limit(WRITE_RATE_LIMIT)
def create_row(
    request: Request,
    create_request: RowCreateRequest,
    caller: Caller = Depends(get_current_caller),
    executor: DynamicProcedureExecutor = Depends(get_executor),
):
    try:
        return _respond(executor.create_row(create_request, caller.roles, caller.user_id))
    except Exception as e:
        return _internal_error("row create", e)


# Registry
@app.get("/api/DynamicGrid/available-procedures")
@limiter.limit(READ_RATE_LIMIT)
def list_procedures(
    request: Request,
    caller: Caller = Depends(get_current_caller),
    executor: DynamicProcedureExecutor = Depends(get_executor),
):
    """List the active procedures the caller may use."""
    try:
        procedures = [info.to_wire() for info in executor.available_procedures(caller.roles)]
    except Exception as e:
        return _internal_error("procedure listing", e)
    return {"procedures": procedures, "count": len(procedures)}


@app.post("/api/DynamicGrid/registry/refresh")
@limiter.limit(WRITE_RATE_LIMIT)
def refresh_registry(
    request: Request,
    caller: Caller = Depends(get_current_caller),
    executor: DynamicProcedureExecutor = Depends(get_executor),
):
    """Drop cached registry and column metadata so the next request reloads them."""
    if ADMIN_ROLE not in caller.roles:
        logger.warning(f"Registry refresh denied for user={caller.user_id}")
        return JSONResponse(
            status_code=ErrorKind.UNAUTHORIZED.status_code,
            content={
                "success": False,
                "message": "Registry refresh requires the administrator role",
                "errorCode": ErrorKind.UNAUTHORIZED.value,
            },
        )
    executor.refresh()
    logger.info(f"Registry cache refreshed by user={caller.user_id}")
    return {"success": True, "message": "Registry cache cleared"}
