"""
Stored procedure registry.

The registry is the only source of dispatchable procedure names. It is
provisioned out of band (an admin inserts rows into
"StoredProcedureRegistry") and is read-only while serving requests.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from cachetools import TTLCache
from pydantic import BaseModel, Field
from sqlalchemy import exc, text

from grid_api.config import REGISTRY_TTL_SECONDS
from grid_api.database import get_db_engine

logger = logging.getLogger(__name__)


class ProcedureRegistration(BaseModel):
    """One registry row."""
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True
    requires_auth: bool = True
    allowed_roles: List[str] = Field(default_factory=list)
    database_routing_key: Optional[str] = None
    default_page_size: int = Field(default=15, gt=0)
    max_page_size: int = Field(default=1000, gt=0)


def parse_allowed_roles(raw: Any) -> List[str]:
    """
    Parse the AllowedRoles column (a JSON array stored as text).

    Anything malformed yields an empty list, which denies access to an
    auth-required procedure.
    """
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning(f"Malformed AllowedRoles value: {raw!r}")
            return []
    if not isinstance(value, list):
        if value is not None:
            logger.warning(f"AllowedRoles is not a list: {raw!r}")
        return []
    return [role for role in value if isinstance(role, str) and role.strip()]


class DatabaseRegistryLoader:
    """Reads every registration from the central database."""

    QUERY = text("""
        SELECT
            "ProcedureName", "DisplayName", "Description", "Category",
            "IsActive", "RequiresAuth", "AllowedRoles", "DatabaseName",
            "DefaultPageSize", "MaxPageSize"
        FROM "StoredProcedureRegistry"
    """)

    def __init__(self, routing_key: Optional[str] = None):
        self.routing_key = routing_key

    def __call__(self) -> List[ProcedureRegistration]:
        engine = get_db_engine(self.routing_key)
        try:
            with engine.connect() as conn:
                rows = conn.execute(self.QUERY).mappings().all()
        except exc.SQLAlchemyError as e:
            logger.critical(f"Failed to load stored procedure registry: {str(e)}")
            raise RuntimeError("Could not load stored procedure registry") from e

        registrations = []
        for row in rows:
            registrations.append(ProcedureRegistration(
                name=row["ProcedureName"],
                display_name=row["DisplayName"],
                description=row["Description"],
                category=row["Category"],
                is_active=bool(row["IsActive"]),
                requires_auth=bool(row["RequiresAuth"]),
                allowed_roles=parse_allowed_roles(row["AllowedRoles"]),
                database_routing_key=row["DatabaseName"],
                default_page_size=row["DefaultPageSize"] or 15,
                max_page_size=row["MaxPageSize"] or 1000,
            ))
        logger.info(f"Loaded {len(registrations)} stored procedure registrations")
        return registrations


class StaticRegistryLoader:
    """Serves a fixed list of registrations."""

    def __init__(self, registrations: Iterable[ProcedureRegistration]):
        self.registrations = list(registrations)

    def __call__(self) -> List[ProcedureRegistration]:
        return list(self.registrations)


class ProcedureRegistry:
    """
    Read-mostly registry lookup with a TTL snapshot cache.

    The whole table is loaded at once and kept for ``ttl_seconds``;
    ``invalidate()`` forces the next lookup to reload.
    """

    def __init__(
        self,
        loader: Callable[[], List[ProcedureRegistration]],
        ttl_seconds: int = REGISTRY_TTL_SECONDS,
    ):
        self._loader = loader
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=max(ttl_seconds, 1))
        self._lock = threading.Lock()

    def _snapshot(self) -> Dict[str, ProcedureRegistration]:
        with self._lock:
            snapshot = self._cache.get("all")
            if snapshot is None:
                snapshot = {reg.name: reg for reg in self._loader()}
                self._cache["all"] = snapshot
            return snapshot

    def get(self, name: str) -> Optional[ProcedureRegistration]:
        if not name:
            return None
        return self._snapshot().get(name)

    def all(self) -> List[ProcedureRegistration]:
        return list(self._snapshot().values())

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Stored procedure registry cache invalidated")
