"""
Column augmentation: dropdown and link configuration registered per
(procedure, column) in the "ColumnMetadata" table, merged into the column
definitions of every grid result by field name.
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from cachetools import TTLCache
from pydantic import BaseModel
from sqlalchemy import exc, text

from grid_api.config import REGISTRY_TTL_SECONDS
from grid_api.database import get_db_engine

logger = logging.getLogger(__name__)


class ColumnAugmentation(BaseModel):
    procedure_name: str
    field: str
    dropdown_config: Optional[Dict[str, Any]] = None
    link_config: Optional[Dict[str, Any]] = None


def _json_or_none(raw: Any, what: str) -> Any:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring malformed {what}: {raw!r}")
        return None


class DatabaseColumnMetadataLoader:
    QUERY = text("""
        SELECT
            "ProcedureName", "ColumnName", "CellEditor", "DropdownType",
            "StaticValuesJson", "MasterTable", "ValueField", "LabelField",
            "DependsOnJson", "LinkConfig"
        FROM "ColumnMetadata"
        WHERE "IsActive" = true
    """)

    def __init__(self, routing_key: Optional[str] = None):
        self.routing_key = routing_key

    def __call__(self) -> List[ColumnAugmentation]:
        engine = get_db_engine(self.routing_key)
        try:
            with engine.connect() as conn:
                rows = conn.execute(self.QUERY).mappings().all()
        except exc.SQLAlchemyError as e:
            logger.critical(f"Failed to load column metadata: {str(e)}")
            raise RuntimeError("Could not load column metadata") from e

        augmentations = []
        for row in rows:
            dropdown = None
            if row["CellEditor"] == "dropdown":
                dropdown = {
                    "type": row["DropdownType"],
                    "staticValues": _json_or_none(row["StaticValuesJson"], "StaticValuesJson"),
                    "masterTable": row["MasterTable"],
                    "valueField": row["ValueField"],
                    "labelField": row["LabelField"],
                    "dependsOn": _json_or_none(row["DependsOnJson"], "DependsOnJson"),
                }
            link = _json_or_none(row["LinkConfig"], "LinkConfig")
            if dropdown is None and link is None:
                continue
            augmentations.append(ColumnAugmentation(
                procedure_name=row["ProcedureName"],
                field=row["ColumnName"],
                dropdown_config=dropdown,
                link_config=link if isinstance(link, dict) else None,
            ))
        return augmentations


class StaticColumnMetadataLoader:
    def __init__(self, augmentations: Iterable[ColumnAugmentation] = ()):
        self.augmentations = list(augmentations)

    def __call__(self) -> List[ColumnAugmentation]:
        return list(self.augmentations)


class ColumnMetadataStore:
    """TTL-cached lookup of augmentations, keyed by procedure then field."""

    def __init__(
        self,
        loader: Callable[[], List[ColumnAugmentation]],
        ttl_seconds: int = REGISTRY_TTL_SECONDS,
    ):
        self._loader = loader
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=max(ttl_seconds, 1))
        self._lock = threading.Lock()

    def _snapshot(self) -> Dict[str, Dict[str, ColumnAugmentation]]:
        with self._lock:
            snapshot = self._cache.get("all")
            if snapshot is None:
                snapshot = {}
                for aug in self._loader():
                    snapshot.setdefault(aug.procedure_name, {})[aug.field] = aug
                self._cache["all"] = snapshot
            return snapshot

    def augment(self, procedure_name: str, columns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Return copies of ``columns`` with dropdown/link config merged in."""
        by_field = self._snapshot().get(procedure_name, {})
        merged = []
        for column in columns:
            column = dict(column)
            aug = by_field.get(column.get("field"))
            if aug is not None:
                if aug.dropdown_config is not None:
                    column["dropdownConfig"] = aug.dropdown_config
                if aug.link_config is not None:
                    column["linkConfig"] = aug.link_config
            merged.append(column)
        return merged

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
