"""
Per-entity descriptors.

A descriptor is everything the generic SQL layer needs to serve one grid:
the table, the declared column types, the key components and the business
rules applied to writes. Descriptors are built from the plain-dict
declarations in ``config.ENTITY_REGISTRY``.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Type

from grid_api.database import validate_identifier

TEXT = "text"
NUMBER = "number"
COLUMN_TYPES = (TEXT, NUMBER)

_KEY_TYPES: Dict[str, Type] = {
    "int": int,
    "str": str,
    "float": float,
    "decimal": Decimal,
}


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str = TEXT
    header_name: Optional[str] = None
    width: Optional[int] = None
    sortable: bool = True
    filterable: bool = True
    editable: bool = False
    searchable: bool = False
    cell_editor: Optional[str] = None
    column_group: Optional[str] = None

    def definition(self) -> Dict[str, Any]:
        """Column metadata entry returned with every grid result."""
        data: Dict[str, Any] = {
            "field": self.name,
            "headerName": self.header_name or self.name,
            "type": self.type,
            "width": self.width,
            "sortable": self.sortable,
            "filter": self.filterable,
            "editable": self.editable,
        }
        if self.cell_editor:
            data["cellEditor"] = self.cell_editor
        if self.column_group:
            data["columnGroup"] = self.column_group
        return data


@dataclass(frozen=True)
class KeyComponent:
    name: str
    type: Type = int


@dataclass(frozen=True)
class RangeRule:
    field: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class OrderingRule:
    """``high`` must not be lower than ``low`` when both are supplied."""

    high: str
    low: str
    message: Optional[str] = None


@dataclass(frozen=True)
class EntityDescriptor:
    name: str
    table: str
    columns: Dict[str, ColumnSpec]
    key: Tuple[KeyComponent, ...]
    range_rules: Tuple[RangeRule, ...] = ()
    ordering_rules: Tuple[OrderingRule, ...] = ()
    id_field: str = "Id"
    generated_key: bool = False
    row_label: Optional[str] = None

    @property
    def label(self) -> str:
        return self.row_label or self.name

    @property
    def key_types(self) -> List[Type]:
        return [component.type for component in self.key]

    @property
    def key_names(self) -> List[str]:
        return [component.name for component in self.key]

    @property
    def editable_fields(self) -> List[str]:
        return [name for name, col in self.columns.items() if col.editable]

    @property
    def searchable_fields(self) -> List[str]:
        return [name for name, col in self.columns.items() if col.searchable]

    def column_definitions(self) -> List[Dict[str, Any]]:
        return [col.definition() for col in self.columns.values()]


def build_descriptor(name: str, spec: Dict[str, Any]) -> EntityDescriptor:
    """
    Build a descriptor from its registry declaration.

    Every identifier is validated here, once, so that the SQL layer only ever
    quotes names that came from this declaration.

    Raises:
        ValueError: Invalid identifier, unknown column type or key type
    """
    table = spec["table"]
    if not validate_identifier(table):
        raise ValueError(f"Invalid table name in registry: {table}")

    columns: Dict[str, ColumnSpec] = {}
    for col_name, col in spec["columns"].items():
        if not validate_identifier(col_name):
            raise ValueError(f"Invalid column name in registry: {col_name}")
        col_type = col.get("type", TEXT)
        if col_type not in COLUMN_TYPES:
            raise ValueError(f"Unknown column type '{col_type}' for {table}.{col_name}")
        columns[col_name] = ColumnSpec(
            name=col_name,
            type=col_type,
            header_name=col.get("header"),
            width=col.get("width"),
            sortable=col.get("sortable", True),
            filterable=col.get("filter", True),
            editable=col.get("editable", False),
            searchable=col.get("searchable", False),
            cell_editor=col.get("cell_editor"),
            column_group=col.get("group"),
        )

    key = []
    for key_name, key_type in spec["key"]:
        if key_name not in columns:
            raise ValueError(f"Key column '{key_name}' is not declared for {table}")
        if key_type not in _KEY_TYPES:
            raise ValueError(f"Unknown key type '{key_type}' for {table}.{key_name}")
        key.append(KeyComponent(key_name, _KEY_TYPES[key_type]))
    if not key:
        raise ValueError(f"Entity '{name}' must declare at least one key column")

    range_rules = tuple(
        RangeRule(r["field"], r.get("min"), r.get("max"), r.get("message"))
        for r in spec.get("ranges", [])
    )
    ordering_rules = tuple(
        OrderingRule(r["high"], r["low"], r.get("message"))
        for r in spec.get("orderings", [])
    )
    for rule_field in [r.field for r in range_rules] + [
        f for r in ordering_rules for f in (r.high, r.low)
    ]:
        if rule_field not in columns:
            raise ValueError(f"Rule references undeclared column {table}.{rule_field}")

    return EntityDescriptor(
        name=name,
        table=table,
        columns=columns,
        key=tuple(key),
        range_rules=range_rules,
        ordering_rules=ordering_rules,
        generated_key=spec.get("generated_key", False),
        row_label=spec.get("label"),
    )


@dataclass
class EntityCatalog:
    """Maps grid read procedure names to their entity descriptors."""

    by_procedure: Dict[str, EntityDescriptor] = field(default_factory=dict)

    @classmethod
    def from_config(cls, registry: Dict[str, Dict[str, Any]]) -> "EntityCatalog":
        catalog = cls()
        for entity_name, spec in registry.items():
            descriptor = build_descriptor(entity_name, spec)
            for procedure in spec["procedures"]:
                catalog.by_procedure[procedure] = descriptor
        return catalog

    def get(self, procedure_name: str) -> Optional[EntityDescriptor]:
        return self.by_procedure.get(procedure_name)
