"""
Derive companion write procedure names from a grid read procedure name.

    sp_Grid_Buses             -> sp_Grid_Update_Bus / sp_Grid_Delete_Bus
    sp_Grid_Example_Employees -> sp_Grid_Update_Employee / sp_Grid_Delete_Employee

Irregular plurals are not handled. A derived name that is not registered is
reported as unsupported by the caller, never guessed further.
"""

import re
from dataclasses import dataclass
from typing import Optional

GRID_MARKER = "_Grid_"

_SIBILANT_STEM = re.compile(r"(s|x|z|ch|sh)$", re.IGNORECASE)


@dataclass(frozen=True)
class WriteProcedureNames:
    entity: str
    update: str
    delete: str
    insert: str


def singularize(word: str) -> str:
    """Fixed-rule singularization of the trailing entity token."""
    lower = word.lower()
    if lower.endswith("es") and _SIBILANT_STEM.search(word[:-2]):
        return word[:-2]
    if lower.endswith("s") and not lower.endswith("ss"):
        return word[:-1]
    return word


def derive_write_procedures(read_procedure: str) -> Optional[WriteProcedureNames]:
    """
    Returns None when the name does not follow ``<prefix>_Grid_<...>``.
    """
    if not read_procedure:
        return None
    prefix, marker, remainder = read_procedure.partition(GRID_MARKER)
    if not marker or not prefix or not remainder:
        return None

    trailing = remainder.split("_")[-1]
    if not trailing:
        return None

    entity = singularize(trailing)
    base = f"{prefix}{GRID_MARKER}"
    return WriteProcedureNames(
        entity=entity,
        update=f"{base}Update_{entity}",
        delete=f"{base}Delete_{entity}",
        insert=f"{base}Insert_{entity}",
    )
