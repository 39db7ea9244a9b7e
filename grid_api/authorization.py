"""Registry authorization gate."""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from grid_api.errors import ErrorKind, GridFailure
from grid_api.registry import ProcedureRegistration, ProcedureRegistry


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    registration: Optional[ProcedureRegistration] = None
    reason: Optional[ErrorKind] = None
    message: str = ""

    def failure(self) -> GridFailure:
        return GridFailure(self.reason or ErrorKind.UNAUTHORIZED, self.message)


def _normalize_roles(roles: Iterable[str]) -> set:
    return {role for role in (roles or []) if isinstance(role, str) and role}


def authorize(
    registration: Optional[ProcedureRegistration],
    caller_roles: Iterable[str],
    procedure_name: str = "",
) -> AccessDecision:
    """
    Allow or deny a dispatch. Fails closed.

    Missing or inactive registration -> NOT_FOUND.
    Auth not required -> allow.
    No overlap between allowed roles and caller roles (including an empty or
    unreadable allowed-roles list) -> UNAUTHORIZED.
    """
    name = procedure_name or (registration.name if registration else "")
    if registration is None or not registration.is_active:
        return AccessDecision(
            allowed=False,
            reason=ErrorKind.NOT_FOUND,
            message=f"Procedure not found: {name}",
        )

    if not registration.requires_auth:
        return AccessDecision(allowed=True, registration=registration)

    allowed_roles = _normalize_roles(registration.allowed_roles)
    if allowed_roles and allowed_roles & _normalize_roles(caller_roles):
        return AccessDecision(allowed=True, registration=registration)

    return AccessDecision(
        allowed=False,
        registration=registration,
        reason=ErrorKind.UNAUTHORIZED,
        message=f"Access denied to procedure: {name}",
    )


def check_access(
    registry: ProcedureRegistry,
    procedure_name: str,
    caller_roles: Iterable[str],
) -> AccessDecision:
    return authorize(registry.get(procedure_name), caller_roles, procedure_name)


def available_procedures(
    registry: ProcedureRegistry,
    caller_roles: Iterable[str],
) -> List[ProcedureRegistration]:
    """Active registrations the caller may dispatch, sorted by name."""
    roles = list(caller_roles or [])
    return sorted(
        (reg for reg in registry.all() if authorize(reg, roles).allowed),
        key=lambda reg: reg.name,
    )
