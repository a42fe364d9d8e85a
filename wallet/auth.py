from enum import Enum
from typing import Iterable, Optional, Protocol

from pydantic import BaseModel

from .exceptions import Forbidden, Unauthorized


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    SCHOOL_ADMIN = "SCHOOL_ADMIN"
    TEACHER = "TEACHER"
    PARENT = "PARENT"
    STUDENT = "STUDENT"


WALLET_ADMIN_ROLES = frozenset({Role.SCHOOL_ADMIN, Role.SUPER_ADMIN})


class Principal(BaseModel):
    tenant_id: Optional[str] = None
    user_id: str
    role: Role


def authorize(principal: Optional[Principal], tenant_id: Optional[str],
              required_roles: Iterable[Role] = WALLET_ADMIN_ROLES) -> Principal:
    if principal is None:
        raise Unauthorized("Authentication required")
    if principal.role not in set(required_roles):
        raise Forbidden(f"Role {principal.role.value} may not perform this action")
    if principal.role == Role.SUPER_ADMIN:
        return principal
    if not tenant_id or principal.tenant_id != tenant_id:
        raise Forbidden("Principal does not belong to this school")
    return principal


class SessionProvider(Protocol):
    def get_principal(self, headers) -> Optional[Principal]: ...


class HeaderSessionProvider:
    """Reads the principal from headers set by the upstream session layer."""

    def get_principal(self, headers) -> Optional[Principal]:
        user_id = headers.get("x-user-id")
        role = headers.get("x-role")
        if not user_id or not role:
            return None
        try:
            parsed = Role(role.upper())
        except ValueError:
            return None
        return Principal(tenant_id=headers.get("x-tenant-id") or None, user_id=user_id, role=parsed)
