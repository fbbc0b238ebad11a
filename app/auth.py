from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from app.models import PrincipalRole as Role


@dataclass
class Principal:
    id: str
    name: str
    role: Role
    store_id: str | None
    active: bool = True


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def is_manager_role(role: Role) -> bool:
    return role in {Role.ADMIN, Role.MANAGER}


def require_manager(role: Role) -> None:
    if not is_manager_role(role):
        raise PermissionError("Only managers can perform this action")


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


def assert_store_scope(principal: Principal, target_store_id: str) -> None:
    # Admins work across stores; everyone else is pinned to their own.
    if principal.role == Role.ADMIN:
        return
    if principal.store_id != target_store_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
