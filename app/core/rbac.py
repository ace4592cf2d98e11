from enum import StrEnum

from fastapi import HTTPException, status


class UserRole(StrEnum):
    ADMIN = "ADMIN"
    SALES_REP = "SALES_REP"
    CONCIERGE = "CONCIERGE"


ASSIGNABLE_ROLES = {UserRole.ADMIN, UserRole.SALES_REP, UserRole.CONCIERGE}
FIELD_ROLES = {UserRole.SALES_REP, UserRole.CONCIERGE}


def require_role(role: str, *allowed: UserRole, detail: str = "Forbidden") -> None:
    if role not in {item.value for item in allowed}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def require_admin(role: str, detail: str = "Forbidden") -> None:
    require_role(role, UserRole.ADMIN, detail=detail)
