"""Tenant and actor of the current request.

Authentication lives in front of this service; it forwards the resolved
school and user as headers.
"""

from dataclasses import dataclass

from fastapi import Header, HTTPException, status


@dataclass(frozen=True)
class TenantContext:
    school_id: str
    user_id: str


def get_tenant(
    x_school_id: str | None = Header(None, alias="X-School-Id"),
    x_user_id: str | None = Header(None, alias="X-User-Id"),
) -> TenantContext:
    """FastAPI dependency that resolves the caller's school and user."""
    if not x_school_id or not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing school or user identity",
        )
    return TenantContext(school_id=x_school_id.strip(), user_id=x_user_id.strip())
