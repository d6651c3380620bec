"""
Shared FastAPI dependencies: tenant resolution and plan gating.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..services.plan_service import PlanAccessError, plan_service

logger = logging.getLogger(__name__)


def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID")) -> str:
    """Tenant of the request, taken from the ``X-Tenant-ID`` header."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "missing_tenant", "message": "X-Tenant-ID header is required"}
        )
    return x_tenant_id.strip()


def require_module(module_code: str) -> Callable[..., str]:
    """
    Dependency factory rejecting tenants whose plan lacks ``module_code``.

    Usage::

        router = APIRouter(dependencies=[Depends(require_module("chatbot"))])
    """

    def dependency(
        tenant_id: str = Depends(get_tenant_id),
        db: Session = Depends(get_db)
    ) -> str:
        if not plan_service.has_module_access(db, tenant_id, module_code):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "code": "module_not_available",
                    "message": f"Module '{module_code}' is not available in the current plan",
                    "module": module_code,
                }
            )
        return tenant_id

    return dependency


def plan_limit_exception(exc: PlanAccessError) -> HTTPException:
    logger.info(f"Plan limit hit: {exc}")
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "plan_limit_reached",
            "message": str(exc),
            "module": exc.module_code,
            "limit": exc.limit_key,
        }
    )
