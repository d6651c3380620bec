"""
Plan-based feature gating: which modules a tenant's subscription plan unlocks
and the usage limits attached to them.
"""

import logging
from typing import Dict, Optional, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.tenant import Tenant, PlanModule

logger = logging.getLogger(__name__)


class PlanAccessError(Exception):
    """Raised when a tenant's plan does not include a module or a limit is reached."""

    def __init__(self, message: str, module_code: str, limit_key: Optional[str] = None):
        super().__init__(message)
        self.module_code = module_code
        self.limit_key = limit_key


class PlanService:
    """Service class for tenant plan checks."""

    def get_tenant(self, db: Session, tenant_id: str) -> Optional[Tenant]:
        return db.execute(select(Tenant).where(Tenant.id == tenant_id)).scalar_one_or_none()

    def _plan_module(self, db: Session, tenant: Tenant, module_code: str) -> Optional[PlanModule]:
        if not tenant.subscription_plan_id:
            return None
        return db.execute(
            select(PlanModule).where(
                PlanModule.plan_id == tenant.subscription_plan_id,
                PlanModule.module_code == module_code,
                PlanModule.is_active == True  # noqa: E712
            )
        ).scalar_one_or_none()

    def has_module_access(self, db: Session, tenant_id: str, module_code: str) -> bool:
        if not settings.FEATURE_GATING_ENABLED:
            return True

        tenant = self.get_tenant(db, tenant_id)
        if tenant is None or not tenant.is_active:
            logger.info(f"Module {module_code} denied: tenant {tenant_id} missing or inactive")
            return False

        allowed = self._plan_module(db, tenant, module_code) is not None
        if not allowed:
            logger.info(f"Module {module_code} not in plan {tenant.subscription_plan_id} of tenant {tenant_id}")
        return allowed

    def get_restrictions(self, db: Session, tenant_id: str, module_code: str) -> Dict[str, Any]:
        tenant = self.get_tenant(db, tenant_id)
        if tenant is None:
            return {}
        plan_module = self._plan_module(db, tenant, module_code)
        if plan_module is None:
            return {}
        return dict(plan_module.restrictions or {})

    def check_limit(self, db: Session, tenant_id: str, module_code: str, limit_key: str, current: int) -> bool:
        """False when ``current`` already reached the plan's ``limit_key``; no limit means allowed."""
        if not settings.FEATURE_GATING_ENABLED:
            return True
        limit = self.get_restrictions(db, tenant_id, module_code).get(limit_key)
        if limit is None:
            return True
        return current < int(limit)

    def enforce_limit(self, db: Session, tenant_id: str, module_code: str, limit_key: str, current: int) -> None:
        if not self.check_limit(db, tenant_id, module_code, limit_key, current):
            raise PlanAccessError(
                f"Plan limit '{limit_key}' reached for module {module_code}",
                module_code,
                limit_key,
            )


# Global plan service instance
plan_service = PlanService()
