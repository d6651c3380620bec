"""
Lead Management Service

Handles the lead lifecycle: creation, updates, funnel stage changes with
optimistic concurrency, closing, follow-up tasks and funnel board queries.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Any

from sqlalchemy import select, or_, desc
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..models.crm import Lead, LeadActivity
from . import sales_funnel

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"full_name", "email", "phone", "source", "notes", "agent_id", "status"}


class LeadServiceError(Exception):
    """Base exception for lead operations."""
    pass


class LeadNotFoundError(LeadServiceError):
    """Raised when a lead does not exist for the tenant."""
    pass


class StaleLeadError(LeadServiceError):
    """Raised when the lead changed since the caller read it."""

    def __init__(self, lead_id: str, expected_version: Optional[int], current_version: Optional[int]):
        super().__init__(
            f"Lead {lead_id} was modified concurrently "
            f"(expected version {expected_version}, current {current_version})"
        )
        self.lead_id = lead_id
        self.expected_version = expected_version
        self.current_version = current_version


class InvalidStageError(LeadServiceError):
    """Raised for stage values outside the funnel vocabulary."""
    pass


class LeadService:
    """
    Service class for lead management operations.

    Methods that mutate take ``commit``; chatbot executors pass ``commit=False``
    so their changes join the conversation turn's transaction.
    """

    def create_lead(
        self,
        db: Session,
        tenant_id: str,
        data: Dict[str, Any],
        commit: bool = True
    ) -> Lead:
        """
        Create a new lead.

        Args:
            db: Database session
            tenant_id: Owning tenant
            data: Lead fields (full_name required)
            commit: Commit immediately or only flush

        Returns:
            Created Lead instance
        """
        stage = data.get("stage") or settings.DEFAULT_LEAD_STAGE
        self._validate_stage(stage)

        lead = Lead(
            tenant_id=tenant_id,
            full_name=data.get("full_name") or settings.DEFAULT_USER_NAME,
            email=data.get("email"),
            phone=data.get("phone"),
            source=data.get("source") or "manual",
            stage=stage,
            status=data.get("status") or "active",
            agent_id=data.get("agent_id"),
            notes=data.get("notes"),
            lead_metadata=dict(data.get("metadata") or {}),
        )
        db.add(lead)
        self._finish(db, commit)

        logger.info(f"Created lead {lead.id} for tenant {tenant_id} at stage {lead.stage}")
        return lead

    def get_lead(self, db: Session, tenant_id: str, lead_id: str, include_deleted: bool = False) -> Lead:
        stmt = select(Lead).where(Lead.id == lead_id, Lead.tenant_id == tenant_id)
        if not include_deleted:
            stmt = stmt.where(Lead.is_deleted == False)  # noqa: E712
        lead = db.execute(stmt).scalar_one_or_none()
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")
        return lead

    def list_leads(
        self,
        db: Session,
        tenant_id: str,
        stage: Optional[str] = None,
        status: Optional[str] = None,
        agent_id: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Lead]:
        """List leads with filtering and pagination."""
        stmt = select(Lead).where(Lead.tenant_id == tenant_id, Lead.is_deleted == False)  # noqa: E712

        if stage:
            stmt = stmt.where(Lead.stage == stage)
        if status:
            stmt = stmt.where(Lead.status == status)
        if agent_id:
            stmt = stmt.where(Lead.agent_id == agent_id)
        if search:
            search_term = f"%{search}%"
            stmt = stmt.where(
                or_(
                    Lead.full_name.ilike(search_term),
                    Lead.email.ilike(search_term),
                    Lead.phone.ilike(search_term)
                )
            )

        stmt = stmt.order_by(desc(Lead.created_at)).offset(skip).limit(limit)
        return list(db.execute(stmt).scalars().all())

    def update_lead(
        self,
        db: Session,
        tenant_id: str,
        lead_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None,
        commit: bool = True
    ) -> Lead:
        """Apply field updates; stage changes go through update_stage."""
        lead = self.get_lead(db, tenant_id, lead_id)
        self._check_version(lead, expected_version)

        for field_name, value in updates.items():
            if field_name in UPDATABLE_FIELDS:
                setattr(lead, field_name, value)
        if "metadata" in updates and updates["metadata"] is not None:
            lead.lead_metadata = {**(lead.lead_metadata or {}), **updates["metadata"]}

        if updates.get("stage") and updates["stage"] != lead.stage:
            self._apply_stage(db, lead, updates["stage"], agent_id=updates.get("agent_id"))

        self._finish(db, commit, lead)
        return lead

    def update_stage(
        self,
        db: Session,
        tenant_id: str,
        lead_id: str,
        stage: str,
        expected_version: Optional[int] = None,
        agent_id: Optional[str] = None,
        reason: Optional[str] = None,
        commit: bool = True
    ) -> Lead:
        """
        Move a lead to another funnel stage.

        Args:
            db: Database session
            tenant_id: Owning tenant
            lead_id: Lead to move
            stage: Target stage
            expected_version: Version the caller last saw; mismatches raise StaleLeadError
            agent_id: Agent performing the change, recorded on the activity
            reason: Free-text reason recorded on the activity
            commit: Commit immediately or only flush

        Returns:
            Updated Lead instance
        """
        lead = self.get_lead(db, tenant_id, lead_id)
        self._check_version(lead, expected_version)

        if lead.stage != stage:
            self._apply_stage(db, lead, stage, agent_id=agent_id, reason=reason)
            self._finish(db, commit, lead)

        return lead

    def mark_as_closed(
        self,
        db: Session,
        tenant_id: str,
        lead_id: str,
        reason: Optional[str] = None,
        agent_id: Optional[str] = None,
        commit: bool = True
    ) -> Lead:
        """Close a lead; it disappears from the funnel board."""
        lead = self.get_lead(db, tenant_id, lead_id)
        previous_stage = lead.stage

        lead.status = sales_funnel.CLOSED_STATUS
        lead.stage = "closed"
        lead.lead_metadata = {
            **(lead.lead_metadata or {}),
            "closed_at": datetime.now(timezone.utc).isoformat(),
            "closed_reason": reason,
        }
        db.add(LeadActivity(
            lead_id=lead.id,
            tenant_id=tenant_id,
            activity_type="closed",
            subject="Lead closed",
            description=reason,
            agent_id=agent_id,
            activity_metadata={"from_stage": previous_stage},
        ))

        self._finish(db, commit, lead)
        logger.info(f"Lead {lead_id} closed (was {previous_stage})")
        return lead

    def remove_from_funnel(self, db: Session, tenant_id: str, lead_id: str, commit: bool = True) -> Lead:
        lead = self.get_lead(db, tenant_id, lead_id)
        lead.lead_metadata = {**(lead.lead_metadata or {}), "removed_from_funnel": True}
        self._finish(db, commit, lead)
        return lead

    def soft_delete(self, db: Session, tenant_id: str, lead_id: str) -> None:
        lead = self.get_lead(db, tenant_id, lead_id)
        lead.is_deleted = True
        lead.deleted_at = datetime.now(timezone.utc)
        self._finish(db, True, lead)

    def update_metadata(self, db: Session, lead: Lead, values: Dict[str, Any], commit: bool = True) -> Lead:
        lead.lead_metadata = {**(lead.lead_metadata or {}), **values}
        self._finish(db, commit, lead)
        return lead

    def create_follow_up(
        self,
        db: Session,
        lead: Lead,
        scheduled_at: Optional[datetime] = None,
        subject: str = "Seguimiento",
        description: Optional[str] = None,
        agent_id: Optional[str] = None,
        commit: bool = True
    ) -> LeadActivity:
        """Schedule a follow-up task on the lead."""
        if scheduled_at is None:
            scheduled_at = datetime.now(timezone.utc) + timedelta(hours=settings.LEAD_FOLLOW_UP_HOURS)

        activity = LeadActivity(
            lead_id=lead.id,
            tenant_id=lead.tenant_id,
            activity_type="follow_up",
            status="scheduled",
            subject=subject,
            description=description,
            agent_id=agent_id or lead.agent_id,
            scheduled_at=scheduled_at,
        )
        db.add(activity)
        self._finish(db, commit)
        return activity

    def find_or_create_from_contact(
        self,
        db: Session,
        tenant_id: str,
        full_name: Optional[str],
        email: Optional[str] = None,
        phone: Optional[str] = None,
        source: str = "chatbot",
        commit: bool = True
    ) -> Lead:
        """Reuse a lead matching email or phone, otherwise create one."""
        conditions = []
        if email:
            conditions.append(Lead.email == email)
        if phone:
            conditions.append(Lead.phone == phone)

        if conditions:
            stmt = select(Lead).where(
                Lead.tenant_id == tenant_id,
                Lead.is_deleted == False,  # noqa: E712
                or_(*conditions)
            ).order_by(desc(Lead.created_at))
            existing = db.execute(stmt).scalars().first()
            if existing is not None:
                if full_name and existing.full_name in (None, "", settings.DEFAULT_USER_NAME):
                    existing.full_name = full_name
                    self._finish(db, commit, existing)
                return existing

        return self.create_lead(
            db,
            tenant_id,
            {"full_name": full_name, "email": email, "phone": phone, "source": source},
            commit=commit,
        )

    def get_funnel_board(self, db: Session, tenant_id: str) -> Dict[str, Any]:
        return sales_funnel.build_funnel_board(self._all_leads(db, tenant_id))

    def analyze_funnel(self, db: Session, tenant_id: str) -> Dict[str, Any]:
        return sales_funnel.analyze_funnel(self._all_leads(db, tenant_id, include_deleted=True))

    # -- helpers --------------------------------------------------------

    def _all_leads(self, db: Session, tenant_id: str, include_deleted: bool = False) -> List[Lead]:
        stmt = select(Lead).where(Lead.tenant_id == tenant_id)
        if not include_deleted:
            stmt = stmt.where(Lead.is_deleted == False)  # noqa: E712
        return list(db.execute(stmt.order_by(desc(Lead.created_at))).scalars().all())

    def _validate_stage(self, stage: str) -> None:
        if stage not in sales_funnel.VALID_STAGES:
            raise InvalidStageError(
                f"Invalid stage '{stage}'. Valid stages: {sorted(sales_funnel.VALID_STAGES)}"
            )

    def _check_version(self, lead: Lead, expected_version: Optional[int]) -> None:
        if expected_version is not None and lead.version != expected_version:
            raise StaleLeadError(lead.id, expected_version, lead.version)

    def _apply_stage(
        self,
        db: Session,
        lead: Lead,
        stage: str,
        agent_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> None:
        self._validate_stage(stage)
        previous_stage = lead.stage
        lead.stage = stage
        if stage in sales_funnel.CLOSED_STAGES:
            lead.status = sales_funnel.CLOSED_STATUS

        db.add(LeadActivity(
            lead_id=lead.id,
            tenant_id=lead.tenant_id,
            activity_type="stage_change",
            subject=f"{previous_stage} -> {stage}",
            description=reason,
            agent_id=agent_id,
            activity_metadata={"from_stage": previous_stage, "to_stage": stage},
        ))
        logger.info(f"Lead {lead.id} stage {previous_stage} -> {stage}")

    def _finish(self, db: Session, commit: bool, lead: Optional[Lead] = None) -> None:
        lead_id = lead.id if lead is not None else "unknown"
        try:
            if commit:
                db.commit()
            else:
                db.flush()
        except StaleDataError as e:
            # A flush failure inside a turn is rolled back by the caller's savepoint
            if commit:
                db.rollback()
            raise StaleLeadError(lead_id, None, None) from e

        if commit and lead is not None:
            db.refresh(lead)


# Global lead service instance
lead_service = LeadService()
