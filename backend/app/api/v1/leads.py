"""
Leads API Endpoints

Lead CRUD, funnel stage changes with optimistic concurrency and the sales
funnel board.
"""

from datetime import datetime
from typing import Dict, Optional, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...models.crm import Lead
from ...services import sales_funnel
from ...services.lead_service import (
    lead_service,
    InvalidStageError,
    LeadNotFoundError,
    StaleLeadError,
)
from ..deps import get_tenant_id
from ..responses import success_response

router = APIRouter(prefix="/leads", tags=["Leads"])


# Pydantic schemas
class LeadCreateRequest(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    source: str = Field(default="manual", max_length=50)
    stage: Optional[str] = Field(None, max_length=50)
    agent_id: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class LeadUpdateRequest(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    source: Optional[str] = Field(None, max_length=50)
    stage: Optional[str] = Field(None, max_length=50)
    status: Optional[str] = Field(None, pattern="^(active|closed)$")
    agent_id: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    expected_version: Optional[int] = Field(None, description="Version last read by the client")


class StageChangeRequest(BaseModel):
    stage: str = Field(..., min_length=1, max_length=50)
    expected_version: Optional[int] = Field(None, description="Version last read by the client")
    agent_id: Optional[str] = None
    reason: Optional[str] = None


class CloseLeadRequest(BaseModel):
    reason: Optional[str] = None
    agent_id: Optional[str] = None


class LeadResponse(BaseModel):
    id: str
    tenant_id: str
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    source: str
    stage: str
    display_stage: Optional[str] = None
    status: str
    agent_id: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="lead_metadata")
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def lead_to_response(lead: Lead) -> LeadResponse:
    response = LeadResponse.model_validate(lead)
    response.metadata = response.metadata or {}
    response.display_stage = sales_funnel.display_stage(lead)
    return response


def _not_found(lead_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Lead {lead_id} not found")


def _conflict(exc: StaleLeadError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "code": "stale_lead",
            "message": str(exc),
            "expected_version": exc.expected_version,
            "current_version": exc.current_version,
        }
    )


@router.get("/funnel")
async def get_funnel_board(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    """Visible leads grouped by funnel column."""
    board = lead_service.get_funnel_board(db, tenant_id)
    board["columns"] = {
        stage: [lead_to_response(lead) for lead in leads]
        for stage, leads in board["columns"].items()
    }
    return success_response(board)


@router.get("/funnel/analysis")
async def get_funnel_analysis(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    """Counts of visible and excluded leads with the reasons for exclusion."""
    return success_response(lead_service.analyze_funnel(db, tenant_id))


@router.get("")
async def list_leads(
    stage: Optional[str] = Query(None, description="Filter by raw stage"),
    lead_status: Optional[str] = Query(None, alias="status", description="Filter by status"),
    agent_id: Optional[str] = Query(None, description="Filter by assigned agent"),
    search: Optional[str] = Query(None, description="Search name, email or phone"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    leads = lead_service.list_leads(
        db, tenant_id,
        stage=stage, status=lead_status, agent_id=agent_id, search=search,
        skip=skip, limit=limit
    )
    return success_response([lead_to_response(lead) for lead in leads])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_lead(
    request: LeadCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    try:
        lead = lead_service.create_lead(db, tenant_id, request.model_dump())
    except InvalidStageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return success_response(lead_to_response(lead))


@router.get("/{lead_id}")
async def get_lead(
    lead_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    try:
        lead = lead_service.get_lead(db, tenant_id, lead_id)
    except LeadNotFoundError:
        raise _not_found(lead_id)
    return success_response(lead_to_response(lead))


@router.put("/{lead_id}")
async def update_lead(
    lead_id: str,
    request: LeadUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    updates = request.model_dump(exclude_unset=True, exclude={"expected_version"})
    try:
        lead = lead_service.update_lead(
            db, tenant_id, lead_id, updates, expected_version=request.expected_version
        )
    except LeadNotFoundError:
        raise _not_found(lead_id)
    except StaleLeadError as e:
        raise _conflict(e)
    except InvalidStageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return success_response(lead_to_response(lead))


@router.patch("/{lead_id}/stage")
async def change_lead_stage(
    lead_id: str,
    request: StageChangeRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    """Move a lead between funnel stages; 409 when ``expected_version`` is stale."""
    try:
        lead = lead_service.update_stage(
            db, tenant_id, lead_id, request.stage,
            expected_version=request.expected_version,
            agent_id=request.agent_id,
            reason=request.reason,
        )
    except LeadNotFoundError:
        raise _not_found(lead_id)
    except StaleLeadError as e:
        raise _conflict(e)
    except InvalidStageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return success_response(lead_to_response(lead))


@router.post("/{lead_id}/close")
async def close_lead(
    lead_id: str,
    request: CloseLeadRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    try:
        lead = lead_service.mark_as_closed(
            db, tenant_id, lead_id, reason=request.reason, agent_id=request.agent_id
        )
    except LeadNotFoundError:
        raise _not_found(lead_id)
    return success_response(lead_to_response(lead))


@router.post("/{lead_id}/remove-from-funnel")
async def remove_lead_from_funnel(
    lead_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    try:
        lead = lead_service.remove_from_funnel(db, tenant_id, lead_id)
    except LeadNotFoundError:
        raise _not_found(lead_id)
    return success_response(lead_to_response(lead))


@router.delete("/{lead_id}")
async def delete_lead(
    lead_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db)
):
    try:
        lead_service.soft_delete(db, tenant_id, lead_id)
    except LeadNotFoundError:
        raise _not_found(lead_id)
    return success_response({"id": lead_id, "deleted": True})
