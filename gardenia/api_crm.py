from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .api import _not_found, _to_client_out, http_error
from .crm import (
    add_interaction,
    book_lead_appointment,
    convert_lead,
    create_lead,
    crm_stats,
    delete_lead,
    get_lead,
    list_interactions,
    list_lead_appointments,
    list_leads,
    update_lead,
)
from .db import get_db
from .dependencies import ClinicAccess, require_permission
from .models import Lead, LeadAppointment, LeadInteraction
from .permissions import has_permission
from .schemas import (
    CrmStatsOut,
    LeadAppointmentCreate,
    LeadAppointmentOut,
    LeadConvertOut,
    LeadCreate,
    LeadInteractionCreate,
    LeadInteractionOut,
    LeadOut,
    LeadUpdate,
)

router = APIRouter(prefix="/api", tags=["crm"])


def _to_lead_out(lead: Lead) -> LeadOut:
    return LeadOut(
        id=lead.id,
        clinic_id=lead.clinic_id,
        name=lead.name,
        email=lead.email,
        phone=lead.phone,
        source=lead.source,
        status=lead.status,
        interest=lead.interest,
        estimated_value=float(lead.estimated_value) if lead.estimated_value is not None else None,
        assigned_to=lead.assigned_to,
        notes=lead.notes,
        converted_client_id=lead.converted_client_id,
        converted_at=lead.converted_at,
        created_by=lead.created_by,
        created_at=lead.created_at,
        updated_at=lead.updated_at,
    )


def _to_interaction_out(row: LeadInteraction) -> LeadInteractionOut:
    return LeadInteractionOut(
        id=row.id,
        lead_id=row.lead_id,
        kind=row.kind,
        description=row.description,
        occurred_at=row.occurred_at,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _to_lead_appointment_out(row: LeadAppointment) -> LeadAppointmentOut:
    return LeadAppointmentOut(
        id=row.id,
        lead_id=row.lead_id,
        scheduled_for=row.scheduled_for,
        procedure=row.procedure,
        status=row.status,
        notes=row.notes,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _lead_or_404(db: Session, clinic_id: int, lead_id: int) -> Lead:
    lead = get_lead(db, clinic_id, lead_id)
    if not lead:
        raise _not_found("Lead")
    return lead


# --- leads -----------------------------------------------------------------


@router.post("/clinics/{clinic_id}/leads", response_model=LeadOut, status_code=status.HTTP_201_CREATED)
def add_lead(
    clinic_id: int,
    payload: LeadCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "create")),
):
    try:
        row = create_lead(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_lead_out(row)


@router.get("/clinics/{clinic_id}/leads", response_model=List[LeadOut])
def get_leads(
    clinic_id: int,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    source: Optional[str] = Query(default=None),
    q: Optional[str] = Query(default=None, max_length=120),
    assigned_to: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "view")),
):
    try:
        rows = list_leads(db, clinic_id, status=status_filter, source=source, q=q, assigned_to=assigned_to)
    except ValueError as exc:
        raise http_error(exc)
    return [_to_lead_out(r) for r in rows]


@router.get("/clinics/{clinic_id}/leads/{lead_id}", response_model=LeadOut)
def get_lead_detail(
    clinic_id: int,
    lead_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "view")),
):
    return _to_lead_out(_lead_or_404(db, clinic_id, lead_id))


@router.patch("/clinics/{clinic_id}/leads/{lead_id}", response_model=LeadOut)
def patch_lead(
    clinic_id: int,
    lead_id: int,
    payload: LeadUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "edit")),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_lead(db, clinic_id, lead_id, fields)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Lead")
    return _to_lead_out(row)


@router.delete("/clinics/{clinic_id}/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_lead(
    clinic_id: int,
    lead_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "delete")),
):
    if not delete_lead(db, clinic_id, lead_id, actor=access.user):
        raise _not_found("Lead")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/clinics/{clinic_id}/leads/{lead_id}/convert", response_model=LeadConvertOut)
def convert_lead_to_client(
    clinic_id: int,
    lead_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "edit")),
):
    # conversion creates a client record, so it needs that grant as well
    if not has_permission(db, access.user, access.membership, "clients", "create"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to this feature")
    try:
        lead, client = convert_lead(db, clinic_id, lead_id, actor=access.user)
    except ValueError as exc:
        raise http_error(exc)
    if lead is None:
        raise _not_found("Lead")
    return LeadConvertOut(lead=_to_lead_out(lead), client=_to_client_out(client))


# --- interactions & trial bookings -----------------------------------------


@router.get("/clinics/{clinic_id}/leads/{lead_id}/interactions", response_model=List[LeadInteractionOut])
def get_lead_interactions(
    clinic_id: int,
    lead_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "view")),
):
    lead = _lead_or_404(db, clinic_id, lead_id)
    return [_to_interaction_out(r) for r in list_interactions(db, lead.id)]


@router.post(
    "/clinics/{clinic_id}/leads/{lead_id}/interactions",
    response_model=LeadInteractionOut,
    status_code=status.HTTP_201_CREATED,
)
def add_lead_interaction(
    clinic_id: int,
    lead_id: int,
    payload: LeadInteractionCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "edit")),
):
    lead = _lead_or_404(db, clinic_id, lead_id)
    try:
        row = add_interaction(db, lead, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_interaction_out(row)


@router.get("/clinics/{clinic_id}/leads/{lead_id}/appointments", response_model=List[LeadAppointmentOut])
def get_lead_appointments(
    clinic_id: int,
    lead_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "view")),
):
    lead = _lead_or_404(db, clinic_id, lead_id)
    return [_to_lead_appointment_out(r) for r in list_lead_appointments(db, lead.id)]


@router.post(
    "/clinics/{clinic_id}/leads/{lead_id}/appointments",
    response_model=LeadAppointmentOut,
    status_code=status.HTTP_201_CREATED,
)
def add_lead_appointment(
    clinic_id: int,
    lead_id: int,
    payload: LeadAppointmentCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "edit")),
):
    lead = _lead_or_404(db, clinic_id, lead_id)
    try:
        row = book_lead_appointment(db, lead, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_lead_appointment_out(row)


@router.get("/clinics/{clinic_id}/crm/stats", response_model=CrmStatsOut)
def get_crm_stats(
    clinic_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("crm", "view")),
):
    return CrmStatsOut(clinic_id=clinic_id, **crm_stats(db, clinic_id))
