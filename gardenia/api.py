from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from .audit import list_audit_logs, write_audit_log
from .auth_api import AuthSessionOut, start_session
from .csv_export import export_appointments_csv
from .db import get_db
from .dependencies import (
    ClinicAccess,
    get_current_user,
    require_clinic_manager,
    require_clinic_member,
    require_permission,
)
from .errors import ConflictError
from .invitations import (
    accept_invitation,
    create_invitation,
    ensure_usable,
    get_invitation_by_token,
    invitation_link,
    invitation_permissions,
    list_invitations,
    register_with_invitation,
    revoke_invitation,
)
from .models import Appointment, Client, Clinic, ClinicUser, Invitation, Professional, Service, User
from .permissions import (
    apply_role_defaults,
    copy_permissions,
    effective_permissions,
    grant_permission,
    list_permissions,
    replace_permissions,
    revoke_permission,
)
from .schemas import (
    AppointmentCreate,
    AppointmentOut,
    AppointmentStatusUpdate,
    AppointmentUpdate,
    AuditLogOut,
    ClientCreate,
    ClientOut,
    ClientUpdate,
    ClinicCreate,
    ClinicOut,
    ClinicUpdate,
    EffectivePermissionsOut,
    InvitationCreate,
    InvitationCreatedOut,
    InvitationOut,
    InvitationPublicOut,
    InvitationRegisterIn,
    MemberOut,
    MemberRoleUpdate,
    PermissionCopyIn,
    PermissionOut,
    PermissionPair,
    PermissionSetIn,
    ProfessionalCreate,
    ProfessionalOut,
    ProfessionalUpdate,
    ServiceCreate,
    ServiceOut,
    ServiceUpdate,
)
from .services import (
    change_member_role,
    create_appointment,
    create_client,
    create_clinic,
    create_professional,
    create_service,
    deactivate_professional,
    deactivate_service,
    delete_appointment,
    delete_client,
    get_appointment,
    get_client,
    get_member,
    get_professional,
    get_service,
    list_appointments,
    list_clients,
    list_clinics_for_user,
    list_members,
    list_professionals,
    list_services,
    remove_member,
    update_appointment,
    update_appointment_status,
    update_client,
    update_clinic,
    update_professional,
    update_service,
)

router = APIRouter(prefix="/api")


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


def _to_clinic_out(c: Clinic, role: str | None = None) -> ClinicOut:
    return ClinicOut(
        id=c.id,
        name=c.name,
        logo=c.logo,
        address=c.address,
        phone=c.phone,
        opening_hours=c.opening_hours,
        role=role,
        created_at=c.created_at,
    )


def _to_member_out(m: ClinicUser) -> MemberOut:
    return MemberOut(
        id=m.id,
        clinic_id=m.clinic_id,
        user_id=m.user_id,
        name=m.user.name,
        email=m.user.email,
        role=m.role,
        invited_by=m.invited_by,
        invited_at=m.invited_at,
        accepted_at=m.accepted_at,
    )


def _to_client_out(c: Client) -> ClientOut:
    return ClientOut(
        id=c.id,
        clinic_id=c.clinic_id,
        name=c.name,
        email=c.email,
        phone=c.phone,
        address=c.address,
        birthdate=c.birthdate,
        notes=c.notes,
        created_by=c.created_by,
        created_at=c.created_at,
        updated_at=c.updated_at,
    )


def _to_professional_out(p: Professional) -> ProfessionalOut:
    return ProfessionalOut(
        id=p.id,
        clinic_id=p.clinic_id,
        user_id=p.user_id,
        name=p.user.name,
        email=p.user.email,
        specialization=p.specialization,
        bio=p.bio,
        commission_rate=float(p.commission_rate or 0),
        color=p.color,
        is_active=bool(p.is_active),
    )


def _to_service_out(s: Service) -> ServiceOut:
    return ServiceOut(
        id=s.id,
        clinic_id=s.clinic_id,
        name=s.name,
        description=s.description,
        duration=int(s.duration),
        price=float(s.price or 0),
        is_active=bool(s.is_active),
    )


def _to_appointment_out(a: Appointment) -> AppointmentOut:
    return AppointmentOut(
        id=a.id,
        clinic_id=a.clinic_id,
        client_id=a.client_id,
        professional_id=a.professional_id,
        service_id=a.service_id,
        client_name=a.client.name,
        professional_name=a.professional.user.name,
        service_name=a.service.name,
        start_time=a.start_time,
        end_time=a.end_time,
        status=a.status,
        notes=a.notes,
        created_by=a.created_by,
        created_at=a.created_at,
        updated_at=a.updated_at,
    )


def _to_invitation_out(row: Invitation) -> InvitationOut:
    perms = invitation_permissions(row)
    return InvitationOut(
        id=row.id,
        clinic_id=row.clinic_id,
        email=row.email,
        role=row.role,
        permissions=[PermissionPair(module=m, action=a) for m, a in perms] if perms is not None else None,
        invited_by=row.invited_by,
        expires_at=row.expires_at,
        accepted_at=row.accepted_at,
        revoked_at=row.revoked_at,
        created_at=row.created_at,
    )


def _permission_outs(rows) -> list[PermissionOut]:
    return [PermissionOut(id=p.id, module=p.module, action=p.action) for p in rows]


# --- clinics ---------------------------------------------------------------


@router.post("/clinics", response_model=ClinicOut, status_code=status.HTTP_201_CREATED)
def add_clinic(
    payload: ClinicCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        clinic = create_clinic(db, user, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_clinic_out(clinic, role="OWNER")


@router.get("/clinics", response_model=List[ClinicOut])
def get_clinics(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    roles = {
        m.clinic_id: m.role
        for m in db.query(ClinicUser).filter(ClinicUser.user_id == user.id).all()
    }
    return [_to_clinic_out(c, roles.get(c.id)) for c in list_clinics_for_user(db, user)]


@router.get("/clinics/{clinic_id}", response_model=ClinicOut)
def get_clinic_detail(access: ClinicAccess = Depends(require_clinic_member)):
    role = access.membership.role if access.membership else None
    return _to_clinic_out(access.clinic, role)


@router.patch("/clinics/{clinic_id}", response_model=ClinicOut)
def patch_clinic(
    payload: ClinicUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        clinic = update_clinic(db, access.clinic, fields)
    except ValueError as exc:
        raise http_error(exc)
    return _to_clinic_out(clinic, access.membership.role if access.membership else None)


# --- members & permissions -------------------------------------------------


@router.get("/clinics/{clinic_id}/members", response_model=List[MemberOut])
def get_members(
    clinic_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("users", "view")),
):
    return [_to_member_out(m) for m in list_members(db, clinic_id)]


@router.patch("/clinics/{clinic_id}/members/{member_id}/role", response_model=MemberOut)
def patch_member_role(
    clinic_id: int,
    member_id: int,
    payload: MemberRoleUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    try:
        member = change_member_role(
            db,
            clinic_id,
            member_id,
            payload.role,
            actor=access.user,
            actor_membership=access.membership,
            keep_permissions=payload.keep_permissions,
        )
    except (ValueError, PermissionError) as exc:
        raise http_error(exc)
    if not member:
        raise _not_found("Member")
    return _to_member_out(member)


@router.delete("/clinics/{clinic_id}/members/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_member(
    clinic_id: int,
    member_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    try:
        ok = remove_member(db, clinic_id, member_id, actor=access.user, actor_membership=access.membership)
    except (ValueError, PermissionError) as exc:
        raise http_error(exc)
    if not ok:
        raise _not_found("Member")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/clinics/{clinic_id}/me/permissions", response_model=EffectivePermissionsOut)
def my_permissions(
    clinic_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_member),
):
    pairs = effective_permissions(db, access.user, access.membership)
    return EffectivePermissionsOut(
        clinic_id=clinic_id,
        role=access.membership.role if access.membership else None,
        bypass=access.is_manager,
        permissions=[PermissionPair(module=m, action=a) for m, a in pairs],
    )


def _member_or_404(db: Session, clinic_id: int, member_id: int) -> ClinicUser:
    member = get_member(db, clinic_id, member_id)
    if not member:
        raise _not_found("Member")
    return member


@router.get("/clinics/{clinic_id}/members/{member_id}/permissions", response_model=List[PermissionOut])
def get_member_permissions(
    clinic_id: int,
    member_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    member = _member_or_404(db, clinic_id, member_id)
    return _permission_outs(list_permissions(db, member.id))


@router.post(
    "/clinics/{clinic_id}/members/{member_id}/permissions",
    response_model=PermissionOut,
    status_code=status.HTTP_201_CREATED,
)
def add_member_permission(
    clinic_id: int,
    member_id: int,
    payload: PermissionPair,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    member = _member_or_404(db, clinic_id, member_id)
    try:
        row = grant_permission(db, member, payload.module, payload.action)
    except ValueError as exc:
        raise http_error(exc)
    write_audit_log(
        db,
        clinic_id,
        "permission.granted",
        "clinic_user",
        member.id,
        actor=access.user,
        payload={"module": row.module, "action": row.action},
    )
    return PermissionOut(id=row.id, module=row.module, action=row.action)


@router.delete(
    "/clinics/{clinic_id}/members/{member_id}/permissions/{module}/{action}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def remove_member_permission(
    clinic_id: int,
    member_id: int,
    module: str,
    action: str,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    member = _member_or_404(db, clinic_id, member_id)
    try:
        removed = revoke_permission(db, member, module, action)
    except ValueError as exc:
        raise http_error(exc)
    if not removed:
        raise _not_found("Permission")
    write_audit_log(
        db,
        clinic_id,
        "permission.revoked",
        "clinic_user",
        member.id,
        actor=access.user,
        payload={"module": module, "action": action},
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/clinics/{clinic_id}/members/{member_id}/permissions", response_model=List[PermissionOut])
def put_member_permissions(
    clinic_id: int,
    member_id: int,
    payload: PermissionSetIn,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    member = _member_or_404(db, clinic_id, member_id)
    try:
        rows = replace_permissions(db, member, [(p.module, p.action) for p in payload.permissions])
    except ValueError as exc:
        db.rollback()
        raise http_error(exc)
    write_audit_log(
        db,
        clinic_id,
        "permission.replaced",
        "clinic_user",
        member.id,
        actor=access.user,
        payload={"count": len(rows)},
    )
    return _permission_outs(rows)


@router.post("/clinics/{clinic_id}/members/{member_id}/permissions/copy", response_model=List[PermissionOut])
def copy_member_permissions(
    clinic_id: int,
    member_id: int,
    payload: PermissionCopyIn,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    target = _member_or_404(db, clinic_id, member_id)
    source = get_member(db, clinic_id, payload.source_member_id)
    if not source:
        raise _not_found("Source member")
    try:
        rows = copy_permissions(db, source=source, target=target)
    except ValueError as exc:
        raise http_error(exc)
    write_audit_log(
        db,
        clinic_id,
        "permission.copied",
        "clinic_user",
        target.id,
        actor=access.user,
        payload={"source_member_id": source.id, "count": len(rows)},
    )
    return _permission_outs(rows)


@router.post("/clinics/{clinic_id}/members/{member_id}/permissions/reset", response_model=List[PermissionOut])
def reset_member_permissions(
    clinic_id: int,
    member_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_clinic_manager),
):
    member = _member_or_404(db, clinic_id, member_id)
    rows = apply_role_defaults(db, member)
    write_audit_log(
        db,
        clinic_id,
        "permission.reset",
        "clinic_user",
        member.id,
        actor=access.user,
        payload={"role": member.role, "count": len(rows)},
    )
    return _permission_outs(rows)


# --- clients ---------------------------------------------------------------


@router.post("/clinics/{clinic_id}/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def add_client(
    clinic_id: int,
    payload: ClientCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("clients", "create")),
):
    try:
        row = create_client(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_client_out(row)


@router.get("/clinics/{clinic_id}/clients", response_model=List[ClientOut])
def get_clients(
    clinic_id: int,
    q: Optional[str] = Query(default=None, max_length=120),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("clients", "view")),
):
    return [_to_client_out(c) for c in list_clients(db, clinic_id, q=q, limit=limit, offset=offset)]


@router.get("/clinics/{clinic_id}/clients/{client_id}", response_model=ClientOut)
def get_client_detail(
    clinic_id: int,
    client_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("clients", "view")),
):
    row = get_client(db, clinic_id, client_id)
    if not row:
        raise _not_found("Client")
    return _to_client_out(row)


@router.patch("/clinics/{clinic_id}/clients/{client_id}", response_model=ClientOut)
def patch_client(
    clinic_id: int,
    client_id: int,
    payload: ClientUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("clients", "edit")),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_client(db, clinic_id, client_id, fields)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Client")
    return _to_client_out(row)


@router.delete("/clinics/{clinic_id}/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_client(
    clinic_id: int,
    client_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("clients", "delete")),
):
    try:
        ok = delete_client(db, clinic_id, client_id)
    except ValueError as exc:
        raise http_error(exc)
    if not ok:
        raise _not_found("Client")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- professionals ---------------------------------------------------------


@router.post(
    "/clinics/{clinic_id}/professionals",
    response_model=ProfessionalOut,
    status_code=status.HTTP_201_CREATED,
)
def add_professional(
    clinic_id: int,
    payload: ProfessionalCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    try:
        row = create_professional(db, clinic_id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_professional_out(row)


@router.get("/clinics/{clinic_id}/professionals", response_model=List[ProfessionalOut])
def get_professionals(
    clinic_id: int,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "view")),
):
    return [_to_professional_out(p) for p in list_professionals(db, clinic_id, include_inactive=include_inactive)]


@router.get("/clinics/{clinic_id}/professionals/{professional_id}", response_model=ProfessionalOut)
def get_professional_detail(
    clinic_id: int,
    professional_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "view")),
):
    row = get_professional(db, clinic_id, professional_id)
    if not row:
        raise _not_found("Professional")
    return _to_professional_out(row)


@router.patch("/clinics/{clinic_id}/professionals/{professional_id}", response_model=ProfessionalOut)
def patch_professional(
    clinic_id: int,
    professional_id: int,
    payload: ProfessionalUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    try:
        row = update_professional(db, clinic_id, professional_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Professional")
    return _to_professional_out(row)


@router.delete("/clinics/{clinic_id}/professionals/{professional_id}", response_model=ProfessionalOut)
def remove_professional(
    clinic_id: int,
    professional_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    row = deactivate_professional(db, clinic_id, professional_id)
    if not row:
        raise _not_found("Professional")
    return _to_professional_out(row)


# --- services --------------------------------------------------------------


@router.post("/clinics/{clinic_id}/services", response_model=ServiceOut, status_code=status.HTTP_201_CREATED)
def add_service(
    clinic_id: int,
    payload: ServiceCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    try:
        row = create_service(db, clinic_id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_service_out(row)


@router.get("/clinics/{clinic_id}/services", response_model=List[ServiceOut])
def get_services(
    clinic_id: int,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "view")),
):
    return [_to_service_out(s) for s in list_services(db, clinic_id, include_inactive=include_inactive)]


@router.get("/clinics/{clinic_id}/services/{service_id}", response_model=ServiceOut)
def get_service_detail(
    clinic_id: int,
    service_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "view")),
):
    row = get_service(db, clinic_id, service_id)
    if not row:
        raise _not_found("Service")
    return _to_service_out(row)


@router.patch("/clinics/{clinic_id}/services/{service_id}", response_model=ServiceOut)
def patch_service(
    clinic_id: int,
    service_id: int,
    payload: ServiceUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    try:
        row = update_service(db, clinic_id, service_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Service")
    return _to_service_out(row)


@router.delete("/clinics/{clinic_id}/services/{service_id}", response_model=ServiceOut)
def remove_service(
    clinic_id: int,
    service_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "edit")),
):
    row = deactivate_service(db, clinic_id, service_id)
    if not row:
        raise _not_found("Service")
    return _to_service_out(row)


# --- appointments ----------------------------------------------------------


@router.post(
    "/clinics/{clinic_id}/appointments",
    response_model=AppointmentOut,
    status_code=status.HTTP_201_CREATED,
)
def add_appointment(
    clinic_id: int,
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "create")),
):
    try:
        row = create_appointment(db, clinic_id, access.user.id, **payload.model_dump())
    except ValueError as exc:
        raise http_error(exc)
    return _to_appointment_out(row)


@router.get("/clinics/{clinic_id}/appointments", response_model=List[AppointmentOut])
def get_appointments(
    clinic_id: int,
    professional_id: Optional[int] = Query(default=None),
    client_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "view")),
):
    try:
        rows = list_appointments(
            db,
            clinic_id,
            professional_id=professional_id,
            client_id=client_id,
            status=status_filter,
            start=start,
            end=end,
        )
    except ValueError as exc:
        raise http_error(exc)
    return [_to_appointment_out(a) for a in rows]


@router.get("/clinics/{clinic_id}/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment_detail(
    clinic_id: int,
    appointment_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "view")),
):
    row = get_appointment(db, clinic_id, appointment_id)
    if not row:
        raise _not_found("Appointment")
    return _to_appointment_out(row)


@router.patch("/clinics/{clinic_id}/appointments/{appointment_id}", response_model=AppointmentOut)
def patch_appointment(
    clinic_id: int,
    appointment_id: int,
    payload: AppointmentUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "edit")),
):
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_appointment(db, clinic_id, appointment_id, fields)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Appointment")
    return _to_appointment_out(row)


@router.patch("/clinics/{clinic_id}/appointments/{appointment_id}/status", response_model=AppointmentOut)
def patch_appointment_status(
    clinic_id: int,
    appointment_id: int,
    payload: AppointmentStatusUpdate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "edit")),
):
    try:
        row = update_appointment_status(db, clinic_id, appointment_id, payload.status)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Appointment")
    return _to_appointment_out(row)


@router.delete("/clinics/{clinic_id}/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_appointment(
    clinic_id: int,
    appointment_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("appointments", "delete")),
):
    try:
        ok = delete_appointment(db, clinic_id, appointment_id)
    except ValueError as exc:
        raise http_error(exc)
    if not ok:
        raise _not_found("Appointment")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/clinics/{clinic_id}/export/appointments.csv")
def get_appointments_csv(
    clinic_id: int,
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("reports", "export")),
):
    try:
        csv_text = export_appointments_csv(db, clinic_id, start, end)
    except ValueError as exc:
        raise http_error(exc)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=appointments.csv"},
    )


# --- invitations -----------------------------------------------------------


@router.post(
    "/clinics/{clinic_id}/invitations",
    response_model=InvitationCreatedOut,
    status_code=status.HTTP_201_CREATED,
)
def add_invitation(
    payload: InvitationCreate,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("users", "create")),
):
    perms = [(p.module, p.action) for p in payload.permissions] if payload.permissions is not None else None
    try:
        raw, row = create_invitation(
            db,
            access.clinic,
            email=payload.email,
            role=payload.role,
            permissions=perms,
            actor=access.user,
            actor_membership=access.membership,
        )
    except (ValueError, PermissionError) as exc:
        raise http_error(exc)
    out = _to_invitation_out(row)
    return InvitationCreatedOut(**out.model_dump(), token=raw, invitation_link=invitation_link(raw))


@router.get("/clinics/{clinic_id}/invitations", response_model=List[InvitationOut])
def get_invitations(
    clinic_id: int,
    pending_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("users", "view")),
):
    return [_to_invitation_out(row) for row in list_invitations(db, clinic_id, pending_only=pending_only)]


@router.delete("/clinics/{clinic_id}/invitations/{invitation_id}", response_model=InvitationOut)
def remove_invitation(
    clinic_id: int,
    invitation_id: int,
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("users", "delete")),
):
    try:
        row = revoke_invitation(db, clinic_id, invitation_id, actor=access.user)
    except ValueError as exc:
        raise http_error(exc)
    if not row:
        raise _not_found("Invitation")
    return _to_invitation_out(row)


@router.get("/invitations/{token}", response_model=InvitationPublicOut)
def get_invitation_public(token: str, db: Session = Depends(get_db)):
    row = get_invitation_by_token(db, token)
    if not row:
        raise _not_found("Invitation")
    try:
        ensure_usable(row)
    except ValueError as exc:
        raise http_error(exc)
    return InvitationPublicOut(
        clinic_id=row.clinic_id,
        clinic_name=row.clinic.name,
        email=row.email,
        role=row.role,
        expires_at=row.expires_at,
    )


@router.post("/invitations/{token}/accept", response_model=MemberOut)
def accept_invitation_endpoint(
    token: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        membership = accept_invitation(db, token, user)
    except (ValueError, PermissionError) as exc:
        raise http_error(exc)
    if not membership:
        raise _not_found("Invitation")
    return _to_member_out(membership)


@router.post(
    "/invitations/{token}/register",
    response_model=AuthSessionOut,
    status_code=status.HTTP_201_CREATED,
)
def register_from_invitation(
    token: str,
    payload: InvitationRegisterIn,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
):
    try:
        result = register_with_invitation(db, token, name=payload.name, password=payload.password)
    except (ValueError, PermissionError) as exc:
        raise http_error(exc)
    if not result:
        raise _not_found("Invitation")
    user, _membership = result
    return start_session(db, user, request, response)


# --- audit -----------------------------------------------------------------


@router.get("/clinics/{clinic_id}/audit-logs", response_model=List[AuditLogOut])
def get_audit_logs(
    clinic_id: int,
    limit: int = Query(default=200, ge=1, le=1000),
    action: Optional[str] = Query(default=None),
    resource_type: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    access: ClinicAccess = Depends(require_permission("settings", "view")),
):
    rows = list_audit_logs(db, clinic_id, limit=limit, action=action, resource_type=resource_type)
    return [
        AuditLogOut(
            id=row.id,
            clinic_id=row.clinic_id,
            actor_user_id=row.actor_user_id,
            actor_email=row.actor_email,
            action=row.action,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            request_id=row.request_id,
            payload_json=row.payload_json,
            created_at=row.created_at,
        )
        for row in rows
    ]
